"""
Expense Hub - Approval Errors

Business-rule violations raised by the approval engine, the role registry and
the decision service. None of these are system faults: the route layer turns
them into HTTP responses and nothing retries them.
"""

from typing import Any, Dict, Optional


class ApprovalError(Exception):
    """Base class for expected, user-facing approval outcomes."""

    kind = "ApprovalError"
    status_code = 400
    default_message = "Approval operation rejected"

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        result = {"error": self.kind, "message": self.message}
        if self.details:
            result.update(self.details)
        return result


class AlreadyReviewed(ApprovalError):
    kind = "AlreadyReviewed"
    default_message = "Expense already reviewed"


class NoActionRequired(ApprovalError):
    kind = "NoActionRequired"
    default_message = "No approval is required at this stage"


class WrongRole(ApprovalError):
    kind = "WrongRole"
    status_code = 403
    default_message = "You are not allowed to act at this stage"


class NotAssignedApprover(ApprovalError):
    kind = "NotAssignedApprover"
    status_code = 403
    default_message = "You are not an assigned approver for this step"


class StepAlreadySatisfied(ApprovalError):
    kind = "StepAlreadySatisfied"
    default_message = "Step already satisfied"


class DuplicateAction(ApprovalError):
    kind = "DuplicateAction"
    default_message = "You have already acted on this expense"


class InvalidWorkflowReference(ApprovalError):
    kind = "InvalidWorkflowReference"
    default_message = "Invalid workflow for this company"


class NotFound(ApprovalError):
    kind = "NotFound"
    status_code = 404
    default_message = "Not found"


class RoleInUse(ApprovalError):
    kind = "RoleInUse"
    default_message = "Role is in use and cannot be deleted"


class InvalidRole(ApprovalError):
    kind = "InvalidRole"
    default_message = "Invalid role"


class ValidationFailed(ApprovalError):
    kind = "ValidationFailed"
    default_message = "Validation failed"


class ConcurrentModification(Exception):
    """Raised by a store when a conditional save loses a version race."""

    def __init__(self, expense_id: str, expected_version: int):
        self.expense_id = expense_id
        self.expected_version = expected_version
        super().__init__(
            f"Expense {expense_id} changed since version {expected_version}"
        )
