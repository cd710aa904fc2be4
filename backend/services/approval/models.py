"""
Expense Hub - Approval Data Model

Records routed through the approval workflow, with codecs to and from the
Mongo documents they are stored as. Workflow steps and completion rules are
tagged unions: each variant is its own dataclass and the stored discriminator
(`approver_type` for steps, `type` for rules) picks the variant on load.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# ENUMS
# =============================================================================

class ExpenseStatus(str, Enum):
    """Expense lifecycle. APPROVED and REJECTED are terminal."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Decision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalMode(str, Enum):
    """How a member (user) step is satisfied."""
    ANY = "any"
    ALL = "all"


class StepType(str, Enum):
    ROLE = "role"
    USERS = "users"


class RuleType(str, Enum):
    NONE = "none"
    PERCENTAGE = "percentage"
    SPECIFIC_APPROVER = "specific_approver"
    HYBRID = "hybrid"


class AuditAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


# Pseudo-roles recorded on approvals and returned by required-role resolution
MANAGER_ROLE = "manager"
USERS_ROLE = "users"

# System roles that exist implicitly for every company
ADMIN_ROLE = "admin"
EMPLOYEE_ROLE = "employee"
SYSTEM_ROLES = (ADMIN_ROLE, EMPLOYEE_ROLE)

EXPENSE_CATEGORIES = [
    "Travel",
    "Food",
    "Accommodation",
    "Transportation",
    "Office Supplies",
    "Equipment",
    "Software",
    "Client Entertainment",
    "Training",
    "Other",
]


def normalize_role_name(name: Optional[str]) -> str:
    """Role names are unique per company, case-insensitive."""
    return (name or "").strip().lower()


# =============================================================================
# ROLES & USERS
# =============================================================================

@dataclass
class Role:
    id: str
    company: str
    name: str
    display_name: Optional[str] = None
    is_approver: bool = False
    is_system: bool = False
    created_utc: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "company": self.company,
            "name": self.name,
            "display_name": self.display_name or self.name,
            "is_approver": self.is_approver,
            "is_system": self.is_system,
            "created_utc": self.created_utc,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Role":
        return cls(
            id=data["id"],
            company=data["company"],
            name=normalize_role_name(data["name"]),
            display_name=data.get("display_name"),
            is_approver=bool(data.get("is_approver", False)),
            is_system=bool(data.get("is_system", False)),
            created_utc=data.get("created_utc"),
        )


@dataclass
class User:
    """
    A company member. `role_name` is the legacy role claim kept for
    backward compatibility; `effective_role` prefers `role`.
    """
    id: str
    company: str
    role: Optional[str] = EMPLOYEE_ROLE
    role_name: Optional[str] = None
    manager: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None

    @property
    def effective_role(self) -> str:
        return normalize_role_name(self.role or self.role_name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "company": self.company,
            "role": normalize_role_name(self.role) or None,
            "role_name": normalize_role_name(self.role_name) or None,
            "manager": self.manager,
            "name": self.name,
            "email": self.email,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        role_name = normalize_role_name(data.get("role_name")) or None
        # Neither field stored: employee
        role = data.get("role", None if role_name else EMPLOYEE_ROLE)
        return cls(
            id=data["id"],
            company=data["company"],
            role=normalize_role_name(role) or None,
            role_name=role_name,
            manager=data.get("manager"),
            name=data.get("name"),
            email=data.get("email"),
        )


# =============================================================================
# WORKFLOW STEPS (tagged union)
# =============================================================================

@dataclass(frozen=True)
class RoleStep:
    """Any single holder of `approver_role` may act."""
    step_index: int
    approver_role: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_index": self.step_index,
            "approver_type": StepType.ROLE.value,
            "approver_role": self.approver_role,
        }


@dataclass(frozen=True)
class UserStep:
    """An enumerated set of members; satisfied by ANY one or ALL of them."""
    step_index: int
    approver_users: tuple
    approval_mode: ApprovalMode = ApprovalMode.ANY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_index": self.step_index,
            "approver_type": StepType.USERS.value,
            "approver_users": list(self.approver_users),
            "approval_mode": self.approval_mode.value,
        }


Step = Union[RoleStep, UserStep]


def step_from_dict(data: Dict[str, Any]) -> Step:
    # Steps stored before member steps existed carry no approver_type
    approver_type = data.get("approver_type", StepType.ROLE.value)
    if approver_type == StepType.USERS.value:
        return UserStep(
            step_index=int(data["step_index"]),
            approver_users=tuple(str(u) for u in data.get("approver_users") or []),
            approval_mode=ApprovalMode(data.get("approval_mode", ApprovalMode.ANY.value)),
        )
    if approver_type == StepType.ROLE.value:
        return RoleStep(
            step_index=int(data["step_index"]),
            approver_role=normalize_role_name(data["approver_role"]),
        )
    raise ValueError(f"Unknown approver_type '{approver_type}'")


# =============================================================================
# COMPLETION RULES (tagged union)
# =============================================================================

@dataclass(frozen=True)
class NoRule:
    def to_dict(self) -> Dict[str, Any]:
        return {"type": RuleType.NONE.value}


@dataclass(frozen=True)
class PercentageRule:
    threshold: int

    def to_dict(self) -> Dict[str, Any]:
        return {"type": RuleType.PERCENTAGE.value, "percentage": self.threshold}


@dataclass(frozen=True)
class SpecificApproverRule:
    role: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": RuleType.SPECIFIC_APPROVER.value, "special_role": self.role}


@dataclass(frozen=True)
class HybridRule:
    threshold: int
    role: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": RuleType.HYBRID.value,
            "percentage": self.threshold,
            "special_role": self.role,
        }


CompletionRule = Union[NoRule, PercentageRule, SpecificApproverRule, HybridRule]


def rule_from_dict(data: Optional[Dict[str, Any]], default_threshold: int = 60) -> CompletionRule:
    """Decode a stored rule. Missing or unknown rules decode to NoRule."""
    data = data or {}
    rule_type = data.get("type", RuleType.NONE.value)
    threshold = data.get("percentage")
    threshold = int(threshold) if threshold is not None else default_threshold
    role = normalize_role_name(data.get("special_role"))

    if rule_type == RuleType.PERCENTAGE.value:
        return PercentageRule(threshold=threshold)
    if rule_type == RuleType.SPECIFIC_APPROVER.value and role:
        return SpecificApproverRule(role=role)
    if rule_type == RuleType.HYBRID.value:
        if role:
            return HybridRule(threshold=threshold, role=role)
        return PercentageRule(threshold=threshold)
    return NoRule()


# =============================================================================
# WORKFLOW DEFINITION
# =============================================================================

@dataclass
class WorkflowDefinition:
    id: str
    company: str
    name: str
    steps: List[Step] = field(default_factory=list)
    rules: CompletionRule = field(default_factory=NoRule)
    created_utc: Optional[str] = None

    def has_dense_step_order(self) -> bool:
        """stepIndex values must be 0..n-1 with no gaps or duplicates."""
        return sorted(s.step_index for s in self.steps) == list(range(len(self.steps)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "company": self.company,
            "name": self.name,
            "steps": [s.to_dict() for s in self.steps],
            "rules": self.rules.to_dict(),
            "created_utc": self.created_utc,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], default_threshold: int = 60) -> "WorkflowDefinition":
        steps = sorted(
            (step_from_dict(s) for s in data.get("steps") or []),
            key=lambda s: s.step_index,
        )
        return cls(
            id=data["id"],
            company=data["company"],
            name=data.get("name", ""),
            steps=steps,
            rules=rule_from_dict(data.get("rules"), default_threshold),
            created_utc=data.get("created_utc"),
        )


# =============================================================================
# EXPENSE
# =============================================================================

@dataclass(frozen=True)
class Approval:
    """
    One actor's decision on one expense. `step_index` is None for the
    manager pre-step and the workflow step position otherwise.
    """
    approver: str
    role: str
    decision: Decision
    comment: str = ""
    acted_at: Optional[str] = None
    step_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approver": self.approver,
            "role": self.role,
            "decision": self.decision.value,
            "comment": self.comment,
            "acted_at": self.acted_at,
            "step_index": self.step_index,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Approval":
        step_index = data.get("step_index")
        return cls(
            approver=str(data["approver"]),
            role=data.get("role", ""),
            decision=Decision(data["decision"]),
            comment=data.get("comment") or "",
            acted_at=data.get("acted_at"),
            step_index=int(step_index) if step_index is not None else None,
        )


@dataclass
class Expense:
    """
    The record routed through approvals. `status`, `current_step` and
    `approvals` are written only by the ApprovalEngine.
    """
    id: str
    company: str
    submitted_by: str
    amount: float
    currency: str
    category: str
    description: str = ""
    date: Optional[str] = None
    status: ExpenseStatus = ExpenseStatus.PENDING
    workflow: Optional[str] = None
    current_step: int = 0
    is_manager_approver: bool = True
    approvals: List[Approval] = field(default_factory=list)
    rejection_reason: Optional[str] = None
    version: int = 0
    created_utc: Optional[str] = None
    updated_utc: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != ExpenseStatus.PENDING

    def approval_by(self, actor_id: str) -> Optional[Approval]:
        for approval in self.approvals:
            if approval.approver == actor_id:
                return approval
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "company": self.company,
            "submitted_by": self.submitted_by,
            "amount": self.amount,
            "currency": self.currency,
            "category": self.category,
            "description": self.description,
            "date": self.date,
            "status": self.status.value,
            "workflow": self.workflow,
            "current_step": self.current_step,
            "is_manager_approver": self.is_manager_approver,
            "approvals": [a.to_dict() for a in self.approvals],
            "rejection_reason": self.rejection_reason,
            "version": self.version,
            "created_utc": self.created_utc,
            "updated_utc": self.updated_utc,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Expense":
        return cls(
            id=data["id"],
            company=data["company"],
            submitted_by=str(data["submitted_by"]),
            amount=float(data["amount"]),
            currency=data.get("currency", "USD"),
            category=data.get("category", "Other"),
            description=data.get("description") or "",
            date=data.get("date"),
            status=ExpenseStatus(data.get("status", ExpenseStatus.PENDING.value)),
            workflow=data.get("workflow"),
            current_step=int(data.get("current_step", 0)),
            is_manager_approver=bool(data.get("is_manager_approver", True)),
            approvals=[Approval.from_dict(a) for a in data.get("approvals") or []],
            rejection_reason=data.get("rejection_reason"),
            version=int(data.get("version", 0)),
            created_utc=data.get("created_utc"),
            updated_utc=data.get("updated_utc"),
        )
