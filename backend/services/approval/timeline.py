"""
Expense Hub - Approval Timeline

Read-side projection of an expense's approval path for display: the manager
pre-step (when enabled) followed by each workflow step, each annotated with
approved / rejected / pending / skipped. Derived data only; never feed it
back into the engine.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from .engine import is_step_satisfied
from .models import (
    MANAGER_ROLE,
    USERS_ROLE,
    Approval,
    Decision,
    Expense,
    ExpenseStatus,
    RoleStep,
    UserStep,
    WorkflowDefinition,
)


class TimelineStatus(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    PENDING = "pending"
    SKIPPED = "skipped"


MANAGER_STEP_INDEX = -1


def _unreached_status(expense: Expense) -> str:
    if expense.status == ExpenseStatus.REJECTED:
        return TimelineStatus.SKIPPED.value
    return TimelineStatus.PENDING.value


def _single_entry(
    label: str,
    role: str,
    step_index: int,
    approval: Optional[Approval],
    expense: Expense
) -> Dict[str, Any]:
    return {
        "label": label,
        "role": role,
        "step_index": step_index,
        "status": approval.decision.value if approval else _unreached_status(expense),
        "acted_at": approval.acted_at if approval else None,
        "approver": approval.approver if approval else None,
        "comment": approval.comment if approval else None,
    }


def _member_entry(step: UserStep, expense: Expense) -> Dict[str, Any]:
    members = set(step.approver_users)
    member_approvals = [
        a for a in expense.approvals
        if a.approver in members and a.step_index == step.step_index
    ]

    if any(a.decision == Decision.REJECTED for a in member_approvals):
        status = TimelineStatus.REJECTED.value
    elif is_step_satisfied(step, member_approvals):
        status = TimelineStatus.APPROVED.value
    else:
        status = _unreached_status(expense)

    return {
        "label": f"Members ({len(members)})",
        "role": USERS_ROLE,
        "step_index": step.step_index,
        "approval_mode": step.approval_mode.value,
        "status": status,
        "acted_at": None,
        "approver": None,
        "comment": None,
        "approvals": [
            {"approver": a.approver, "acted_at": a.acted_at, "decision": a.decision.value}
            for a in member_approvals
        ],
    }


def build_timeline(
    expense: Expense,
    workflow: Optional[WorkflowDefinition]
) -> List[Dict[str, Any]]:
    """Display-ordered virtual steps for an expense."""
    steps: List[Dict[str, Any]] = []

    if expense.is_manager_approver:
        manager_approval = next(
            (a for a in expense.approvals if a.role == MANAGER_ROLE and a.step_index is None),
            None
        )
        steps.append(_single_entry(
            "Manager", MANAGER_ROLE, MANAGER_STEP_INDEX, manager_approval, expense
        ))

    if workflow is None:
        return steps

    for step in sorted(workflow.steps, key=lambda s: s.step_index):
        if isinstance(step, UserStep):
            steps.append(_member_entry(step, expense))
        elif isinstance(step, RoleStep):
            approval = next(
                (a for a in expense.approvals if a.step_index == step.step_index),
                None
            )
            steps.append(_single_entry(
                step.approver_role.capitalize(),
                step.approver_role,
                step.step_index,
                approval,
                expense
            ))

    return steps
