"""
Expense Hub - Approval Engine

Deterministic decision logic for routing an expense through its approvals.
The engine is pure business logic with no HTTP or DB calls: callers load the
expense, its workflow and the submitter's manager, hand them in, and persist
whatever comes back.

Routing order:
1. Manager pre-step (when expense.is_manager_approver) - satisfied by the
   submitter's own manager, or by any manager under the global policy
2. Workflow steps in step_index order, tracked by expense.current_step
3. Completion rule, evaluated after every approval, which may finish the
   expense before the steps run out
Any rejection terminates the expense immediately.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from services.approval_config import (
    DEFAULT_PERCENTAGE_THRESHOLD,
    MANAGER_APPROVAL_POLICY,
    ManagerApprovalPolicy,
)

from .errors import (
    AlreadyReviewed,
    ApprovalError,
    DuplicateAction,
    NoActionRequired,
    NotAssignedApprover,
    StepAlreadySatisfied,
    WrongRole,
)
from .models import (
    MANAGER_ROLE,
    USERS_ROLE,
    Approval,
    ApprovalMode,
    CompletionRule,
    Decision,
    Expense,
    ExpenseStatus,
    HybridRule,
    NoRule,
    PercentageRule,
    RoleStep,
    SpecificApproverRule,
    Step,
    User,
    UserStep,
    WorkflowDefinition,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequiredActor:
    """
    Who must act next. `role` is "manager" for the pre-step, the step's role
    for a RoleStep and "users" for a UserStep; `step` is None for the pre-step.
    """
    role: str
    step: Optional[Step] = None

    @property
    def is_manager_prestep(self) -> bool:
        return self.step is None

    @property
    def step_index(self) -> Optional[int]:
        return self.step.step_index if self.step is not None else None


def manager_approved(expense: Expense) -> bool:
    """Has the manager pre-step been approved?"""
    return any(
        a.role == MANAGER_ROLE and a.decision == Decision.APPROVED and a.step_index is None
        for a in expense.approvals
    )


def manager_gate_pending(expense: Expense) -> bool:
    return expense.is_manager_approver and not manager_approved(expense)


def is_step_satisfied(step: UserStep, approvals: List[Approval]) -> bool:
    """
    ALL: every member approved. ANY: at least one member approved.

    Only approvals recorded against this step count.
    """
    members = set(step.approver_users)
    approved = {
        a.approver for a in approvals
        if a.decision == Decision.APPROVED
        and a.approver in members
        and a.step_index == step.step_index
    }
    if step.approval_mode == ApprovalMode.ALL:
        return bool(members) and approved == members
    return bool(approved)


def evaluate_rules(
    expense: Expense,
    workflow: Optional[WorkflowDefinition]
) -> Tuple[bool, Optional[str]]:
    """
    Evaluate the workflow's completion rule against the whole approval history.

    Pure function of (expense.approvals, workflow); evaluating it twice gives
    the same verdict.

    Returns:
        (approved, reason)
    """
    if workflow is None:
        return (False, None)

    rule: CompletionRule = workflow.rules
    if isinstance(rule, NoRule):
        return (False, None)

    approvals = expense.approvals

    def special_role_approved(role: str) -> bool:
        return any(a.role == role and a.decision == Decision.APPROVED for a in approvals)

    def percentage_reached(threshold: int) -> bool:
        total = len(workflow.steps) + (1 if expense.is_manager_approver else 0)
        approved_count = sum(1 for a in approvals if a.decision == Decision.APPROVED)
        return approved_count / max(1, total) * 100 >= threshold

    if isinstance(rule, SpecificApproverRule):
        if special_role_approved(rule.role):
            return (True, f"special_{rule.role}")
    elif isinstance(rule, PercentageRule):
        if percentage_reached(rule.threshold):
            return (True, f"percentage_{rule.threshold}")
    elif isinstance(rule, HybridRule):
        if percentage_reached(rule.threshold):
            return (True, f"percentage_{rule.threshold}")
        if special_role_approved(rule.role):
            return (True, f"special_{rule.role}")

    return (False, None)


class ApprovalEngine:
    """
    Approval state machine over (Expense, WorkflowDefinition).

    required_role() is side-effect free. record_decision() and progress()
    mutate the expense in place and return it.
    """

    def __init__(
        self,
        manager_policy: ManagerApprovalPolicy = MANAGER_APPROVAL_POLICY,
        default_threshold: int = DEFAULT_PERCENTAGE_THRESHOLD
    ):
        self.manager_policy = ManagerApprovalPolicy(manager_policy)
        self.default_threshold = default_threshold

    # -------------------------------------------------------------------------
    # Required-actor resolution
    # -------------------------------------------------------------------------

    @staticmethod
    def current_step(expense: Expense, workflow: Optional[WorkflowDefinition]) -> Optional[Step]:
        if workflow is None or expense.current_step >= len(workflow.steps):
            return None
        return workflow.steps[expense.current_step]

    def required_role(
        self,
        expense: Expense,
        workflow: Optional[WorkflowDefinition]
    ) -> Optional[RequiredActor]:
        """Who must act next, or None when nothing more is required."""
        if expense.status != ExpenseStatus.PENDING:
            return None
        if manager_gate_pending(expense):
            return RequiredActor(role=MANAGER_ROLE)
        step = self.current_step(expense, workflow)
        if step is None:
            return None
        if isinstance(step, UserStep):
            return RequiredActor(role=USERS_ROLE, step=step)
        return RequiredActor(role=step.approver_role, step=step)

    # -------------------------------------------------------------------------
    # Eligibility
    # -------------------------------------------------------------------------

    def check_actor(
        self,
        expense: Expense,
        workflow: Optional[WorkflowDefinition],
        actor: User,
        submitter_manager: Optional[str] = None
    ) -> RequiredActor:
        """
        Run the decision preconditions in order; the first failure raises.

        Returns the RequiredActor the actor is acting as.
        """
        if expense.status != ExpenseStatus.PENDING:
            raise AlreadyReviewed()

        required = self.required_role(expense, workflow)
        if required is None:
            raise NoActionRequired()

        if actor.company != expense.company:
            raise WrongRole("Actor belongs to another company")

        if required.is_manager_prestep:
            self._check_manager(actor, submitter_manager)
        elif isinstance(required.step, UserStep):
            if actor.id not in required.step.approver_users:
                raise NotAssignedApprover()
            if is_step_satisfied(required.step, expense.approvals):
                raise StepAlreadySatisfied()
        elif actor.effective_role != required.role:
            raise WrongRole(
                f"This step requires role '{required.role}'",
                required_role=required.role
            )

        if expense.approval_by(actor.id) is not None:
            raise DuplicateAction()

        return required

    def _check_manager(self, actor: User, submitter_manager: Optional[str]) -> None:
        if self.manager_policy == ManagerApprovalPolicy.GLOBAL:
            if actor.effective_role != MANAGER_ROLE:
                raise WrongRole("This step requires role 'manager'", required_role=MANAGER_ROLE)
            return
        if submitter_manager is None:
            raise WrongRole("Submitter has no manager assigned", required_role=MANAGER_ROLE)
        if actor.id != submitter_manager:
            raise WrongRole(
                "Only the submitter's manager may approve at this stage",
                required_role=MANAGER_ROLE
            )

    def can_act(
        self,
        expense: Expense,
        workflow: Optional[WorkflowDefinition],
        actor: User,
        submitter_manager: Optional[str] = None
    ) -> bool:
        """True when `actor` could record a decision on `expense` right now."""
        try:
            self.check_actor(expense, workflow, actor, submitter_manager)
        except ApprovalError:
            return False
        return True

    # -------------------------------------------------------------------------
    # Decisions
    # -------------------------------------------------------------------------

    def record_decision(
        self,
        expense: Expense,
        workflow: Optional[WorkflowDefinition],
        actor: User,
        decision: Decision,
        comment: str = "",
        submitter_manager: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Expense:
        """
        Validate and record one actor's decision, then move the expense on.

        Raises an ApprovalError subclass when a precondition fails; the
        expense is left untouched in that case.
        """
        decision = Decision(decision)
        try:
            required = self.check_actor(expense, workflow, actor, submitter_manager)
        except ApprovalError as e:
            logger.warning(
                "Decision blocked: expense=%s, actor=%s, decision=%s, reason=%s",
                expense.id, actor.id, decision.value, e.kind
            )
            raise

        acted_at = (now or datetime.now(timezone.utc)).isoformat()
        expense.approvals.append(Approval(
            approver=actor.id,
            role=required.role,
            decision=decision,
            comment=comment or "",
            acted_at=acted_at,
            step_index=required.step_index,
        ))
        expense.updated_utc = acted_at

        logger.info(
            "Decision recorded: expense=%s, actor=%s, role=%s, step=%s, decision=%s",
            expense.id, actor.id, required.role, required.step_index, decision.value
        )

        if decision == Decision.REJECTED:
            expense.status = ExpenseStatus.REJECTED
            expense.rejection_reason = comment
            logger.info("Expense %s rejected by %s", expense.id, actor.id)
            return expense

        return self.progress(expense, workflow)

    def progress(self, expense: Expense, workflow: Optional[WorkflowDefinition]) -> Expense:
        """
        Advance the step pointer for the step just satisfied and finalize
        when a completion rule fires or the steps run out.
        """
        if expense.status != ExpenseStatus.PENDING:
            return expense

        if manager_gate_pending(expense):
            return expense

        if workflow is None:
            self._finalize(expense, "no_workflow")
            return expense

        step = self.current_step(expense, workflow)
        if step is not None and self._step_just_satisfied(expense, step):
            expense.current_step += 1
            logger.info(
                "Expense %s advanced to step %d of %d",
                expense.id, expense.current_step, len(workflow.steps)
            )

        approved, reason = evaluate_rules(expense, workflow)
        if approved:
            self._finalize(expense, reason)
            return expense

        if expense.current_step >= len(workflow.steps):
            self._finalize(expense, "steps_completed")

        return expense

    @staticmethod
    def _step_just_satisfied(expense: Expense, step: Step) -> bool:
        if isinstance(step, UserStep):
            return is_step_satisfied(step, expense.approvals)
        if not expense.approvals:
            return False
        last = expense.approvals[-1]
        return (
            last.decision == Decision.APPROVED
            and last.step_index == step.step_index
            and last.role == step.approver_role
        )

    @staticmethod
    def _finalize(expense: Expense, reason: Optional[str]) -> None:
        expense.status = ExpenseStatus.APPROVED
        logger.info("Expense %s approved (%s)", expense.id, reason)

    def pending_for(
        self,
        actor: User,
        items: List[Tuple[Expense, Optional[WorkflowDefinition], Optional[str]]]
    ) -> List[Tuple[Expense, RequiredActor]]:
        """
        Filter (expense, workflow, submitter_manager) triples down to the
        ones `actor` can act on now, paired with the role they act as.
        """
        result = []
        for expense, workflow, submitter_manager in items:
            if self.can_act(expense, workflow, actor, submitter_manager):
                result.append((expense, self.required_role(expense, workflow)))
        return result
