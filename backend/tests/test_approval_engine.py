"""
Unit tests for the Approval Engine.
Tests the decision logic in services/approval/engine.py
"""
import pytest

from services.approval.engine import (
    ApprovalEngine,
    evaluate_rules,
    is_step_satisfied,
    manager_approved,
)
from services.approval.errors import (
    AlreadyReviewed,
    DuplicateAction,
    NoActionRequired,
    NotAssignedApprover,
    StepAlreadySatisfied,
    WrongRole,
)
from services.approval.models import (
    Approval,
    ApprovalMode,
    Decision,
    Expense,
    ExpenseStatus,
    HybridRule,
    NoRule,
    PercentageRule,
    RoleStep,
    SpecificApproverRule,
    User,
    UserStep,
    WorkflowDefinition,
)
from services.approval_config import ManagerApprovalPolicy

COMPANY = "co-1"


def make_user(user_id, role="employee", manager=None, company=COMPANY):
    return User(id=user_id, company=company, role=role, manager=manager)


def make_expense(workflow_id="wf-1", is_manager_approver=False, **kwargs):
    return Expense(
        id=kwargs.pop("id", "exp-1"),
        company=COMPANY,
        submitted_by="emp",
        amount=120.0,
        currency="USD",
        category="Travel",
        description="Client visit",
        date="2026-10-01",
        workflow=workflow_id,
        is_manager_approver=is_manager_approver,
        **kwargs
    )


def role_workflow(*roles, rules=None):
    return WorkflowDefinition(
        id="wf-1",
        company=COMPANY,
        name="Standard",
        steps=[RoleStep(step_index=i, approver_role=r) for i, r in enumerate(roles)],
        rules=rules or NoRule(),
    )


@pytest.fixture
def engine():
    return ApprovalEngine(manager_policy=ManagerApprovalPolicy.DIRECT, default_threshold=60)


FINANCE = make_user("fin", role="finance")
DIRECTOR = make_user("dir", role="director")
MANAGER = make_user("mgr", role="manager")
OTHER_MANAGER = make_user("mgr-2", role="manager")


class TestRequiredRole:
    """Required-actor resolution."""

    def test_terminal_expense_requires_nobody(self, engine):
        """Approved and rejected expenses have no required actor."""
        for status in (ExpenseStatus.APPROVED, ExpenseStatus.REJECTED):
            expense = make_expense(status=status)
            assert engine.required_role(expense, role_workflow("finance")) is None

    def test_manager_prestep_comes_first(self, engine):
        """With the manager gate on, the manager acts before any workflow step."""
        expense = make_expense(is_manager_approver=True)
        required = engine.required_role(expense, role_workflow("finance"))
        assert required.role == "manager"
        assert required.is_manager_prestep
        assert required.step_index is None

    def test_manager_prestep_applies_without_workflow(self, engine):
        """The manager gate does not depend on a configured workflow."""
        expense = make_expense(workflow_id=None, is_manager_approver=True)
        assert engine.required_role(expense, None).role == "manager"

    def test_no_workflow_no_gate(self, engine):
        """Nothing to route when there is neither a gate nor a workflow."""
        expense = make_expense(workflow_id=None)
        assert engine.required_role(expense, None) is None

    def test_role_step(self, engine):
        """A role step requires its approver role."""
        expense = make_expense()
        required = engine.required_role(expense, role_workflow("finance", "director"))
        assert required.role == "finance"
        assert required.step_index == 0

    def test_user_step_requires_users_pseudo_role(self, engine):
        """A member step resolves to the 'users' pseudo-role."""
        workflow = WorkflowDefinition(
            id="wf-1", company=COMPANY, name="Members",
            steps=[UserStep(step_index=0, approver_users=("a", "b"))],
        )
        assert engine.required_role(make_expense(), workflow).role == "users"

    def test_steps_exhausted(self, engine):
        """current_step past the last step means nothing is required."""
        expense = make_expense(current_step=2)
        assert engine.required_role(expense, role_workflow("finance", "director")) is None

    def test_resolution_is_side_effect_free(self, engine):
        """Calling required_role repeatedly does not touch the expense."""
        expense = make_expense(is_manager_approver=True)
        before = expense.to_dict()
        for _ in range(3):
            engine.required_role(expense, role_workflow("finance"))
        assert expense.to_dict() == before


class TestSequentialRoleSteps:
    """Role-based step advancement (no completion rule)."""

    def test_two_step_workflow(self, engine):
        """Finance then director: pending after the first, approved after the second."""
        expense = make_expense()
        workflow = role_workflow("finance", "director")

        engine.record_decision(expense, workflow, FINANCE, Decision.APPROVED, "ok")
        assert expense.current_step == 1
        assert expense.status == ExpenseStatus.PENDING

        engine.record_decision(expense, workflow, DIRECTOR, Decision.APPROVED, "ok")
        assert expense.current_step == 2
        assert expense.status == ExpenseStatus.APPROVED

    def test_approval_entry_recorded(self, engine):
        """The approval carries actor, role label, decision and step index."""
        expense = make_expense()
        engine.record_decision(expense, role_workflow("finance", "director"), FINANCE, Decision.APPROVED, "fine")

        approval = expense.approvals[0]
        assert approval.approver == "fin"
        assert approval.role == "finance"
        assert approval.decision == Decision.APPROVED
        assert approval.comment == "fine"
        assert approval.step_index == 0
        assert approval.acted_at is not None

    def test_wrong_role_rejected(self, engine):
        """Director cannot act on the finance step."""
        expense = make_expense()
        with pytest.raises(WrongRole):
            engine.record_decision(expense, role_workflow("finance", "director"), DIRECTOR, Decision.APPROVED)
        assert expense.approvals == []

    def test_legacy_role_claim(self, engine):
        """A user with only the legacy role_name still matches the step role."""
        legacy = User(id="fin-legacy", company=COMPANY, role=None, role_name="Finance")
        expense = make_expense()
        engine.record_decision(expense, role_workflow("finance", "director"), legacy, Decision.APPROVED)
        assert expense.current_step == 1

    def test_actor_from_another_company(self, engine):
        """Actors outside the expense's company are never eligible."""
        outsider = make_user("fin-x", role="finance", company="co-2")
        with pytest.raises(WrongRole):
            engine.record_decision(make_expense(), role_workflow("finance"), outsider, Decision.APPROVED)

    def test_progress_is_idempotent(self, engine):
        """Re-running progress after an approval does not advance again."""
        expense = make_expense()
        workflow = role_workflow("finance", "director", "finance")
        engine.record_decision(expense, workflow, FINANCE, Decision.APPROVED)
        assert expense.current_step == 1

        engine.progress(expense, workflow)
        engine.progress(expense, workflow)
        assert expense.current_step == 1
        assert expense.status == ExpenseStatus.PENDING

    def test_sequential_exhaustion_implies_approval(self, engine):
        """With no rule, status turns approved exactly when the last step is done."""
        expense = make_expense()
        workflow = role_workflow("finance", "director", "manager")
        actors = [FINANCE, DIRECTOR, MANAGER]

        for i, actor in enumerate(actors):
            engine.record_decision(expense, workflow, actor, Decision.APPROVED)
            done = expense.current_step == len(workflow.steps)
            assert (expense.status == ExpenseStatus.APPROVED) == done
            assert expense.current_step == i + 1


class TestManagerPrestep:
    """Manager pre-step gate."""

    def test_direct_manager_approves(self, engine):
        """The submitter's own manager satisfies the gate."""
        expense = make_expense(is_manager_approver=True)
        workflow = role_workflow("finance")
        engine.record_decision(expense, workflow, MANAGER, Decision.APPROVED, submitter_manager="mgr")

        assert manager_approved(expense)
        assert expense.approvals[0].role == "manager"
        assert expense.approvals[0].step_index is None
        assert expense.current_step == 0
        assert engine.required_role(expense, workflow).role == "finance"

    def test_other_manager_is_rejected(self, engine):
        """A different holder of the manager role cannot clear the gate."""
        expense = make_expense(is_manager_approver=True)
        with pytest.raises(WrongRole):
            engine.record_decision(
                expense, role_workflow("finance"), OTHER_MANAGER, Decision.APPROVED,
                submitter_manager="mgr"
            )
        assert expense.approvals == []

    def test_submitter_without_manager(self, engine):
        """Under the direct policy a manager-less submitter blocks everyone."""
        expense = make_expense(is_manager_approver=True)
        with pytest.raises(WrongRole):
            engine.record_decision(expense, role_workflow("finance"), MANAGER, Decision.APPROVED)

    def test_global_policy_allows_any_manager(self):
        """The global policy lets any manager-role holder clear the gate."""
        engine = ApprovalEngine(manager_policy=ManagerApprovalPolicy.GLOBAL)
        expense = make_expense(is_manager_approver=True)
        engine.record_decision(
            expense, role_workflow("finance"), OTHER_MANAGER, Decision.APPROVED,
            submitter_manager="mgr"
        )
        assert manager_approved(expense)

    def test_global_policy_still_requires_manager_role(self):
        engine = ApprovalEngine(manager_policy=ManagerApprovalPolicy.GLOBAL)
        with pytest.raises(WrongRole):
            engine.record_decision(
                make_expense(is_manager_approver=True), role_workflow("finance"),
                FINANCE, Decision.APPROVED
            )

    def test_manager_only_finalizes(self, engine):
        """No workflow: the manager's approval finishes the expense."""
        expense = make_expense(workflow_id=None, is_manager_approver=True)
        engine.record_decision(expense, None, MANAGER, Decision.APPROVED, submitter_manager="mgr")
        assert expense.status == ExpenseStatus.APPROVED

    def test_prestep_does_not_advance_manager_role_step(self, engine):
        """A manager-role workflow step is separate from the manager pre-step."""
        expense = make_expense(is_manager_approver=True)
        workflow = role_workflow("manager", "finance")

        engine.record_decision(expense, workflow, MANAGER, Decision.APPROVED, submitter_manager="mgr")
        assert expense.current_step == 0

        # Same manager cannot act twice on one expense
        with pytest.raises(DuplicateAction):
            engine.record_decision(expense, workflow, MANAGER, Decision.APPROVED, submitter_manager="mgr")

        engine.record_decision(expense, workflow, OTHER_MANAGER, Decision.APPROVED, submitter_manager="mgr")
        assert expense.current_step == 1
        assert expense.status == ExpenseStatus.PENDING


class TestUserSteps:
    """Member (user) steps."""

    @staticmethod
    def member_workflow(mode, users=("a", "b"), then_role=None):
        steps = [UserStep(step_index=0, approver_users=tuple(users), approval_mode=mode)]
        if then_role:
            steps.append(RoleStep(step_index=1, approver_role=then_role))
        return WorkflowDefinition(id="wf-1", company=COMPANY, name="Members", steps=steps)

    def test_all_mode_waits_for_every_member(self, engine):
        """ALL: first approval keeps the step, second advances it."""
        expense = make_expense()
        workflow = self.member_workflow(ApprovalMode.ALL)

        engine.record_decision(expense, workflow, make_user("a"), Decision.APPROVED)
        assert expense.current_step == 0
        assert expense.status == ExpenseStatus.PENDING
        assert expense.approvals[0].role == "users"

        engine.record_decision(expense, workflow, make_user("b"), Decision.APPROVED)
        assert expense.current_step == 1
        assert expense.status == ExpenseStatus.APPROVED

    def test_any_mode_advances_on_first(self, engine):
        """ANY: one member approval advances to the next step."""
        expense = make_expense()
        workflow = self.member_workflow(ApprovalMode.ANY, then_role="finance")

        engine.record_decision(expense, workflow, make_user("a"), Decision.APPROVED)
        assert expense.current_step == 1
        assert engine.required_role(expense, workflow).role == "finance"

        # b is an employee, the finance step is now current
        with pytest.raises(WrongRole):
            engine.record_decision(expense, workflow, make_user("b"), Decision.APPROVED)

    def test_non_member(self, engine):
        """Users outside the member set are refused."""
        with pytest.raises(NotAssignedApprover):
            engine.record_decision(
                make_expense(), self.member_workflow(ApprovalMode.ANY), make_user("c"), Decision.APPROVED
            )

    def test_step_already_satisfied(self, engine):
        """A satisfied member step refuses further member actions."""
        expense = make_expense(approvals=[
            Approval(approver="a", role="users", decision=Decision.APPROVED, step_index=0),
        ])
        with pytest.raises(StepAlreadySatisfied):
            engine.record_decision(
                expense, self.member_workflow(ApprovalMode.ANY), make_user("b"), Decision.APPROVED
            )

    def test_duplicate_action(self, engine):
        """A member who already acted cannot act again."""
        expense = make_expense()
        workflow = self.member_workflow(ApprovalMode.ALL, users=("a", "b", "c"))
        engine.record_decision(expense, workflow, make_user("a"), Decision.APPROVED)

        with pytest.raises(DuplicateAction):
            engine.record_decision(expense, workflow, make_user("a"), Decision.APPROVED)
        assert len(expense.approvals) == 1

    def test_member_step_after_member_acted_earlier(self, engine):
        """A member who approved an earlier step does not satisfy a later member step."""
        expense = make_expense()
        workflow = WorkflowDefinition(id="wf-1", company=COMPANY, name="Finance then members", steps=[
            RoleStep(step_index=0, approver_role="finance"),
            UserStep(step_index=1, approver_users=("fin", "b"), approval_mode=ApprovalMode.ANY),
        ])

        engine.record_decision(expense, workflow, FINANCE, Decision.APPROVED)
        assert expense.current_step == 1
        assert expense.status == ExpenseStatus.PENDING

        assert [e.id for e, _ in engine.pending_for(make_user("b"), [(expense, workflow, None)])] == ["exp-1"]
        with pytest.raises(DuplicateAction):
            engine.check_actor(expense, workflow, FINANCE)

        engine.record_decision(expense, workflow, make_user("b"), Decision.APPROVED)
        assert expense.status == ExpenseStatus.APPROVED
        assert expense.approvals[-1].step_index == 1

    def test_satisfaction_helper(self):
        step = UserStep(step_index=0, approver_users=("a", "b"), approval_mode=ApprovalMode.ALL)
        one = [Approval(approver="a", role="users", decision=Decision.APPROVED, step_index=0)]
        both = one + [Approval(approver="b", role="users", decision=Decision.APPROVED, step_index=0)]
        assert is_step_satisfied(step, one) is False
        assert is_step_satisfied(step, both) is True

        # Approvals given at another step do not count towards this one
        elsewhere = [Approval(approver="a", role="users", decision=Decision.APPROVED, step_index=1)]
        assert is_step_satisfied(UserStep(step_index=0, approver_users=("a",)), elsewhere) is False

        empty = UserStep(step_index=0, approver_users=(), approval_mode=ApprovalMode.ALL)
        assert is_step_satisfied(empty, both) is False


class TestRejection:
    """Rejection terminates immediately."""

    def test_reject_mid_workflow(self, engine):
        expense = make_expense()
        workflow = role_workflow("finance", "director", "finance")
        engine.record_decision(expense, workflow, FINANCE, Decision.APPROVED)
        engine.record_decision(expense, workflow, DIRECTOR, Decision.REJECTED, "Missing receipt")

        assert expense.status == ExpenseStatus.REJECTED
        assert expense.rejection_reason == "Missing receipt"
        assert expense.current_step == 1
        assert expense.approvals[-1].decision == Decision.REJECTED

    def test_manager_rejects(self, engine):
        expense = make_expense(is_manager_approver=True)
        engine.record_decision(
            expense, role_workflow("finance"), MANAGER, Decision.REJECTED, "Not business related",
            submitter_manager="mgr"
        )
        assert expense.status == ExpenseStatus.REJECTED


class TestMonotonicity:
    """Terminal expenses never change."""

    @pytest.mark.parametrize("status", [ExpenseStatus.APPROVED, ExpenseStatus.REJECTED])
    def test_terminal_expense_is_frozen(self, engine, status):
        expense = make_expense(status=status, current_step=1)
        before = expense.to_dict()

        for decision in (Decision.APPROVED, Decision.REJECTED):
            with pytest.raises(AlreadyReviewed):
                engine.record_decision(expense, role_workflow("finance", "director"), DIRECTOR, decision)

        engine.progress(expense, role_workflow("finance", "director"))
        assert expense.to_dict() == before

    def test_no_action_required(self, engine):
        """Pending with nothing left to route reports NoActionRequired."""
        expense = make_expense(workflow_id=None)
        with pytest.raises(NoActionRequired):
            engine.record_decision(expense, None, FINANCE, Decision.APPROVED)


class TestCompletionRules:
    """Conditional completion rules."""

    def test_percentage_short_circuits(self, engine):
        """50% of two steps is reached by the first approval."""
        expense = make_expense()
        workflow = role_workflow("finance", "director", rules=PercentageRule(threshold=50))
        engine.record_decision(expense, workflow, FINANCE, Decision.APPROVED)

        assert expense.status == ExpenseStatus.APPROVED
        assert expense.current_step == 1
        assert engine.required_role(expense, workflow) is None

    def test_percentage_counts_manager_prestep(self, engine):
        """Total includes the manager gate: 1/3 pending, 2/3 reaches 60%."""
        expense = make_expense(is_manager_approver=True)
        workflow = role_workflow("finance", "director", rules=PercentageRule(threshold=60))

        engine.record_decision(expense, workflow, MANAGER, Decision.APPROVED, submitter_manager="mgr")
        assert expense.status == ExpenseStatus.PENDING

        engine.record_decision(expense, workflow, FINANCE, Decision.APPROVED, submitter_manager="mgr")
        assert expense.status == ExpenseStatus.APPROVED

    def test_specific_approver(self, engine):
        """Finance approval finishes the workflow regardless of later steps."""
        expense = make_expense()
        workflow = role_workflow("finance", "director", "manager", rules=SpecificApproverRule(role="finance"))
        engine.record_decision(expense, workflow, FINANCE, Decision.APPROVED)
        assert expense.status == ExpenseStatus.APPROVED

    def test_hybrid_either_condition(self, engine):
        expense = make_expense()
        workflow = role_workflow("finance", "director", "manager", rules=HybridRule(threshold=100, role="finance"))
        engine.record_decision(expense, workflow, FINANCE, Decision.APPROVED)
        assert evaluate_rules(expense, workflow) == (True, "special_finance")

        expense = make_expense()
        workflow = role_workflow("finance", "director", rules=HybridRule(threshold=50, role="director"))
        engine.record_decision(expense, workflow, FINANCE, Decision.APPROVED)
        assert evaluate_rules(expense, workflow) == (True, "percentage_50")

    def test_no_rule_never_fires(self, engine):
        expense = make_expense(approvals=[
            Approval(approver="fin", role="finance", decision=Decision.APPROVED, step_index=0),
        ])
        assert evaluate_rules(expense, role_workflow("finance", "director")) == (False, None)
        assert evaluate_rules(expense, None) == (False, None)

    def test_rule_evaluation_is_pure(self):
        """Same history, same verdict."""
        expense = make_expense(approvals=[
            Approval(approver="fin", role="finance", decision=Decision.APPROVED, step_index=0),
        ])
        workflow = role_workflow("finance", "director", "manager", rules=PercentageRule(threshold=30))
        first = evaluate_rules(expense, workflow)
        second = evaluate_rules(expense, workflow)
        assert first == second == (True, "percentage_30")
        assert expense.status == ExpenseStatus.PENDING

    def test_rejections_do_not_count_towards_percentage(self):
        expense = make_expense(approvals=[
            Approval(approver="fin", role="finance", decision=Decision.REJECTED, step_index=0),
        ])
        workflow = role_workflow("finance", "director", rules=PercentageRule(threshold=50))
        assert evaluate_rules(expense, workflow) == (False, None)


class TestPendingFor:
    """Pending queue filtering."""

    def test_pending_for_filters_by_actor(self, engine):
        workflow = role_workflow("finance", "director")
        waiting_on_finance = make_expense(id="e1")
        waiting_on_director = make_expense(id="e2", current_step=1)
        waiting_on_manager = make_expense(id="e3", is_manager_approver=True)

        items = [
            (waiting_on_finance, workflow, "mgr"),
            (waiting_on_director, workflow, "mgr"),
            (waiting_on_manager, workflow, "mgr"),
        ]

        finance_queue = engine.pending_for(FINANCE, items)
        assert [e.id for e, _ in finance_queue] == ["e1"]
        assert finance_queue[0][1].role == "finance"

        manager_queue = engine.pending_for(MANAGER, items)
        assert [e.id for e, _ in manager_queue] == ["e3"]

        assert engine.pending_for(OTHER_MANAGER, items) == []
        assert engine.can_act(waiting_on_director, workflow, DIRECTOR) is True
