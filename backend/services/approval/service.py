"""
Expense Hub - Approval Service

Orchestrates the approval engine against the store and the audit log:

1. Load the expense, its workflow and the submitter's manager
2. Check the actor (engine preconditions, then the role registry for role steps)
3. Record the decision and progress the expense
4. Save with an optimistic version check, reloading and re-running on conflict
5. Append to the audit log once the save has committed

Expenses are independent of one another; only decisions on the same
expense are serialized, through the version check.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from services.approval_config import DEFAULT_CURRENCY, SAVE_RETRY_LIMIT

from .audit import AuditRecorder
from .engine import ApprovalEngine, RequiredActor
from .errors import (
    ConcurrentModification,
    InvalidRole,
    InvalidWorkflowReference,
    NotFound,
    ValidationFailed,
    WrongRole,
)
from .models import (
    ADMIN_ROLE,
    EMPLOYEE_ROLE,
    EXPENSE_CATEGORIES,
    MANAGER_ROLE,
    AuditAction,
    CompletionRule,
    Decision,
    Expense,
    ExpenseStatus,
    HybridRule,
    PercentageRule,
    Role,
    RoleStep,
    RuleType,
    SpecificApproverRule,
    User,
    UserStep,
    WorkflowDefinition,
    normalize_role_name,
    rule_from_dict,
    step_from_dict,
    utc_now_iso,
)
from .roles import ApproverResolver, ensure_role_deletable, validate_new_role_name
from .timeline import build_timeline

logger = logging.getLogger(__name__)

# Marks a keyword argument the caller did not pass
UNCHANGED = object()


def require_admin(actor: User) -> None:
    if actor.effective_role != ADMIN_ROLE:
        raise WrongRole("Access denied. Admin only.", required_role=ADMIN_ROLE)


class ApprovalService:

    def __init__(
        self,
        store,
        audit: AuditRecorder,
        resolver: ApproverResolver,
        engine: Optional[ApprovalEngine] = None,
        retry_limit: int = SAVE_RETRY_LIMIT
    ):
        self.store = store
        self.audit = audit
        self.resolver = resolver
        self.engine = engine or ApprovalEngine()
        self.retry_limit = max(1, retry_limit)

    # =========================================================================
    # LOADING
    # =========================================================================

    async def _load_in_company(self, expense_id: str, actor: User) -> Expense:
        expense = await self.store.load_expense(expense_id)
        if expense is None or expense.company != actor.company:
            raise NotFound("Expense not found")
        return expense

    async def _names_actor(self, expense: Expense, actor: User) -> bool:
        """True when the actor approves, or has acted on, this expense."""
        if expense.approval_by(actor.id) is not None:
            return True
        if await self.submitter_manager(expense) == actor.id:
            return True
        workflow = await self.load_workflow_for(expense)
        return workflow is not None and any(
            isinstance(step, UserStep) and actor.id in step.approver_users
            for step in workflow.steps
        )

    async def load_expense(self, expense_id: str, actor: User) -> Expense:
        """
        Company-scoped read. Employees see their own expenses and the ones
        that name them as an approver.
        """
        expense = await self._load_in_company(expense_id, actor)
        if actor.effective_role == EMPLOYEE_ROLE and expense.submitted_by != actor.id:
            if not await self._names_actor(expense, actor):
                raise WrongRole("Access denied")
        return expense

    async def load_workflow_for(self, expense: Expense) -> Optional[WorkflowDefinition]:
        if not expense.workflow:
            return None
        workflow = await self.store.load_workflow(expense.workflow)
        if workflow is None or workflow.company != expense.company:
            raise InvalidWorkflowReference(workflow_id=expense.workflow)
        return workflow

    async def submitter_manager(self, expense: Expense) -> Optional[str]:
        submitter = await self.store.load_user(expense.submitted_by)
        return submitter.manager if submitter else None

    async def required_role(self, expense: Expense) -> Optional[RequiredActor]:
        workflow = await self.load_workflow_for(expense)
        return self.engine.required_role(expense, workflow)

    # =========================================================================
    # DECISIONS
    # =========================================================================

    async def _check_role_capability(self, expense: Expense, required: RequiredActor, actor: User) -> None:
        if required.is_manager_prestep or isinstance(required.step, UserStep):
            return
        if not await self.resolver.is_approver(expense.company, actor.effective_role):
            raise WrongRole(
                f"Role '{actor.effective_role}' is not an approver role",
                required_role=required.role
            )

    async def record_decision(
        self,
        expense_id: str,
        actor: User,
        decision: Decision,
        comment: str = ""
    ) -> Expense:
        """Apply one decision atomically with respect to other decisions on the same expense."""
        decision = Decision(decision)
        last_conflict: Optional[ConcurrentModification] = None

        for attempt in range(1, self.retry_limit + 1):
            # Company scope only; check_actor decides eligibility
            expense = await self._load_in_company(expense_id, actor)
            workflow = await self.load_workflow_for(expense)
            manager_id = await self.submitter_manager(expense)

            required = self.engine.check_actor(expense, workflow, actor, manager_id)
            await self._check_role_capability(expense, required, actor)

            self.engine.record_decision(expense, workflow, actor, decision, comment, manager_id)
            try:
                await self.store.save_expense(expense)
            except ConcurrentModification as e:
                last_conflict = e
                logger.info(
                    "Concurrent decision on expense %s (attempt %d/%d), reloading",
                    expense_id, attempt, self.retry_limit
                )
                continue

            action = AuditAction.APPROVE if decision == Decision.APPROVED else AuditAction.REJECT
            await self.audit.record(
                expense.id, action.value, actor.id, comment or "",
                expense.approvals[-1].acted_at
            )
            return expense

        logger.warning("Giving up on expense %s after %d conflicts", expense_id, self.retry_limit)
        raise last_conflict

    async def approve(self, expense_id: str, actor: User, comment: str = "") -> Expense:
        return await self.record_decision(expense_id, actor, Decision.APPROVED, comment)

    async def reject(self, expense_id: str, actor: User, reason: str) -> Expense:
        if not (reason or "").strip():
            raise ValidationFailed("Rejection reason is required")
        return await self.record_decision(expense_id, actor, Decision.REJECTED, reason)

    async def progress(self, expense_id: str) -> Expense:
        """Re-run advancement and finalization for a stored expense."""
        for _ in range(self.retry_limit):
            expense = await self.store.load_expense(expense_id)
            if expense is None:
                raise NotFound("Expense not found")
            before = (expense.status, expense.current_step)
            workflow = await self.load_workflow_for(expense)
            self.engine.progress(expense, workflow)
            if (expense.status, expense.current_step) == before:
                return expense
            try:
                return await self.store.save_expense(expense)
            except ConcurrentModification:
                continue
        raise ConcurrentModification(expense_id, -1)

    # =========================================================================
    # READ SIDE
    # =========================================================================

    async def timeline(self, expense_id: str, actor: User) -> Dict[str, Any]:
        expense = await self.load_expense(expense_id, actor)
        workflow = await self.load_workflow_for(expense)
        return {
            "expense": expense.to_dict(),
            "steps": build_timeline(expense, workflow),
            "approvals": [a.to_dict() for a in expense.approvals],
            "audit_logs": await self.audit.list_for_expense(expense.id),
        }

    async def pending_for(self, actor: User) -> List[Tuple[Expense, RequiredActor]]:
        """Pending company expenses the actor can act on right now."""
        expenses = await self.store.list_expenses(actor.company, status=ExpenseStatus.PENDING.value)
        workflows: Dict[str, Optional[WorkflowDefinition]] = {}
        items = []
        for expense in expenses:
            if expense.workflow and expense.workflow not in workflows:
                workflows[expense.workflow] = await self.store.load_workflow(expense.workflow)
            workflow = workflows.get(expense.workflow) if expense.workflow else None
            if expense.workflow and workflow is None:
                logger.warning("Expense %s references missing workflow %s", expense.id, expense.workflow)
                continue
            items.append((expense, workflow, await self.submitter_manager(expense)))

        result = []
        for expense, required in self.engine.pending_for(actor, items):
            try:
                await self._check_role_capability(expense, required, actor)
            except WrongRole:
                continue
            result.append((expense, required))
        return result

    async def list_expenses(self, actor: User, status: Optional[str] = None) -> List[Expense]:
        submitted_by = actor.id if actor.effective_role == EMPLOYEE_ROLE else None
        return await self.store.list_expenses(actor.company, status=status, submitted_by=submitted_by)

    # =========================================================================
    # SUBMISSION
    # =========================================================================

    async def submit_expense(
        self,
        actor: User,
        amount: float,
        category: str,
        description: str,
        date: str,
        currency: Optional[str] = None,
        workflow_id: Optional[str] = None,
        is_manager_approver: bool = True
    ) -> Expense:
        if actor.effective_role != EMPLOYEE_ROLE:
            raise WrongRole("Only employees can submit expenses", required_role=EMPLOYEE_ROLE)
        if amount is None or amount <= 0:
            raise ValidationFailed("Amount must be positive")
        if category not in EXPENSE_CATEGORIES:
            raise ValidationFailed(f"Unknown category '{category}'", categories=EXPENSE_CATEGORIES)
        if not (description or "").strip() or not date:
            raise ValidationFailed("All fields are required")

        if workflow_id:
            workflow = await self.store.load_workflow(workflow_id)
            if workflow is None or workflow.company != actor.company:
                raise InvalidWorkflowReference(workflow_id=workflow_id)

        now = utc_now_iso()
        expense = Expense(
            id=str(uuid.uuid4()),
            company=actor.company,
            submitted_by=actor.id,
            amount=float(amount),
            currency=(currency or DEFAULT_CURRENCY).upper(),
            category=category,
            description=description,
            date=date,
            workflow=workflow_id or None,
            is_manager_approver=is_manager_approver,
            created_utc=now,
            updated_utc=now,
        )
        await self.store.insert_expense(expense)
        logger.info(
            "Expense %s submitted by %s (workflow=%s, manager_gate=%s)",
            expense.id, actor.id, expense.workflow, expense.is_manager_approver
        )
        return expense

    # =========================================================================
    # WORKFLOW ADMINISTRATION
    # =========================================================================

    def _parse_rules(self, rules: Optional[Dict[str, Any]]) -> CompletionRule:
        rule_types = [t.value for t in RuleType]
        rule_type = (rules or {}).get("type", RuleType.NONE.value)
        if rule_type not in rule_types:
            raise ValidationFailed(f"Unknown rule type '{rule_type}'", rule_types=rule_types)
        try:
            return rule_from_dict(rules, self.engine.default_threshold)
        except (TypeError, ValueError) as e:
            raise ValidationFailed(f"Invalid rule: {e}")

    async def create_workflow(
        self,
        actor: User,
        name: str,
        steps: List[Dict[str, Any]],
        rules: Optional[Dict[str, Any]] = None
    ) -> WorkflowDefinition:
        require_admin(actor)
        if not (name or "").strip() or not steps:
            raise ValidationFailed("Name and steps are required")

        try:
            parsed = [step_from_dict(s) for s in steps]
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationFailed(f"Invalid step: {e}")

        workflow = WorkflowDefinition(
            id=str(uuid.uuid4()),
            company=actor.company,
            name=name.strip(),
            steps=sorted(parsed, key=lambda s: s.step_index),
            rules=self._parse_rules(rules),
            created_utc=utc_now_iso(),
        )
        if not workflow.has_dense_step_order():
            raise ValidationFailed("step_index values must run 0..n-1 without gaps or duplicates")

        for step in workflow.steps:
            if isinstance(step, RoleStep):
                if not await self.resolver.is_approver(actor.company, step.approver_role):
                    raise InvalidWorkflowReference(
                        f"Role '{step.approver_role}' is not an approver role",
                        step_index=step.step_index
                    )
            elif isinstance(step, UserStep):
                if not step.approver_users:
                    raise ValidationFailed("Member steps need at least one user", step_index=step.step_index)
                for user_id in step.approver_users:
                    user = await self.store.load_user(user_id)
                    if user is None or user.company != actor.company:
                        raise InvalidWorkflowReference(
                            f"User '{user_id}' is not a member of this company",
                            step_index=step.step_index
                        )

        rule = workflow.rules
        if isinstance(rule, (PercentageRule, HybridRule)) and not 1 <= rule.threshold <= 100:
            raise ValidationFailed("Percentage threshold must be between 1 and 100")
        if rules and rules.get("type") in ("specific_approver", "hybrid") and not rules.get("special_role"):
            raise ValidationFailed("special_role is required for this rule type")
        if isinstance(rule, (SpecificApproverRule, HybridRule)):
            if not await self.resolver.is_approver(actor.company, rule.role):
                raise InvalidWorkflowReference(f"Role '{rule.role}' is not an approver role")

        await self.store.insert_workflow(workflow)
        logger.info("Workflow %s created for company %s (%d steps)", workflow.id, actor.company, len(workflow.steps))
        return workflow

    # =========================================================================
    # ROLE ADMINISTRATION
    # =========================================================================

    async def create_role(
        self,
        actor: User,
        name: str,
        display_name: Optional[str] = None,
        is_approver: bool = False
    ) -> Role:
        require_admin(actor)
        norm = validate_new_role_name(name)
        role = Role(
            id=str(uuid.uuid4()),
            company=actor.company,
            name=norm,
            display_name=display_name or name.strip(),
            is_approver=bool(is_approver),
            created_utc=datetime.now(timezone.utc).isoformat(),
        )
        return await self.store.insert_role(role)

    async def _load_custom_role(self, actor: User, role_id: str) -> Role:
        role = await self.store.load_role_by_id(actor.company, role_id)
        if role is None or role.is_system:
            raise NotFound("Role not found")
        return role

    async def update_role(
        self,
        actor: User,
        role_id: str,
        display_name: Optional[str] = None,
        is_approver: Optional[bool] = None
    ) -> Role:
        require_admin(actor)
        role = await self._load_custom_role(actor, role_id)
        if display_name:
            role.display_name = display_name
        if is_approver is not None:
            role.is_approver = bool(is_approver)
        return await self.store.update_role(role)

    async def delete_role(self, actor: User, role_id: str) -> Role:
        require_admin(actor)
        role = await self._load_custom_role(actor, role_id)
        await ensure_role_deletable(self.store, role)
        await self.store.delete_role(role)
        logger.info("Role %s deleted from company %s", role.name, role.company)
        return role

    async def list_roles(self, actor: User) -> List[Role]:
        return await self.store.list_roles(actor.company)


    # =========================================================================
    # USER ADMINISTRATION
    # =========================================================================

    async def _assignable_role(self, company: str, role: Optional[str]) -> str:
        norm = normalize_role_name(role)
        if not norm:
            raise InvalidRole("Role name required")
        if norm == ADMIN_ROLE:
            raise InvalidRole("The admin role cannot be assigned", role=norm)
        if norm == EMPLOYEE_ROLE or await self.resolver.is_approver(company, norm):
            return norm
        if await self.store.load_role(company, norm) is None:
            raise InvalidRole(f"Unknown role '{norm}'", role=norm)
        return norm

    async def _valid_manager(self, company: str, manager_id: Optional[str], user_id: Optional[str] = None) -> Optional[str]:
        if not manager_id:
            return None
        if manager_id == user_id:
            raise ValidationFailed("A user cannot be their own manager")
        manager = await self.store.load_user(manager_id)
        if manager is None or manager.company != company or manager.effective_role not in (MANAGER_ROLE, ADMIN_ROLE):
            raise ValidationFailed("Invalid manager ID", manager_id=manager_id)
        return manager.id

    async def _load_company_user(self, actor: User, user_id: str) -> User:
        user = await self.store.load_user(user_id)
        if user is None or user.company != actor.company:
            raise NotFound("User not found")
        return user

    async def list_users(self, actor: User) -> List[User]:
        require_admin(actor)
        return await self.store.list_users(actor.company)

    async def create_user(
        self,
        actor: User,
        name: str,
        email: str,
        role: str = EMPLOYEE_ROLE,
        manager_id: Optional[str] = None
    ) -> User:
        require_admin(actor)
        if not (name or "").strip() or not (email or "").strip():
            raise ValidationFailed("All fields are required")
        if await self.store.load_user_by_email(email.strip()) is not None:
            raise ValidationFailed("Email already in use")

        user = User(
            id=str(uuid.uuid4()),
            company=actor.company,
            role=await self._assignable_role(actor.company, role),
            manager=await self._valid_manager(actor.company, manager_id),
            name=name.strip(),
            email=email.strip(),
        )
        await self.store.insert_user(user)
        logger.info("User %s created in company %s (role=%s, manager=%s)", user.id, user.company, user.role, user.manager)
        return user

    async def update_user(
        self,
        actor: User,
        user_id: str,
        name: Optional[str] = None,
        email: Optional[str] = None,
        role: Optional[str] = None,
        manager_id: Any = UNCHANGED
    ) -> User:
        """Partial update. Pass manager_id=None to clear the manager."""
        require_admin(actor)
        user = await self._load_company_user(actor, user_id)
        if user.effective_role == ADMIN_ROLE:
            raise WrongRole("Cannot modify admin user")

        if email and email.strip().lower() != (user.email or "").lower():
            if await self.store.load_user_by_email(email.strip()) is not None:
                raise ValidationFailed("Email already in use")
            user.email = email.strip()
        if name:
            user.name = name.strip()
        if role:
            user.role = await self._assignable_role(actor.company, role)
            user.role_name = None
        if manager_id is not UNCHANGED:
            user.manager = await self._valid_manager(actor.company, manager_id, user.id)

        return await self.store.update_user(user)

    async def delete_user(self, actor: User, user_id: str) -> User:
        require_admin(actor)
        user = await self._load_company_user(actor, user_id)
        if user.effective_role == ADMIN_ROLE:
            raise WrongRole("Cannot delete admin user")
        reports = await self.store.list_users(actor.company, manager=user.id)
        if reports:
            raise ValidationFailed("User still manages other users", managed_count=len(reports))
        await self.store.delete_user(user)
        logger.info("User %s deleted from company %s", user.id, user.company)
        return user

    # =========================================================================
    # STATISTICS
    # =========================================================================

    async def expense_stats(self, actor: User) -> Dict[str, Any]:
        """Status counts and approved total; managers see their team and themselves."""
        role = actor.effective_role
        if role == ADMIN_ROLE:
            submitted_by = None
        elif role == MANAGER_ROLE:
            team = await self.store.list_users(actor.company, manager=actor.id)
            submitted_by = [u.id for u in team] + [actor.id]
        else:
            raise WrongRole("Access denied. Manager or admin only.")
        return await self.store.expense_stats(actor.company, submitted_by)
