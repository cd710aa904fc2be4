"""
Expense Hub - Approval Store

The persistence contract the approval service depends on, with a MongoDB
(motor) implementation and an in-memory implementation for tests and local
development.

Expense saves are optimistic: every expense document carries a `version`
and a save only lands when the stored version still matches the one that
was loaded. A lost race raises ConcurrentModification.
"""

import copy
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from pymongo.errors import DuplicateKeyError

from services.approval_config import DEFAULT_PERCENTAGE_THRESHOLD

from .errors import ConcurrentModification, InvalidRole
from .models import (
    Expense,
    ExpenseStatus,
    Role,
    StepType,
    User,
    WorkflowDefinition,
    normalize_role_name,
)

logger = logging.getLogger(__name__)


class ApprovalStore(ABC):
    """
    Abstract store for expenses, workflows, roles and users.

    Lookups return None when a record does not exist; raising NotFound is
    the caller's decision.
    """

    # Expenses ---------------------------------------------------------------

    @abstractmethod
    async def load_expense(self, expense_id: str) -> Optional[Expense]:
        ...

    @abstractmethod
    async def insert_expense(self, expense: Expense) -> Expense:
        ...

    @abstractmethod
    async def save_expense(self, expense: Expense) -> Expense:
        """Conditional save; bumps expense.version or raises ConcurrentModification."""
        ...

    @abstractmethod
    async def list_expenses(
        self,
        company: str,
        status: Optional[str] = None,
        submitted_by: Optional[str] = None
    ) -> List[Expense]:
        ...

    @abstractmethod
    async def expense_stats(self, company: str, submitted_by: Optional[List[str]] = None) -> Dict[str, Any]:
        """Counts per status and the approved total, optionally limited to some submitters."""
        ...

    # Workflows --------------------------------------------------------------

    @abstractmethod
    async def load_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        ...

    @abstractmethod
    async def insert_workflow(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        ...

    @abstractmethod
    async def list_workflows(self, company: str) -> List[WorkflowDefinition]:
        ...

    # Roles ------------------------------------------------------------------

    @abstractmethod
    async def load_role(self, company: str, name: str) -> Optional[Role]:
        ...

    @abstractmethod
    async def load_role_by_id(self, company: str, role_id: str) -> Optional[Role]:
        ...

    @abstractmethod
    async def insert_role(self, role: Role) -> Role:
        """Raises InvalidRole when the name already exists for the company."""
        ...

    @abstractmethod
    async def update_role(self, role: Role) -> Role:
        ...

    @abstractmethod
    async def delete_role(self, role: Role) -> None:
        ...

    @abstractmethod
    async def list_roles(self, company: str) -> List[Role]:
        ...

    @abstractmethod
    async def count_users_with_role(self, company: str, name: str) -> int:
        ...

    @abstractmethod
    async def count_workflow_steps_referencing_role(self, company: str, name: str) -> int:
        ...

    # Users ------------------------------------------------------------------

    @abstractmethod
    async def load_user(self, user_id: str) -> Optional[User]:
        ...

    @abstractmethod
    async def load_user_by_email(self, email: str) -> Optional[User]:
        ...

    @abstractmethod
    async def insert_user(self, user: User) -> User:
        ...

    @abstractmethod
    async def update_user(self, user: User) -> User:
        ...

    @abstractmethod
    async def delete_user(self, user: User) -> None:
        ...

    @abstractmethod
    async def list_users(self, company: str, manager: Optional[str] = None) -> List[User]:
        ...


def _workflow_from_dict(data: Dict[str, Any]) -> WorkflowDefinition:
    return WorkflowDefinition.from_dict(data, DEFAULT_PERCENTAGE_THRESHOLD)


def _references_role(workflow: Dict[str, Any], name: str) -> bool:
    for step in workflow.get("steps") or []:
        if step.get("approver_type", StepType.ROLE.value) != StepType.ROLE.value:
            continue
        if normalize_role_name(step.get("approver_role")) == name:
            return True
    return False


def _stats_from_groups(groups: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Fold per-status {_id, count, amount} groups into the summary shape."""
    by_status = {g["_id"]: g for g in groups}
    approved = by_status.get(ExpenseStatus.APPROVED.value, {})
    return {
        "total_pending": by_status.get(ExpenseStatus.PENDING.value, {}).get("count", 0),
        "total_approved": approved.get("count", 0),
        "total_rejected": by_status.get(ExpenseStatus.REJECTED.value, {}).get("count", 0),
        "total_approved_amount": approved.get("amount", 0),
    }


# =============================================================================
# MONGODB
# =============================================================================

class MongoApprovalStore(ApprovalStore):
    """Store backed by a motor AsyncIOMotorDatabase."""

    def __init__(self, db):
        self.db = db

    async def create_indexes(self) -> None:
        await self.db.expenses.create_index("id", unique=True)
        await self.db.expenses.create_index([("company", 1), ("status", 1)])
        await self.db.expenses.create_index([("submitted_by", 1), ("status", 1)])
        await self.db.workflows.create_index("id", unique=True)
        await self.db.workflows.create_index("company")
        await self.db.roles.create_index("id", unique=True)
        await self.db.roles.create_index([("company", 1), ("name", 1)], unique=True)
        await self.db.users.create_index("id", unique=True)
        await self.db.users.create_index([("company", 1), ("role", 1)])
        await self.db.users.create_index([("company", 1), ("manager", 1)])
        await self.db.audit_logs.create_index("expense")
        logger.info("Approval store indexes created")

    async def load_expense(self, expense_id: str) -> Optional[Expense]:
        doc = await self.db.expenses.find_one({"id": expense_id}, {"_id": 0})
        return Expense.from_dict(doc) if doc else None

    async def insert_expense(self, expense: Expense) -> Expense:
        await self.db.expenses.insert_one(expense.to_dict())
        return expense

    async def save_expense(self, expense: Expense) -> Expense:
        new_version = expense.version + 1
        doc = expense.to_dict()
        doc["version"] = new_version
        result = await self.db.expenses.update_one(
            {"id": expense.id, "version": expense.version},
            {"$set": doc}
        )
        if result.matched_count == 0:
            raise ConcurrentModification(expense.id, expense.version)
        expense.version = new_version
        return expense

    async def list_expenses(
        self,
        company: str,
        status: Optional[str] = None,
        submitted_by: Optional[str] = None
    ) -> List[Expense]:
        query: Dict[str, Any] = {"company": company}
        if status:
            query["status"] = status
        if submitted_by:
            query["submitted_by"] = submitted_by
        docs = await self.db.expenses.find(query, {"_id": 0}).sort("created_utc", -1).to_list(None)
        return [Expense.from_dict(d) for d in docs]

    async def expense_stats(self, company: str, submitted_by: Optional[List[str]] = None) -> Dict[str, Any]:
        match: Dict[str, Any] = {"company": company}
        if submitted_by is not None:
            match["submitted_by"] = {"$in": submitted_by}
        pipeline = [
            {"$match": match},
            {"$group": {"_id": "$status", "count": {"$sum": 1}, "amount": {"$sum": "$amount"}}},
        ]
        groups = await self.db.expenses.aggregate(pipeline).to_list(10)
        return _stats_from_groups(groups)

    async def load_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        doc = await self.db.workflows.find_one({"id": workflow_id}, {"_id": 0})
        return _workflow_from_dict(doc) if doc else None

    async def insert_workflow(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        await self.db.workflows.insert_one(workflow.to_dict())
        return workflow

    async def list_workflows(self, company: str) -> List[WorkflowDefinition]:
        docs = await self.db.workflows.find(
            {"company": company}, {"_id": 0}
        ).sort("created_utc", -1).to_list(None)
        return [_workflow_from_dict(d) for d in docs]

    async def load_role(self, company: str, name: str) -> Optional[Role]:
        doc = await self.db.roles.find_one(
            {"company": company, "name": normalize_role_name(name)}, {"_id": 0}
        )
        return Role.from_dict(doc) if doc else None

    async def load_role_by_id(self, company: str, role_id: str) -> Optional[Role]:
        doc = await self.db.roles.find_one({"company": company, "id": role_id}, {"_id": 0})
        return Role.from_dict(doc) if doc else None

    async def insert_role(self, role: Role) -> Role:
        try:
            await self.db.roles.insert_one(role.to_dict())
        except DuplicateKeyError:
            raise InvalidRole("Role already exists", role=role.name)
        return role

    async def update_role(self, role: Role) -> Role:
        await self.db.roles.update_one(
            {"company": role.company, "id": role.id},
            {"$set": {"display_name": role.display_name, "is_approver": role.is_approver}}
        )
        return role

    async def delete_role(self, role: Role) -> None:
        await self.db.roles.delete_one({"company": role.company, "id": role.id})

    async def list_roles(self, company: str) -> List[Role]:
        docs = await self.db.roles.find(
            {"company": company}, {"_id": 0}
        ).sort([("is_system", -1), ("name", 1)]).to_list(None)
        return [Role.from_dict(d) for d in docs]

    async def count_users_with_role(self, company: str, name: str) -> int:
        # Stored role strings may differ in case
        pattern = {"$regex": f"^{re.escape(normalize_role_name(name))}$", "$options": "i"}
        return await self.db.users.count_documents({
            "company": company,
            "$or": [{"role": pattern}, {"role_name": pattern}],
        })

    async def count_workflow_steps_referencing_role(self, company: str, name: str) -> int:
        return await self.db.workflows.count_documents({
            "company": company,
            "steps": {"$elemMatch": {
                "approver_role": normalize_role_name(name),
                "approver_type": {"$ne": StepType.USERS.value},
            }},
        })

    async def load_user(self, user_id: str) -> Optional[User]:
        doc = await self.db.users.find_one({"id": user_id}, {"_id": 0})
        return User.from_dict(doc) if doc else None

    async def load_user_by_email(self, email: str) -> Optional[User]:
        doc = await self.db.users.find_one(
            {"email": {"$regex": f"^{re.escape(email)}$", "$options": "i"}}, {"_id": 0}
        )
        return User.from_dict(doc) if doc else None

    async def insert_user(self, user: User) -> User:
        await self.db.users.insert_one(user.to_dict())
        return user

    async def update_user(self, user: User) -> User:
        doc = user.to_dict()
        doc.pop("id")
        await self.db.users.update_one({"id": user.id, "company": user.company}, {"$set": doc})
        return user

    async def delete_user(self, user: User) -> None:
        await self.db.users.delete_one({"id": user.id, "company": user.company})

    async def list_users(self, company: str, manager: Optional[str] = None) -> List[User]:
        query: Dict[str, Any] = {"company": company}
        if manager:
            query["manager"] = manager
        docs = await self.db.users.find(query, {"_id": 0}).sort("name", 1).to_list(None)
        return [User.from_dict(d) for d in docs]


# =============================================================================
# IN-MEMORY
# =============================================================================

class InMemoryApprovalStore(ApprovalStore):
    """
    Dict-backed store with the same semantics as MongoApprovalStore.

    Records are kept as serialized dicts so callers never share mutable
    state with the store.
    """

    def __init__(self):
        self.expenses: Dict[str, Dict[str, Any]] = {}
        self.workflows: Dict[str, Dict[str, Any]] = {}
        self.roles: Dict[str, Dict[str, Any]] = {}
        self.users: Dict[str, Dict[str, Any]] = {}

    async def load_expense(self, expense_id: str) -> Optional[Expense]:
        doc = self.expenses.get(expense_id)
        return Expense.from_dict(copy.deepcopy(doc)) if doc else None

    async def insert_expense(self, expense: Expense) -> Expense:
        self.expenses[expense.id] = expense.to_dict()
        return expense

    async def save_expense(self, expense: Expense) -> Expense:
        stored = self.expenses.get(expense.id)
        if stored is None or stored.get("version", 0) != expense.version:
            raise ConcurrentModification(expense.id, expense.version)
        expense.version += 1
        self.expenses[expense.id] = expense.to_dict()
        return expense

    async def list_expenses(
        self,
        company: str,
        status: Optional[str] = None,
        submitted_by: Optional[str] = None
    ) -> List[Expense]:
        result = []
        for doc in self.expenses.values():
            if doc["company"] != company:
                continue
            if status and doc["status"] != status:
                continue
            if submitted_by and doc["submitted_by"] != submitted_by:
                continue
            result.append(Expense.from_dict(copy.deepcopy(doc)))
        result.sort(key=lambda e: e.created_utc or "", reverse=True)
        return result

    async def expense_stats(self, company: str, submitted_by: Optional[List[str]] = None) -> Dict[str, Any]:
        groups: Dict[str, Dict[str, Any]] = {}
        for doc in self.expenses.values():
            if doc["company"] != company:
                continue
            if submitted_by is not None and doc["submitted_by"] not in submitted_by:
                continue
            group = groups.setdefault(doc["status"], {"_id": doc["status"], "count": 0, "amount": 0})
            group["count"] += 1
            group["amount"] += doc["amount"]
        return _stats_from_groups(list(groups.values()))

    async def load_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        doc = self.workflows.get(workflow_id)
        return _workflow_from_dict(doc) if doc else None

    async def insert_workflow(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        self.workflows[workflow.id] = workflow.to_dict()
        return workflow

    async def list_workflows(self, company: str) -> List[WorkflowDefinition]:
        return [
            _workflow_from_dict(d) for d in self.workflows.values()
            if d["company"] == company
        ]

    async def load_role(self, company: str, name: str) -> Optional[Role]:
        name = normalize_role_name(name)
        for doc in self.roles.values():
            if doc["company"] == company and doc["name"] == name:
                return Role.from_dict(doc)
        return None

    async def load_role_by_id(self, company: str, role_id: str) -> Optional[Role]:
        doc = self.roles.get(role_id)
        if doc is None or doc["company"] != company:
            return None
        return Role.from_dict(doc)

    async def insert_role(self, role: Role) -> Role:
        if await self.load_role(role.company, role.name) is not None:
            raise InvalidRole("Role already exists", role=role.name)
        self.roles[role.id] = role.to_dict()
        return role

    async def update_role(self, role: Role) -> Role:
        self.roles[role.id] = role.to_dict()
        return role

    async def delete_role(self, role: Role) -> None:
        self.roles.pop(role.id, None)

    async def list_roles(self, company: str) -> List[Role]:
        roles = [Role.from_dict(d) for d in self.roles.values() if d["company"] == company]
        roles.sort(key=lambda r: (not r.is_system, r.name))
        return roles

    async def count_users_with_role(self, company: str, name: str) -> int:
        name = normalize_role_name(name)
        return sum(
            1 for d in self.users.values()
            if d["company"] == company
            and name in (normalize_role_name(d.get("role")), normalize_role_name(d.get("role_name")))
        )

    async def count_workflow_steps_referencing_role(self, company: str, name: str) -> int:
        name = normalize_role_name(name)
        return sum(
            1 for d in self.workflows.values()
            if d["company"] == company and _references_role(d, name)
        )

    async def load_user(self, user_id: str) -> Optional[User]:
        doc = self.users.get(user_id)
        return User.from_dict(doc) if doc else None

    async def load_user_by_email(self, email: str) -> Optional[User]:
        email = (email or "").lower()
        for doc in self.users.values():
            if (doc.get("email") or "").lower() == email:
                return User.from_dict(doc)
        return None

    async def insert_user(self, user: User) -> User:
        self.users[user.id] = user.to_dict()
        return user

    async def update_user(self, user: User) -> User:
        self.users[user.id] = user.to_dict()
        return user

    async def delete_user(self, user: User) -> None:
        self.users.pop(user.id, None)

    async def list_users(self, company: str, manager: Optional[str] = None) -> List[User]:
        users = [
            User.from_dict(d) for d in self.users.values()
            if d["company"] == company and (not manager or d.get("manager") == manager)
        ]
        users.sort(key=lambda u: u.name or "")
        return users
