"""
Expense Hub - Role Registry

Answers "may this role act as an approver?" for a company, and guards role
administration (reserved names, deletion while referenced).

Built-in approver names predate company-defined roles and stay eligible
regardless of what the roles collection holds. Any other name is eligible
only when the company has a Role record for it flagged is_approver. Unknown
names are simply not eligible.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from .errors import InvalidRole, RoleInUse
from .models import Role, SYSTEM_ROLES, normalize_role_name

logger = logging.getLogger(__name__)


LEGACY_APPROVER_ROLES = frozenset({"manager", "finance", "director", "admin"})


class ApproverResolver(ABC):
    """Capability lookup: is `role_name` an approver role in `company`?"""

    @abstractmethod
    async def is_approver(self, company: str, role_name: str) -> bool:
        ...


class BuiltinApproverResolver(ApproverResolver):
    """Only the hard-coded legacy approver names are eligible."""

    async def is_approver(self, company: str, role_name: str) -> bool:
        return normalize_role_name(role_name) in LEGACY_APPROVER_ROLES


class RoleRegistryResolver(ApproverResolver):
    """Legacy names first, then the company's Role records."""

    def __init__(self, store):
        self.store = store

    async def is_approver(self, company: str, role_name: str) -> bool:
        name = normalize_role_name(role_name)
        if not name:
            return False
        if name in LEGACY_APPROVER_ROLES:
            return True
        role: Optional[Role] = await self.store.load_role(company, name)
        if role is None:
            logger.debug("Role '%s' not defined for company %s", name, company)
            return False
        return role.is_approver


def validate_new_role_name(name: Optional[str]) -> str:
    """Normalize a role name for creation. Raises InvalidRole."""
    norm = normalize_role_name(name)
    if not norm:
        raise InvalidRole("Role name required")
    if norm in SYSTEM_ROLES:
        raise InvalidRole("System role already exists", role=norm)
    return norm


async def ensure_role_deletable(store, role: Role) -> None:
    """Refuse deletion while any user or workflow role step references `role`."""
    if role.is_system:
        raise InvalidRole("System roles cannot be deleted", role=role.name)

    user_refs = await store.count_users_with_role(role.company, role.name)
    workflow_refs = await store.count_workflow_steps_referencing_role(role.company, role.name)
    if user_refs > 0 or workflow_refs > 0:
        logger.warning(
            "Role delete blocked: company=%s, role=%s, users=%d, workflows=%d",
            role.company, role.name, user_refs, workflow_refs
        )
        raise RoleInUse(
            user_ref_count=user_refs,
            workflow_ref_count=workflow_refs,
        )
