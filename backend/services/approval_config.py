"""
Expense Hub - Approval Configuration

Environment-driven settings for the approval workflow service.

Manager policy: MANAGER_APPROVAL_POLICY
- "direct": only the submitter's own manager satisfies the manager pre-step
- "global": any company user holding the manager role may satisfy it
"""

import os
from enum import Enum
from typing import Any, Dict


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("true", "1", "yes")


# =============================================================================
# DATABASE
# =============================================================================

MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "expense_hub")


# =============================================================================
# AUTH
# =============================================================================

JWT_SECRET = os.environ.get("JWT_SECRET", "expense-hub-secret-key")
JWT_ALGORITHM = "HS256"


# =============================================================================
# APPROVAL POLICY
# =============================================================================

class ManagerApprovalPolicy(str, Enum):
    """Who may satisfy the manager pre-step."""
    DIRECT = "direct"
    GLOBAL = "global"


def _manager_policy() -> ManagerApprovalPolicy:
    raw = os.environ.get("MANAGER_APPROVAL_POLICY", ManagerApprovalPolicy.DIRECT.value).lower()
    try:
        return ManagerApprovalPolicy(raw)
    except ValueError:
        return ManagerApprovalPolicy.DIRECT


MANAGER_APPROVAL_POLICY = _manager_policy()

# Used when a percentage or hybrid rule is stored without a threshold
DEFAULT_PERCENTAGE_THRESHOLD = int(os.environ.get("DEFAULT_PERCENTAGE_THRESHOLD", "60"))

# Optimistic concurrency: attempts per decision before giving up
SAVE_RETRY_LIMIT = int(os.environ.get("SAVE_RETRY_LIMIT", "3"))

AUDIT_ENABLED = _env_flag("AUDIT_ENABLED", "true")

DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "USD")


def get_approval_settings() -> Dict[str, Any]:
    """Snapshot of the active approval settings (for the health endpoint)."""
    return {
        "manager_approval_policy": MANAGER_APPROVAL_POLICY.value,
        "default_percentage_threshold": DEFAULT_PERCENTAGE_THRESHOLD,
        "save_retry_limit": SAVE_RETRY_LIMIT,
        "audit_enabled": AUDIT_ENABLED,
        "default_currency": DEFAULT_CURRENCY,
    }
