"""
Expense Hub - Audit Recorder

Append-only log of approve/reject actions taken against expenses. The
decision service appends after the expense save commits; a failed append is
logged and swallowed so it never undoes an approval.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class AuditEntry:
    """A single audit log row."""
    expense: str
    action: str
    user: str
    comment: str = ""
    timestamp: Optional[str] = None
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "expense": self.expense,
            "action": self.action,
            "user": self.user,
            "comment": self.comment,
            "timestamp": self.timestamp,
        }


class AuditRecorder(ABC):

    @abstractmethod
    async def append(
        self,
        expense_id: str,
        action: str,
        actor_id: str,
        comment: str = "",
        timestamp: Optional[str] = None
    ) -> AuditEntry:
        ...

    @abstractmethod
    async def list_for_expense(self, expense_id: str) -> List[Dict[str, Any]]:
        """Entries for one expense, oldest first."""
        ...

    async def record(
        self,
        expense_id: str,
        action: str,
        actor_id: str,
        comment: str = "",
        timestamp: Optional[str] = None
    ) -> Optional[AuditEntry]:
        """Fire-and-forget append: failures are logged, never raised."""
        try:
            return await self.append(expense_id, action, actor_id, comment, timestamp)
        except Exception:
            logger.error(
                "Audit append failed: expense=%s, action=%s, actor=%s",
                expense_id, action, actor_id, exc_info=True
            )
            return None

    @staticmethod
    def _entry(
        expense_id: str,
        action: str,
        actor_id: str,
        comment: str,
        timestamp: Optional[str]
    ) -> AuditEntry:
        return AuditEntry(
            id=str(uuid.uuid4()),
            expense=expense_id,
            action=action,
            user=actor_id,
            comment=comment or "",
            timestamp=timestamp or datetime.now(timezone.utc).isoformat(),
        )


class MongoAuditRecorder(AuditRecorder):
    """Writes to the audit_logs collection."""

    def __init__(self, collection):
        self.collection = collection

    async def append(self, expense_id, action, actor_id, comment="", timestamp=None):
        entry = self._entry(expense_id, action, actor_id, comment, timestamp)
        await self.collection.insert_one(entry.to_dict())
        return entry

    async def list_for_expense(self, expense_id):
        return await self.collection.find(
            {"expense": expense_id}, {"_id": 0}
        ).sort("timestamp", 1).to_list(None)


class InMemoryAuditRecorder(AuditRecorder):

    def __init__(self):
        self.entries: List[AuditEntry] = []

    async def append(self, expense_id, action, actor_id, comment="", timestamp=None):
        entry = self._entry(expense_id, action, actor_id, comment, timestamp)
        self.entries.append(entry)
        return entry

    async def list_for_expense(self, expense_id):
        rows = [e.to_dict() for e in self.entries if e.expense == expense_id]
        return sorted(rows, key=lambda r: r["timestamp"] or "")


class NullAuditRecorder(AuditRecorder):
    """Used when AUDIT_ENABLED is off."""

    async def append(self, expense_id, action, actor_id, comment="", timestamp=None):
        return self._entry(expense_id, action, actor_id, comment, timestamp)

    async def list_for_expense(self, expense_id):
        return []
