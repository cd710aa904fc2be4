"""
Expense Hub - Approval Workflow Module

Routes submitted expenses through the manager pre-step, the configured
workflow steps and the workflow's completion rule.

Components:
- ApprovalEngine: pure decision logic over an expense and its workflow
- ApproverResolver: role capability lookup (built-in names + company roles)
- ApprovalStore: persistence contract (MongoDB and in-memory implementations)
- AuditRecorder: append-only approve/reject log
- ApprovalService: serialized load -> decide -> save -> audit orchestration
- build_timeline: display projection of an expense's approval path
"""

from .audit import AuditRecorder, InMemoryAuditRecorder, MongoAuditRecorder, NullAuditRecorder
from .engine import ApprovalEngine, RequiredActor, evaluate_rules, is_step_satisfied
from .errors import ApprovalError, ConcurrentModification
from .roles import ApproverResolver, BuiltinApproverResolver, RoleRegistryResolver
from .service import ApprovalService
from .store import ApprovalStore, InMemoryApprovalStore, MongoApprovalStore
from .timeline import build_timeline

__all__ = [
    'ApprovalEngine',
    'RequiredActor',
    'evaluate_rules',
    'is_step_satisfied',
    'ApprovalError',
    'ConcurrentModification',
    'ApproverResolver',
    'BuiltinApproverResolver',
    'RoleRegistryResolver',
    'ApprovalStore',
    'InMemoryApprovalStore',
    'MongoApprovalStore',
    'AuditRecorder',
    'InMemoryAuditRecorder',
    'MongoAuditRecorder',
    'NullAuditRecorder',
    'ApprovalService',
    'build_timeline',
]
