"""
Expense Hub - Routes Package

Modular API routers for the expense approval service.
"""

from .auth import get_current_user, set_store as set_auth_store
from .expenses import router as expenses_router, set_service as set_expenses_service
from .workflows import router as workflows_router, set_service as set_workflows_service
from .roles import router as roles_router, set_service as set_roles_service
from .users import router as users_router, set_service as set_users_service

__all__ = [
    'get_current_user', 'set_auth_store',
    'expenses_router', 'set_expenses_service',
    'workflows_router', 'set_workflows_service',
    'roles_router', 'set_roles_service',
    'users_router', 'set_users_service',
]
