"""
Expense Hub - Workflows Router

Company approval workflow definitions.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from services.approval.errors import ApprovalError
from services.approval.models import User

from .auth import get_current_user
from .errors import to_http

router = APIRouter(prefix="/workflows", tags=["workflows"])

# Approval service - set by main app
approval_service = None

def set_service(service):
    global approval_service
    approval_service = service


class WorkflowCreate(BaseModel):
    name: str
    steps: List[Dict[str, Any]]
    rules: Optional[Dict[str, Any]] = None


@router.post("", status_code=201)
async def create_workflow(body: WorkflowCreate, user: User = Depends(get_current_user)):
    """
    Create an approval workflow (admin only).

    Step shapes:
    - {"step_index": 0, "approver_type": "role", "approver_role": "finance"}
    - {"step_index": 1, "approver_type": "users", "approver_users": [...], "approval_mode": "all"}
    """
    try:
        workflow = await approval_service.create_workflow(user, body.name, body.steps, body.rules)
    except ApprovalError as e:
        raise to_http(e)
    return {"message": "Workflow created", "workflow": workflow.to_dict()}


@router.get("")
async def list_workflows(user: User = Depends(get_current_user)):
    workflows = await approval_service.store.list_workflows(user.company)
    return {"workflows": [w.to_dict() for w in workflows]}
