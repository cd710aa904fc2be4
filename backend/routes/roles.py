"""
Expense Hub - Roles Router

Company-defined roles and their approver flag.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from services.approval.errors import ApprovalError
from services.approval.models import User

from .auth import get_current_user
from .errors import to_http

router = APIRouter(prefix="/roles", tags=["roles"])

# Approval service - set by main app
approval_service = None

def set_service(service):
    global approval_service
    approval_service = service


class RoleCreate(BaseModel):
    name: str
    display_name: Optional[str] = None
    is_approver: bool = False


class RoleUpdate(BaseModel):
    display_name: Optional[str] = None
    is_approver: Optional[bool] = None


@router.get("")
async def list_roles(user: User = Depends(get_current_user)):
    roles = await approval_service.list_roles(user)
    return {"roles": [r.to_dict() for r in roles]}


@router.post("", status_code=201)
async def create_role(body: RoleCreate, user: User = Depends(get_current_user)):
    try:
        role = await approval_service.create_role(user, body.name, body.display_name, body.is_approver)
    except ApprovalError as e:
        raise to_http(e)
    return {"message": "Role created", "role": role.to_dict()}


@router.put("/{role_id}")
async def update_role(role_id: str, body: RoleUpdate, user: User = Depends(get_current_user)):
    try:
        role = await approval_service.update_role(user, role_id, body.display_name, body.is_approver)
    except ApprovalError as e:
        raise to_http(e)
    return {"message": "Role updated", "role": role.to_dict()}


@router.delete("/{role_id}")
async def delete_role(role_id: str, user: User = Depends(get_current_user)):
    """Refused while any user or workflow role step still references the role."""
    try:
        await approval_service.delete_role(user, role_id)
    except ApprovalError as e:
        raise to_http(e)
    return {"message": "Role deleted", "id": role_id}
