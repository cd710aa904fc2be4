"""
Expense Hub - Users Router

Company members: role and manager assignment (admin only).
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from services.approval.errors import ApprovalError
from services.approval.models import EMPLOYEE_ROLE, User
from services.approval.service import UNCHANGED

from .auth import get_current_user
from .errors import to_http

router = APIRouter(prefix="/users", tags=["users"])

# Approval service - set by main app
approval_service = None

def set_service(service):
    global approval_service
    approval_service = service


class UserCreate(BaseModel):
    name: str
    email: str
    role: str = EMPLOYEE_ROLE
    manager_id: Optional[str] = None


class UserUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None
    manager_id: Optional[str] = None


@router.get("")
async def list_users(user: User = Depends(get_current_user)):
    try:
        users = await approval_service.list_users(user)
    except ApprovalError as e:
        raise to_http(e)
    return {"users": [u.to_dict() for u in users]}


@router.post("", status_code=201)
@router.post("/create-user", status_code=201, include_in_schema=False)
async def create_user(body: UserCreate, user: User = Depends(get_current_user)):
    """Create a company member; `manager_id` must be a manager or admin in the same company."""
    try:
        created = await approval_service.create_user(
            user, body.name, body.email, body.role, body.manager_id
        )
    except ApprovalError as e:
        raise to_http(e)
    return {"message": "User created successfully", "user": created.to_dict()}


@router.put("/{user_id}")
async def update_user(user_id: str, body: UserUpdate, user: User = Depends(get_current_user)):
    """Send `manager_id: null` to clear the manager; omit it to leave it unchanged."""
    manager_id = body.manager_id if "manager_id" in body.model_fields_set else UNCHANGED
    try:
        updated = await approval_service.update_user(
            user, user_id,
            name=body.name,
            email=body.email,
            role=body.role,
            manager_id=manager_id,
        )
    except ApprovalError as e:
        raise to_http(e)
    return {"message": "User updated successfully", "user": updated.to_dict()}


@router.delete("/{user_id}")
async def delete_user(user_id: str, user: User = Depends(get_current_user)):
    try:
        await approval_service.delete_user(user, user_id)
    except ApprovalError as e:
        raise to_http(e)
    return {"message": "User deleted successfully", "id": user_id}
