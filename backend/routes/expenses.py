"""
Expense Hub - Expenses Router

Submission, listing, approval decisions and the approval timeline.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from services.approval.errors import ApprovalError, ConcurrentModification
from services.approval.models import ExpenseStatus, User

from .auth import get_current_user
from .errors import to_http

router = APIRouter(prefix="/expenses", tags=["expenses"])

# Approval service - set by main app
approval_service = None

def set_service(service):
    global approval_service
    approval_service = service


# ==================== MODELS ====================

class ExpenseSubmission(BaseModel):
    amount: float
    category: str
    description: str
    date: str
    currency: Optional[str] = None
    workflow_id: Optional[str] = None
    is_manager_approver: bool = True


class ApproveRequest(BaseModel):
    comment: Optional[str] = ""


class RejectRequest(BaseModel):
    reason: Optional[str] = None


# ==================== SUBMISSION & READS ====================

@router.post("", status_code=201)
async def submit_expense(body: ExpenseSubmission, user: User = Depends(get_current_user)):
    """Submit a new expense (employees only)."""
    try:
        expense = await approval_service.submit_expense(
            user,
            amount=body.amount,
            category=body.category,
            description=body.description,
            date=body.date,
            currency=body.currency,
            workflow_id=body.workflow_id,
            is_manager_approver=body.is_manager_approver,
        )
    except ApprovalError as e:
        raise to_http(e)
    return {"message": "Expense submitted successfully", "expense": expense.to_dict()}


@router.get("")
async def list_expenses(
    status: Optional[str] = Query(None),
    user: User = Depends(get_current_user)
):
    """Employees see their own expenses; everyone else sees the company's."""
    if status and status not in [s.value for s in ExpenseStatus]:
        raise HTTPException(status_code=400, detail=f"Unknown status '{status}'")
    expenses = await approval_service.list_expenses(user, status=status)
    return {"expenses": [e.to_dict() for e in expenses], "total": len(expenses)}


@router.get("/pending")
async def pending_expenses(user: User = Depends(get_current_user)):
    """Expenses waiting on the current user."""
    pending = await approval_service.pending_for(user)
    items = []
    for expense, required in pending:
        doc = expense.to_dict()
        doc["required_role"] = required.role
        items.append(doc)
    return {"expenses": items}


@router.get("/stats/summary")
async def expense_stats(user: User = Depends(get_current_user)):
    """Status counts and approved total (admins: company, managers: their team)."""
    try:
        stats = await approval_service.expense_stats(user)
    except ApprovalError as e:
        raise to_http(e)
    return {"stats": stats}


@router.get("/{expense_id}")
async def get_expense(expense_id: str, user: User = Depends(get_current_user)):
    try:
        expense = await approval_service.load_expense(expense_id, user)
        required = await approval_service.required_role(expense)
    except ApprovalError as e:
        raise to_http(e)
    doc = expense.to_dict()
    doc["required_role"] = required.role if required else None
    return {"expense": doc}


# ==================== DECISIONS ====================

@router.put("/{expense_id}/approve")
async def approve_expense(
    expense_id: str,
    body: Optional[ApproveRequest] = None,
    user: User = Depends(get_current_user)
):
    comment = (body.comment if body else "") or ""
    try:
        expense = await approval_service.approve(expense_id, user, comment)
    except (ApprovalError, ConcurrentModification) as e:
        raise to_http(e)
    return {"message": "Expense approval recorded", "expense": expense.to_dict()}


@router.put("/{expense_id}/reject")
async def reject_expense(
    expense_id: str,
    body: RejectRequest,
    user: User = Depends(get_current_user)
):
    try:
        expense = await approval_service.reject(expense_id, user, body.reason or "")
    except (ApprovalError, ConcurrentModification) as e:
        raise to_http(e)
    return {"message": "Expense rejected", "expense": expense.to_dict()}


@router.get("/{expense_id}/timeline")
async def expense_timeline(expense_id: str, user: User = Depends(get_current_user)):
    """Expense, virtual approval steps, approvals and audit entries."""
    try:
        return await approval_service.timeline(expense_id, user)
    except ApprovalError as e:
        raise to_http(e)
