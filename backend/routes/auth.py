"""
Expense Hub - Auth Dependency

Resolves the acting user from a bearer JWT. Token issuance lives outside
this service; here the token is only verified and mapped to a User.
"""

from typing import Optional

import jwt as pyjwt
from fastapi import Header, HTTPException

from services.approval.models import User
from services.approval_config import JWT_ALGORITHM, JWT_SECRET

# Store - set by main app
store = None

def set_store(approval_store):
    global store
    store = approval_store


def create_token(user_id: str, company_id: str, role: str) -> str:
    """Sign a token with the claims get_current_user expects (used by tests and tooling)."""
    payload = {"userId": user_id, "companyId": company_id, "role": role}
    return pyjwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


async def get_current_user(authorization: Optional[str] = Header(None)) -> User:
    """FastAPI dependency: the authenticated actor."""
    if not authorization:
        raise HTTPException(status_code=401, detail="No token, authorization denied")

    token = authorization.replace("Bearer ", "", 1)
    try:
        claims = pyjwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except pyjwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Token is not valid")

    user_id = claims.get("userId")
    user = await store.load_user(user_id) if user_id else None
    if user is None or user.company != claims.get("companyId"):
        raise HTTPException(status_code=401, detail="Token is not valid")

    # Legacy tokens carry the role only as a claim
    if not user.role and not user.role_name:
        user.role_name = claims.get("role") or claims.get("roleName")
    return user
