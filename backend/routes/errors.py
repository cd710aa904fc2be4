"""
Expense Hub - Route Error Mapping

Business-rule violations from the approval service become HTTP errors with
the error kind in the body.
"""

import logging

from fastapi import HTTPException

from services.approval.errors import ApprovalError, ConcurrentModification

logger = logging.getLogger(__name__)


def to_http(error: Exception) -> HTTPException:
    if isinstance(error, ApprovalError):
        return HTTPException(status_code=error.status_code, detail=error.to_dict())
    if isinstance(error, ConcurrentModification):
        logger.warning("Decision conflict not resolved: %s", error)
        return HTTPException(
            status_code=409,
            detail={"error": "ConcurrentModification", "message": "Expense changed, try again"}
        )
    raise error
