"""Operator-facing admin endpoints."""

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from wa_control.config import settings
from wa_control.database import get_db
from wa_control.services.health_service import get_system_health

router = APIRouter(prefix="/admin", tags=["admin"])


def require_admin_token(x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token")) -> None:
    expected = settings.admin_token
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="ADMIN_TOKEN not configured",
        )
    if not x_admin_token or x_admin_token != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")


def require_operator_token(
    x_operator_token: Optional[str] = Header(default=None, alias="X-Operator-Token"),
    authorization: Optional[str] = Header(default=None),
) -> None:
    """Guard for routes that act as the business: sending, claiming and releasing."""
    expected = settings.operator_api_key
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="OPERATOR_API_KEY not configured",
        )
    provided = x_operator_token
    if not provided and authorization and authorization.startswith("Bearer "):
        provided = authorization[len("Bearer "):]
    if not provided or not hmac.compare_digest(provided, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid operator token")


@router.get("/health", dependencies=[Depends(require_admin_token)])
def system_health(timeout_minutes: Optional[int] = None, db: Session = Depends(get_db)):
    """Ownership counts, stale handovers and invariant violations."""
    return get_system_health(db, timeout_minutes=timeout_minutes)
