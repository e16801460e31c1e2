"""Shared API dependencies."""

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlmodel import Session

from backend.database import get_session
from backend.exceptions import (
    InsufficientBalance,
    InvalidOrder,
    InvalidRiskParameters,
    PersistenceFailure,
    PositionNotFound,
    PriceFeedUnavailable,
    SettlementError,
)
from backend.models.user import User
from backend.services.auth import decode_access_token

bearer_scheme = HTTPBearer()


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    session: Session = Depends(get_session),
) -> User:
    """Validate JWT and return the current user."""
    user_id = decode_access_token(credentials.credentials)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    user = session.get(User, user_id)
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive",
        )
    return user


def to_http_exception(exc: SettlementError) -> HTTPException:
    """Map engine errors onto HTTP status codes."""
    if isinstance(exc, PositionNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, (InvalidRiskParameters, InvalidOrder)):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, InsufficientBalance):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, (PriceFeedUnavailable, PersistenceFailure)):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def get_service():
    """Position service used by the routers; overridden in tests."""
    from backend.services.positions import get_position_service
    return get_position_service()


def get_admin_user(user: User = Depends(get_current_user)) -> User:
    """Operator-only endpoints (manual sweep, reconciliation, job logs)."""
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user
