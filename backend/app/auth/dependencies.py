"""FastAPI dependencies for authentication and authorization."""
import secrets
from typing import Optional
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from app.config import settings
from app.database import get_db
from app.models.user import User
from app.auth.security import decode_token

security = HTTPBearer(auto_error=False)

# Actor recorded in audit columns when the billing service calls the feed
BILLING_SERVICE_ACTOR = "service:billing"


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db)
) -> User:
    """
    FastAPI dependency to resolve the caller from a JWT Bearer token.
    The token's ``sub`` must name a user known to the ledger.
    """
    if credentials is None:
        raise _unauthorized("Not authenticated")

    payload = decode_token(credentials.credentials)
    if payload is None:
        raise _unauthorized("Invalid or expired token")

    user_id: Optional[str] = payload.get("sub")
    if user_id is None:
        raise _unauthorized("Invalid token")

    user = await db.get(User, user_id)
    if user is None:
        raise _unauthorized("User not found")

    return user


async def get_current_active_user(current_user: User = Depends(get_current_user)) -> User:
    """Reject users whose account is not active."""
    if current_user.status != "active":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is not active"
        )
    return current_user


async def admin_required(current_user: User = Depends(get_current_active_user)) -> User:
    """Reject non-admin users."""
    if current_user.user_role != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return current_user


def actor_id(user: User) -> str:
    """Audit identifier for a human actor."""
    return f"user:{user.uuid}"


async def internal_service_required(x_internal_token: Optional[str] = Header(None)) -> str:
    """
    FastAPI dependency for the billing service feed.
    Raises HTTPException unless X-Internal-Token matches INTERNAL_API_TOKEN.
    """
    if not x_internal_token or not secrets.compare_digest(x_internal_token, settings.INTERNAL_API_TOKEN):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid internal token"
        )
    return BILLING_SERVICE_ACTOR
