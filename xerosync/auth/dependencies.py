"""
FastAPI dependencies for authentication and authorization.
"""

from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from pydantic import BaseModel

from xerosync.auth.jwt import decode_access_token
from xerosync.models.enums import ELEVATED_ROLES, UserRole
from xerosync.utils.logging import get_logger

logger = get_logger(__name__)
security = HTTPBearer(auto_error=False)


class AuthenticatedUser(BaseModel):
    """Application user resolved from the bearer token."""

    user_id: str
    role: UserRole

    @property
    def is_elevated(self) -> bool:
        return self.role in ELEVATED_ROLES


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AuthenticatedUser:
    """
    Resolve the calling user from the JWT bearer token.

    Raises:
        HTTPException: 401 if the token is missing or invalid
    """
    if not credentials:
        logger.warning("auth_failed", reason="missing_token")
        raise _unauthorized("Missing authentication token")

    try:
        payload = decode_access_token(credentials.credentials)
    except JWTError as e:
        logger.warning("auth_failed", reason="invalid_token", error=str(e))
        raise _unauthorized(f"Invalid authentication token: {str(e)}")

    user_id = payload.get("sub")
    try:
        role = UserRole(payload.get("role"))
    except ValueError:
        role = None

    if not user_id or role is None:
        logger.warning("auth_failed", reason="invalid_claims")
        raise _unauthorized("Invalid token payload")

    logger.debug("auth_success", user_id=user_id, role=role.value)
    return AuthenticatedUser(user_id=user_id, role=role)


async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[AuthenticatedUser]:
    """Resolve the calling user if a valid token is present, else None."""
    if not credentials:
        return None

    try:
        return await get_current_user(credentials)
    except HTTPException:
        return None


async def require_elevated_role(
    user: AuthenticatedUser = Depends(get_current_user),
) -> AuthenticatedUser:
    """
    Require an owner or finance user.

    Raises:
        HTTPException: 403 for any other role
    """
    if not user.is_elevated:
        logger.warning("permission_denied", user_id=user.user_id, role=user.role.value)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Owner or finance role required",
        )
    return user
