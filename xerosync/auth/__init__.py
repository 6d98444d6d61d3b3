"""JWT authentication and authorization module."""

from xerosync.auth.dependencies import (
    AuthenticatedUser,
    get_current_user,
    get_optional_user,
    require_elevated_role,
)
from xerosync.auth.jwt import create_access_token, decode_access_token

__all__ = [
    "AuthenticatedUser",
    "create_access_token",
    "decode_access_token",
    "get_current_user",
    "get_optional_user",
    "require_elevated_role",
]
