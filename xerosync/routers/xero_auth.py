"""
Xero OAuth2 authorization router.

The browser leaves for Xero from ``/authorize`` carrying a state cookie and
comes back to ``/callback``, which always ends in a redirect to the settings
page with either a success or an error query string.
"""

import secrets
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict, Field

from xerosync.auth.dependencies import (
    AuthenticatedUser,
    get_current_user,
    get_optional_user,
    require_elevated_role,
)
from xerosync.errors import ConnectionNotFound, InsufficientPermissions, XeroSyncError
from xerosync.models.connection import ConnectionSummary, RevokeResult
from xerosync.models.enums import RuntimeMode, UserRole
from xerosync.routers.dependencies import ensure_serving
from xerosync.services import SyncServices, get_services
from xerosync.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


class DisconnectRequest(BaseModel):
    """Disconnect request body."""

    model_config = ConfigDict(populate_by_name=True)

    tenant_id: str = Field(..., alias="tenantId", min_length=1)


def _settings_redirect(services: SyncServices, **params: str) -> RedirectResponse:
    path = services.settings.settings_redirect_path
    response = RedirectResponse(f"{path}?{urlencode(params)}", status_code=status.HTTP_302_FOUND)
    response.delete_cookie(services.settings.oauth_state_cookie_name, path="/")
    return response


@router.get("/authorize", dependencies=[Depends(ensure_serving)])
async def authorize(
    user: AuthenticatedUser = Depends(require_elevated_role),
    services: SyncServices = Depends(get_services),
):
    """
    Start the Xero consent flow.

    Redirects to Xero and sets the http-only state cookie the callback checks.
    """
    url, state = services.token_manager.generate_authorization_url(user.user_id)
    settings = services.settings

    response = RedirectResponse(url, status_code=status.HTTP_302_FOUND)
    response.set_cookie(
        settings.oauth_state_cookie_name,
        state,
        max_age=settings.oauth_state_ttl_minutes * 60,
        httponly=True,
        secure=True,
        samesite="lax",
        path="/",
    )
    logger.info("xero_authorize_redirect", user_id=user.user_id)
    return response


@router.get("/callback")
async def callback(
    request: Request,
    code: Optional[str] = Query(default=None),
    state: Optional[str] = Query(default=None),
    error: Optional[str] = Query(default=None),
    error_description: Optional[str] = Query(default=None),
    user: Optional[AuthenticatedUser] = Depends(get_optional_user),
    services: SyncServices = Depends(get_services),
):
    """
    Finish the Xero consent flow and redirect to the settings page.

    The state cookie is cleared on every outcome, including the 503 in
    build mode.
    """
    if services.settings.runtime_mode == RuntimeMode.BUILD:
        logger.info("request_rejected_build_mode")
        response = JSONResponse(
            {"detail": "Service unavailable during build"},
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )
        response.delete_cookie(services.settings.oauth_state_cookie_name, path="/")
        return response

    if error:
        logger.warning("xero_authorization_denied", error=error)
        return _settings_redirect(
            services,
            error=error,
            message=error_description or "Xero authorization was not granted",
        )

    cookie_state = request.cookies.get(services.settings.oauth_state_cookie_name)
    if (
        not code
        or not state
        or not cookie_state
        or not secrets.compare_digest(cookie_state.encode(), state.encode())
    ):
        logger.warning("xero_callback_state_mismatch", has_cookie=bool(cookie_state))
        return _settings_redirect(
            services,
            error="invalid_state",
            message="Authorization request could not be verified. Please try again.",
        )

    try:
        result = await services.token_manager.exchange_code_for_tokens(
            code, state, acting_user_id=user.user_id if user else None
        )
    except XeroSyncError as e:
        logger.warning("xero_callback_failed", error_code=e.code, error=e.message)
        return _settings_redirect(services, error=e.code, message=e.message)

    return _settings_redirect(services, success="xero_connected", tenant=result.tenant_name)


@router.post(
    "/disconnect",
    response_model=RevokeResult,
    dependencies=[Depends(ensure_serving)],
)
async def disconnect(
    body: DisconnectRequest,
    user: AuthenticatedUser = Depends(require_elevated_role),
    services: SyncServices = Depends(get_services),
):
    """
    Revoke a Xero connection.

    Only the user who created the connection, or an owner, may disconnect it.
    """
    connection = services.token_manager.get_connection(body.tenant_id)
    if connection is None:
        raise ConnectionNotFound(f"No Xero connection for tenant {body.tenant_id}")

    if user.role != UserRole.OWNER and connection.created_by != user.user_id:
        logger.warning(
            "disconnect_forbidden",
            tenant_id=body.tenant_id,
            user_id=user.user_id,
        )
        raise InsufficientPermissions("Only the connection owner can disconnect it")

    result = await services.token_manager.revoke_token(body.tenant_id)
    logger.info("xero_disconnected", tenant_id=body.tenant_id, user_id=user.user_id)
    return result


@router.get("/connections", response_model=list[ConnectionSummary])
async def list_connections(
    user: AuthenticatedUser = Depends(get_current_user),
    services: SyncServices = Depends(get_services),
):
    """List Xero connections without their credentials."""
    connections = services.storage.list_connections()
    return [ConnectionSummary.from_connection(c) for c in connections]
