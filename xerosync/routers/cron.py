"""
Scheduled sync trigger.

Called by an external timer once a day. Authenticated with a shared bearer
secret rather than a user token.
"""

import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, status
from fastapi.responses import JSONResponse

from xerosync.routers.dependencies import ensure_serving
from xerosync.services import SyncServices, get_services
from xerosync.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


def _cron_authorized(authorization: Optional[str], cron_secret: str) -> bool:
    if not cron_secret or not authorization:
        return False
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return False
    return secrets.compare_digest(token.encode(), cron_secret.encode())


@router.api_route(
    "/daily-sync",
    methods=["GET", "POST"],
    dependencies=[Depends(ensure_serving)],
)
async def daily_sync(
    authorization: Optional[str] = Header(default=None),
    services: SyncServices = Depends(get_services),
):
    """
    Sync every active Xero connection.

    Returns 200 when every tenant succeeded and 207 when any tenant failed or
    only partially synced.
    """
    if not _cron_authorized(authorization, services.settings.cron_secret):
        logger.warning("cron_auth_failed")
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"success": False, "error": "Unauthorized"},
        )

    summary = await services.scheduler.run_scheduled_sync()

    logger.info(
        "cron_sync_finished",
        success=summary.success,
        tenants=summary.tenants_processed,
    )
    return JSONResponse(
        status_code=status.HTTP_200_OK if summary.success else status.HTTP_207_MULTI_STATUS,
        content=summary.model_dump(mode="json", by_alias=True),
    )
