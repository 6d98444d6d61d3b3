"""
Shared router dependencies.
"""

from fastapi import Depends, HTTPException, status

from xerosync.models.enums import RuntimeMode
from xerosync.services import SyncServices, get_services
from xerosync.utils.logging import get_logger

logger = get_logger(__name__)


async def ensure_serving(services: SyncServices = Depends(get_services)) -> None:
    """
    Reject side-effecting requests while the process runs in build mode.

    Raises:
        HTTPException: 503 in build mode
    """
    if services.settings.runtime_mode == RuntimeMode.BUILD:
        logger.info("request_rejected_build_mode")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service unavailable during build",
        )
