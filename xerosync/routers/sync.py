"""
Manual sync and sync status router.
"""

from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from xerosync.auth.dependencies import AuthenticatedUser, get_current_user, require_elevated_role
from xerosync.errors import ConnectionNotFound
from xerosync.models.enums import EntityType, TriggerKind
from xerosync.models.filters import CheckpointFilter, SessionFilter
from xerosync.models.sync import SyncCheckpoint, SyncSession
from xerosync.routers.dependencies import ensure_serving
from xerosync.services import SyncServices, get_services
from xerosync.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


class SyncRequest(BaseModel):
    """Manual sync request body."""

    model_config = ConfigDict(populate_by_name=True)

    entity_types: Optional[list[EntityType]] = Field(default=None, alias="entityTypes")


@router.post("/{tenant_id}", dependencies=[Depends(ensure_serving)])
async def sync_tenant(
    tenant_id: str,
    body: Optional[SyncRequest] = Body(default=None),
    user: AuthenticatedUser = Depends(require_elevated_role),
    services: SyncServices = Depends(get_services),
):
    """
    Run a manual sync session for one tenant.

    Returns the session with 200 on full success, 207 otherwise.
    """
    connection = services.token_manager.get_connection(tenant_id)
    if connection is None:
        raise ConnectionNotFound(f"No Xero connection for tenant {tenant_id}")

    logger.info("manual_sync_requested", tenant_id=tenant_id, user_id=user.user_id)
    session = await services.orchestrator.sync_tenant(
        tenant_id,
        trigger=TriggerKind.MANUAL,
        entity_types=body.entity_types if body else None,
        tenant_name=connection.tenant_name,
    )

    return JSONResponse(
        status_code=status.HTTP_200_OK if session.success else status.HTTP_207_MULTI_STATUS,
        content=session.model_dump(mode="json"),
    )


@router.get("/{tenant_id}/checkpoints", response_model=list[SyncCheckpoint])
async def list_checkpoints(
    tenant_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    services: SyncServices = Depends(get_services),
):
    """Per-entity sync progress for a tenant."""
    return services.storage.list_checkpoints(CheckpointFilter(tenant_id=tenant_id))


@router.get("/{tenant_id}/sessions", response_model=list[SyncSession])
async def list_sessions(
    tenant_id: str,
    limit: int = Query(default=20, ge=1, le=500),
    user: AuthenticatedUser = Depends(get_current_user),
    services: SyncServices = Depends(get_services),
):
    """Most recent sync sessions first."""
    return services.storage.read_sync_sessions(SessionFilter(tenant_id=tenant_id, limit=limit))
