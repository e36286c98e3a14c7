"""Identity read, selection and deletion endpoints.

- GET /api/identities - Visible identities (optionally one username)
- GET /api/identities/progress/{username} - Reconciled per-stage progress
- GET /api/identities/events - NDJSON stream of identity change events
- PUT /api/identities/primary - Select the primary anchor of a username
- DELETE /api/identities/{identity_id} - Delete one identity
"""

from typing import Any, Callable
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from idforge.api.dependencies import get_event_bus, get_uow_factory
from idforge.api.routes.instagram import NDJSON_MEDIA_TYPE
from idforge.services.events import EVENT_DELETE, EVENT_UPDATE, IdentityEventBus
from idforge.services.exceptions import NotFoundError, ValidationError
from idforge.services.progress import ProgressReconciler

logger = structlog.get_logger()
router = APIRouter(prefix="/api/identities", tags=["identities"])


class SetPrimaryRequest(BaseModel):
    instagram_username: str | None = None
    identity_id: UUID | None = None


@router.get("")
async def list_identities(
    instagram_username: str | None = Query(default=None),
    include_failed: bool = Query(default=False),
    uow_factory: Callable = Depends(get_uow_factory),
) -> dict[str, Any]:
    """List identities, newest first.

    Failed identities are hidden unless ``include_failed`` is set (pollers
    that reconcile deletions need the full set).
    """
    async with await uow_factory() as uow:
        if include_failed:
            rows = await uow.identities.list_all(instagram_username)
        else:
            rows = await uow.identities.list_visible(instagram_username)
        identities = [row.to_snapshot() for row in rows]
    return {"identities": identities, "count": len(identities)}


@router.get("/progress/{username}")
async def get_progress(
    username: str,
    uow_factory: Callable = Depends(get_uow_factory),
) -> dict[str, Any]:
    """Per-stage progress for a username, derived from its current rows."""
    async with await uow_factory() as uow:
        rows = [row.to_snapshot() for row in await uow.identities.list_by_username(username)]

    reconciler = ProgressReconciler()
    reconciler.restore_in_flight(rows)
    primary = reconciler.primary_for(username)
    return {
        "instagram_username": username,
        "generating": username in reconciler.generating_usernames(),
        "stages": reconciler.summary(username),
        "primaryIdentityId": primary["id"] if primary else None,
    }


@router.get("/events")
async def stream_events(events: IdentityEventBus = Depends(get_event_bus)) -> StreamingResponse:
    """Stream identity INSERT/UPDATE/DELETE events as they are published."""
    return StreamingResponse(
        events.stream(),
        media_type=NDJSON_MEDIA_TYPE,
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.put("/primary")
async def set_primary(
    request: SetPrimaryRequest,
    uow_factory: Callable = Depends(get_uow_factory),
    events: IdentityEventBus = Depends(get_event_bus),
) -> dict[str, Any]:
    """Make one identity the only primary of its username.

    Raises:
        400: Missing username or identity id
        404: Identity does not exist or belongs to another username
    """
    if not request.instagram_username or request.identity_id is None:
        raise ValidationError("instagram_username and identity_id are required")

    async with await uow_factory() as uow:
        identity = await uow.identities.set_primary(
            request.instagram_username, request.identity_id
        )
        if identity is None:
            raise NotFoundError(
                "Identity not found for this username",
                identity_id=str(request.identity_id),
            )
        rows = [
            row.to_snapshot()
            for row in await uow.identities.list_by_username(request.instagram_username)
        ]

    events.publish_many(EVENT_UPDATE, rows)
    logger.info(
        "identity.primary_set",
        instagram_username=request.instagram_username,
        identity_id=str(request.identity_id),
    )
    return {"success": True, "identity": next(r for r in rows if r["id"] == str(identity.id))}


@router.delete("/{identity_id}")
async def delete_identity(
    identity_id: UUID,
    uow_factory: Callable = Depends(get_uow_factory),
    events: IdentityEventBus = Depends(get_event_bus),
) -> dict[str, Any]:
    """Delete one identity.

    Raises:
        404: Identity does not exist
    """
    async with await uow_factory() as uow:
        deleted = await uow.identities.delete(identity_id)
    if not deleted:
        raise NotFoundError("Identity not found", identity_id=str(identity_id))

    events.publish(EVENT_DELETE, {"id": str(identity_id)})
    logger.info("identity.deleted", identity_id=str(identity_id))
    return {"success": True, "message": "Identity deleted successfully"}
