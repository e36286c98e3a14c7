"""Close batches whose loop died with the process that ran it."""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable
from uuid import UUID

import structlog

from idforge.core.timezone import utcnow
from idforge.models.identity import IdentityStatus
from idforge.services.events import EVENT_UPDATE, IdentityEventBus

logger = structlog.get_logger()


@dataclass
class RecoveryResult:
    batches_closed: int = 0
    records_failed: int = 0
    generation_ids: list[UUID] = field(default_factory=list)


async def recover_orphaned_batches(
    uow_factory: Callable,
    events: IdentityEventBus | None = None,
    older_than: timedelta | None = None,
    dry_run: bool = False,
) -> RecoveryResult:
    """Finish every batch still marked 'gen'.

    Orchestrator loops run inside the request that started them, so after a
    restart nothing will ever finish them. For each such batch, processing
    rows without an output URL become failed (rows that already carry a URL
    stay processing so the image is not lost), gen_st becomes 'done' and the
    claim row is released.

    Args:
        uow_factory: Factory producing UnitOfWork instances
        events: Optional bus to notify about the updated rows
        older_than: Only touch batches created at least this long ago
        dry_run: Report what would be closed without writing

    Returns:
        RecoveryResult with counts and affected generation ids
    """
    result = RecoveryResult()
    cutoff = utcnow() - older_than if older_than else None

    async with await uow_factory() as uow:
        gen_ids: dict[UUID, None] = {}
        for batch in await uow.batches.list_in_flight():
            if cutoff is None or batch.created_at <= cutoff:
                gen_ids[batch.id] = None
        # Rows left 'gen' without a claim row (claim closed but row write lost)
        for identity in await uow.identities.list_in_flight():
            if identity.gen_id and (cutoff is None or identity.created_at <= cutoff):
                gen_ids.setdefault(identity.gen_id, None)

    if dry_run:
        result.generation_ids = list(gen_ids)
        logger.info("batch.recovery.dry_run", orphaned_batches=len(gen_ids))
        return result

    for gen_id in gen_ids:
        async with await uow_factory() as uow:
            failed_now = await uow.identities.fail_unfinished(gen_id)
            await uow.identities.mark_batch_done(gen_id)
            rows = await uow.identities.list_by_generation(gen_id)
            completed = sum(1 for row in rows if row.is_visible_complete)
            failed = sum(1 for row in rows if row.status == IdentityStatus.FAILED)
            await uow.batches.close(gen_id, completed, failed)
            snapshots = [row.to_snapshot() for row in rows]

        result.batches_closed += 1
        result.records_failed += failed_now
        result.generation_ids.append(gen_id)
        if events is not None:
            events.publish_many(EVENT_UPDATE, snapshots)

    if result.batches_closed:
        logger.info(
            "worker.recovery",
            orphaned_batches_closed=result.batches_closed,
            records_failed=result.records_failed,
        )
    return result
