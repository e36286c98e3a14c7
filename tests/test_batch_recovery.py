"""Orphaned batch recovery tests.

Recovery finishes batches whose orchestrator loop died with its process:
- Processing rows without output become failed
- Rows that already carry an output URL stay processing
- gen_st becomes 'done' and the claim row is released
"""

from datetime import timedelta

import pytest

from idforge.cli.recover_batches import parse_args
from idforge.models.identity import GenerationState, IdentitySource, IdentityStatus
from idforge.services.generation.recovery import recover_orphaned_batches


async def orphan_batch(generation_service, uow_factory, username: str = "alice"):
    """Create an anchor batch with one completed and one uploaded-but-unwritten row."""
    gen_id, records = await generation_service.create_batch(
        IdentitySource.ANCHOR, username, [["https://cdn.test/sd.jpg"]] * 10
    )
    async with await uow_factory() as uow:
        await uow.identities.mark_completed(records[0].id, "https://cdn.test/anc_0.jpg")
        uploaded = await uow.identities.get_by_id(records[1].id)
        uploaded.generated_image_url = "https://cdn.test/anc_1.jpg"
        uow.session.add(uploaded)
    return gen_id, records


@pytest.mark.asyncio
async def test_recovery_closes_orphaned_batch(generation_service, uow_factory, event_bus):
    gen_id, records = await orphan_batch(generation_service, uow_factory)

    async with event_bus.subscribe() as queue:
        result = await recover_orphaned_batches(uow_factory, event_bus)
        published = queue.qsize()

    assert result.batches_closed == 1
    assert result.records_failed == 8
    assert result.generation_ids == [gen_id]
    assert published == 10

    async with await uow_factory() as uow:
        rows = await uow.identities.list_by_generation(gen_id)
        batch = await uow.batches.get_by_id(gen_id)
        claimed = await uow.batches.is_claimed("alice", IdentitySource.ANCHOR.value)

    statuses = [row.status for row in rows]
    assert statuses[0] == IdentityStatus.COMPLETED
    assert statuses[1] == IdentityStatus.PROCESSING
    assert statuses[2:] == [IdentityStatus.FAILED] * 8
    assert all(row.gen_st == GenerationState.DONE for row in rows)
    assert (batch.completed, batch.failed) == (1, 8)
    assert not claimed


@pytest.mark.asyncio
async def test_recovery_frees_slot_for_new_batch(generation_service, uow_factory):
    await orphan_batch(generation_service, uow_factory)
    await recover_orphaned_batches(uow_factory)

    result = await generation_service.run_variants("alice", "https://cdn.test/anc_0.jpg")

    assert result.completed == 5


@pytest.mark.asyncio
async def test_recovery_dry_run_writes_nothing(generation_service, uow_factory):
    gen_id, _ = await orphan_batch(generation_service, uow_factory)

    result = await recover_orphaned_batches(uow_factory, dry_run=True)

    assert result.generation_ids == [gen_id]
    assert result.batches_closed == 0
    async with await uow_factory() as uow:
        assert await uow.identities.has_in_flight_batch("alice", IdentitySource.ANCHOR)


@pytest.mark.asyncio
async def test_recovery_skips_recent_batches(generation_service, uow_factory):
    await orphan_batch(generation_service, uow_factory)

    result = await recover_orphaned_batches(uow_factory, older_than=timedelta(minutes=30))

    assert result.batches_closed == 0
    assert result.generation_ids == []


@pytest.mark.asyncio
async def test_recovery_without_orphans_is_a_no_op(generation_service, uow_factory):
    await generation_service.run_variants("alice", "https://cdn.test/anc_0.jpg")

    result = await recover_orphaned_batches(uow_factory)

    assert result.batches_closed == 0
    assert result.records_failed == 0


def test_recover_batches_cli_arguments():
    args = parse_args(["--older-than-minutes", "30", "--dry-run"])

    assert args.older_than_minutes == 30.0
    assert args.dry_run is True
    assert args.verbose is False
