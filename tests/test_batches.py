"""Generation service tests.

Tests focus on what happens before the orchestrator runs:
- Input validation per stage
- One in-flight batch per (username, stage), with zero rows written on conflict
- Seedream duplicate protection across stages and anchor reference ownership
"""

from datetime import datetime

import pytest

from idforge.models.identity import GenerationState, Identity, IdentitySource, IdentityStatus
from idforge.services.exceptions import ConflictError, NotFoundError, ValidationError
from idforge.services.generation.batches import format_identity_name


async def count_identities(uow_factory, username: str | None) -> int:
    async with await uow_factory() as uow:
        return len(await uow.identities.list_by_username(username))


def test_identity_names_carry_stage_number_and_date():
    when = datetime(2026, 3, 7, 12, 30)

    assert format_identity_name(IdentitySource.SEEDREAM, 1, when) == "Identity 1 - Mar 7, 2026"
    assert format_identity_name(IdentitySource.ANCHOR, 10, when) == "Anchor 10 - Mar 7, 2026"
    assert format_identity_name(IdentitySource.VARIANT, 3, when) == "Variant 3 - Mar 7, 2026"


@pytest.mark.asyncio
async def test_create_batch_writes_processing_rows_and_claim(generation_service, uow_factory):
    gen_id, records = await generation_service.create_batch(
        IdentitySource.ANCHOR, "alice", [["ref-1"]] * 10
    )

    async with await uow_factory() as uow:
        rows = await uow.identities.list_by_generation(gen_id)
        batch = await uow.batches.get_by_id(gen_id)

    assert len(rows) == 10
    assert [row.id for row in rows] == [record.id for record in records]
    assert all(row.status == IdentityStatus.PROCESSING for row in rows)
    assert all(row.gen_st == GenerationState.GENERATING for row in rows)
    assert all(row.gen_id == gen_id for row in rows)
    assert rows[0].name.startswith("Anchor 1 - ")
    assert batch is not None and batch.is_in_flight
    assert batch.total == 10


@pytest.mark.asyncio
async def test_second_batch_for_same_stage_conflicts_without_writing(
    generation_service, uow_factory
):
    await generation_service.create_batch(IdentitySource.ANCHOR, "alice", [["ref-1"]] * 10)

    with pytest.raises(ConflictError) as exc_info:
        await generation_service.create_batch(IdentitySource.ANCHOR, "alice", [["ref-1"]] * 10)

    assert exc_info.value.status_code == 409
    assert exc_info.value.details["src"] == "anc"
    assert await count_identities(uow_factory, "alice") == 10


@pytest.mark.asyncio
async def test_claim_row_rejects_race_past_advisory_check(generation_service, uow_factory):
    """Two requests that both skip the pre-check: the unique claim lets only one through."""
    await generation_service.create_batch(
        IdentitySource.VARIANT, "alice", [["primary"]] * 5, check_in_flight=False
    )

    with pytest.raises(ConflictError):
        await generation_service.create_batch(
            IdentitySource.VARIANT, "alice", [["primary"]] * 5, check_in_flight=False
        )

    assert await count_identities(uow_factory, "alice") == 5


@pytest.mark.asyncio
async def test_other_stage_and_other_username_are_independent(generation_service, uow_factory):
    await generation_service.create_batch(IdentitySource.ANCHOR, "alice", [["ref"]] * 10)

    await generation_service.create_batch(IdentitySource.VARIANT, "alice", [["primary"]] * 5)
    await generation_service.create_batch(IdentitySource.ANCHOR, "bob", [["ref"]] * 10)

    assert await count_identities(uow_factory, "alice") == 15
    assert await count_identities(uow_factory, "bob") == 10


@pytest.mark.asyncio
async def test_finished_batch_releases_slot(generation_service):
    first = await generation_service.run_variants("alice", "https://cdn.test/primary.jpg")
    second = await generation_service.run_variants("alice", "https://cdn.test/primary.jpg")

    assert first.generation_id != second.generation_id
    assert second.completed == 5


# Seedream


@pytest.mark.asyncio
@pytest.mark.parametrize("photos", [[], [""], [123]])
async def test_seedream_requires_photos(generation_service, photos):
    with pytest.raises(ValidationError, match="photos array is required"):
        await generation_service.run_seedream(photos, "alice")


@pytest.mark.asyncio
async def test_seedream_rejects_duplicate_identity(generation_service, uow_factory):
    await generation_service.run_seedream(["photo-1"], "alice")

    with pytest.raises(ConflictError) as exc_info:
        await generation_service.run_seedream(["photo-2"], "alice")

    assert exc_info.value.details["code"] == "DUPLICATE_IDENTITY"
    assert await count_identities(uow_factory, "alice") == 1


@pytest.mark.asyncio
async def test_seedream_duplicate_check_covers_later_stages(generation_service, uow_factory):
    await generation_service.run_variants("alice", "https://cdn.test/anc.jpg")

    with pytest.raises(ConflictError) as exc_info:
        await generation_service.run_seedream(["photo-1"], "alice")

    assert exc_info.value.details["code"] == "DUPLICATE_IDENTITY"
    assert await count_identities(uow_factory, "alice") == 5


@pytest.mark.asyncio
async def test_seedream_allows_retry_after_failure(generation_service, seedream):
    seedream.fail_inputs.add(b"photo-1")
    failed = await generation_service.run_seedream(["photo-1"], "alice")
    assert failed.failed == 1

    retried = await generation_service.run_seedream(["photo-2"], "alice")

    assert retried.completed == 1


@pytest.mark.asyncio
async def test_seedream_without_username_is_uncategorized(generation_service, uow_factory):
    first = await generation_service.run_seedream(["photo-1"], None)
    second = await generation_service.run_seedream(["photo-2"], "   ")

    assert first.completed == 1 and second.completed == 1
    assert all(row["instagram_username"] is None for row in first.identities)
    assert await count_identities(uow_factory, None) == 2


@pytest.mark.asyncio
async def test_seedream_response_shape(generation_service):
    result = await generation_service.run_seedream(["photo-1", "photo-2"], "alice")

    body = result.to_response(include_identities=True)

    assert body["success"] is True
    assert body["generationId"] == str(result.generation_id)
    assert (body["total"], body["completed"], body["failed"]) == (2, 2, 0)
    assert [i["source_photos"] for i in body["identities"]] == [["photo-1"], ["photo-2"]]
    assert "identities" not in result.to_response()


# Anchor


@pytest.mark.asyncio
async def test_anchor_requires_username_and_references(generation_service):
    with pytest.raises(ValidationError, match="instagram_username"):
        await generation_service.run_anchor(None, ["https://cdn.test/sd.jpg"])
    with pytest.raises(ValidationError, match="referenceImageUrls"):
        await generation_service.run_anchor("alice", [])


@pytest.mark.asyncio
async def test_anchor_without_seedream_output_is_not_found(generation_service, uow_factory):
    with pytest.raises(NotFoundError):
        await generation_service.run_anchor("alice", ["https://cdn.test/sd.jpg"])

    assert await count_identities(uow_factory, "alice") == 0


@pytest.mark.asyncio
async def test_anchor_rejects_references_of_other_usernames(generation_service, uow_factory):
    await generation_service.run_seedream(["photo-1"], "alice")
    bob = await generation_service.run_seedream(["photo-2"], "bob")
    foreign = bob.identities[0]["generated_image_url"]

    with pytest.raises(ValidationError) as exc_info:
        await generation_service.run_anchor("alice", [foreign])

    assert exc_info.value.details["invalid"] == [foreign]
    assert await count_identities(uow_factory, "alice") == 1


@pytest.mark.asyncio
async def test_anchor_ignores_completed_rows_without_url(generation_service, uow_factory):
    async with await uow_factory() as uow:
        await uow.identities.add(
            Identity(
                name="Identity 1 - Mar 7, 2026",
                source_photos=["photo-1"],
                status=IdentityStatus.COMPLETED,
                src=IdentitySource.SEEDREAM,
                instagram_username="alice",
            )
        )

    with pytest.raises(NotFoundError):
        await generation_service.run_anchor("alice", ["https://cdn.test/sd.jpg"])


@pytest.mark.asyncio
async def test_anchor_in_flight_conflicts(generation_service, uow_factory):
    seed = await generation_service.run_seedream(["photo-1"], "alice")
    reference = seed.identities[0]["generated_image_url"]
    await generation_service.create_batch(IdentitySource.ANCHOR, "alice", [[reference]] * 10)

    with pytest.raises(ConflictError):
        await generation_service.run_anchor("alice", [reference])

    assert await count_identities(uow_factory, "alice") == 11


@pytest.mark.asyncio
async def test_anchor_conflicts_while_variants_are_in_flight(generation_service, uow_factory):
    seed = await generation_service.run_seedream(["photo-1"], "alice")
    reference = seed.identities[0]["generated_image_url"]
    await generation_service.create_batch(IdentitySource.VARIANT, "alice", [[reference]] * 5)

    with pytest.raises(ConflictError):
        await generation_service.run_anchor("alice", [reference])

    assert await count_identities(uow_factory, "alice") == 6


# Variants


@pytest.mark.asyncio
async def test_variants_require_username_and_primary(generation_service):
    with pytest.raises(ValidationError, match="instagram_username"):
        await generation_service.run_variants("", "https://cdn.test/primary.jpg")
    with pytest.raises(ValidationError, match="primaryImageUrl"):
        await generation_service.run_variants("alice", None)
