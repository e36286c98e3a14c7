"""Stage entry points: validate, claim, create records, run the orchestrator."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Sequence
from uuid import UUID, uuid4

import structlog
from sqlalchemy.exc import IntegrityError

from idforge.core.timezone import utcnow
from idforge.models.generation_batch import GenerationBatch
from idforge.models.identity import GenerationState, Identity, IdentitySource, IdentityStatus
from idforge.services.events import EVENT_INSERT, IdentityEventBus
from idforge.services.exceptions import ConflictError, NotFoundError, ValidationError
from idforge.services.generation.orchestrator import BatchOrchestrator, BatchResult
from idforge.services.image_generation.prompts import (
    ANCHOR_BASE_PROMPT,
    ANCHOR_MUTATIONS,
    VARIANT_MUTATIONS,
)

logger = structlog.get_logger()

ANCHOR_BATCH_SIZE = 10
VARIANT_BATCH_SIZE = 5

_NAME_PREFIX = {
    IdentitySource.SEEDREAM: "Identity",
    IdentitySource.ANCHOR: "Anchor",
    IdentitySource.VARIANT: "Variant",
}


def format_identity_name(kind: IdentitySource, number: int, when: datetime) -> str:
    """Human label such as ``Anchor 3 - Oct 18, 2026``."""
    return f"{_NAME_PREFIX[kind]} {number} - {when:%b} {when.day}, {when.year}"


def _require_username(username: str | None) -> str:
    if not username or not username.strip():
        raise ValidationError("instagram_username is required")
    return username.strip()


@dataclass
class StageResult:
    """Outcome of one stage request, as reported to the API caller."""

    generation_id: UUID
    total: int
    completed: int
    failed: int
    stalled: int
    identities: list[dict[str, Any]] = field(default_factory=list)

    def to_response(self, include_identities: bool = False) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": True,
            "generationId": str(self.generation_id),
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
        }
        if include_identities:
            body["identities"] = self.identities
        return body


class GenerationService:
    """Runs the seedream, anchor and variant stages.

    Each request claims its (username, stage) slot and inserts all records in
    one transaction. A second request for a slot still in flight is rejected
    with ConflictError before any row is written.
    """

    def __init__(
        self,
        uow_factory: Callable,
        orchestrator: BatchOrchestrator,
        events: IdentityEventBus,
    ):
        self.uow_factory = uow_factory
        self.orchestrator = orchestrator
        self.events = events

    async def create_batch(
        self,
        kind: IdentitySource,
        username: str | None,
        source_photos: Sequence[list[str]],
        check_in_flight: bool = True,
    ) -> tuple[UUID, list[Identity]]:
        """Claim the slot and insert one record per entry of ``source_photos``.

        All rows and the claim row commit together or not at all.

        Args:
            kind: Pipeline stage
            username: Grouping key
            source_photos: Per-record source photo lists
            check_in_flight: Reject when a batch for (username, kind) is running

        Returns:
            Tuple of (generation id, created records)

        Raises:
            ConflictError: If a batch for the same username/stage is in flight
        """
        gen_id = uuid4()
        now = utcnow()
        records = [
            Identity(
                name=format_identity_name(kind, number, now),
                source_photos=list(photos),
                status=IdentityStatus.PROCESSING,
                src=kind,
                gen_id=gen_id,
                gen_st=GenerationState.GENERATING,
                instagram_username=username,
                # Distinct timestamps keep creation order stable when sorting
                created_at=now + timedelta(microseconds=number),
                updated_at=now,
            )
            for number, photos in enumerate(source_photos, start=1)
        ]

        try:
            async with await self.uow_factory() as uow:
                if check_in_flight and (
                    await uow.identities.has_in_flight_batch(username, kind)
                    or await uow.batches.is_claimed(username, kind.value)
                ):
                    raise ConflictError(
                        "Generation already in progress for this username",
                        instagram_username=username,
                        src=kind.value,
                    )
                await uow.batches.claim(
                    GenerationBatch(
                        id=gen_id,
                        instagram_username=username,
                        src=kind.value,
                        total=len(records),
                        created_at=now,
                    )
                )
                await uow.identities.add_many(records)
        except IntegrityError as e:
            logger.warning(
                "batch.claim_conflict", instagram_username=username, src=kind.value
            )
            raise ConflictError(
                "Generation already in progress for this username",
                instagram_username=username,
                src=kind.value,
            ) from e

        logger.info(
            "batch.created",
            generation_id=str(gen_id),
            src=kind.value,
            instagram_username=username,
            total=len(records),
        )
        self.events.publish_many(EVENT_INSERT, [record.to_snapshot() for record in records])
        return gen_id, records

    async def _result(self, batch: BatchResult) -> StageResult:
        async with await self.uow_factory() as uow:
            rows = await uow.identities.list_by_generation(batch.generation_id)
            snapshots = [row.to_snapshot() for row in rows]
        return StageResult(
            generation_id=batch.generation_id,
            total=batch.total,
            completed=batch.completed,
            failed=batch.failed,
            stalled=batch.stalled,
            identities=snapshots,
        )

    async def run_seedream(self, photos: Sequence[str], username: str | None) -> StageResult:
        """Create one seedream identity per photo and enhance each in turn.

        Raises:
            ValidationError: If photos is empty or contains non-strings
            ConflictError: If the username already has a processing or
                visible completed identity of any stage
        """
        if not photos or not all(isinstance(p, str) and p for p in photos):
            raise ValidationError("photos array is required")
        username = username.strip() if username and username.strip() else None

        if username is not None:
            async with await self.uow_factory() as uow:
                duplicate = await uow.identities.has_active_or_completed(username)
            if duplicate:
                raise ConflictError(
                    "An identity already exists for this username",
                    code="DUPLICATE_IDENTITY",
                    instagram_username=username,
                )

        gen_id, records = await self.create_batch(
            IdentitySource.SEEDREAM,
            username,
            [[photo] for photo in photos],
            check_in_flight=username is not None,
        )
        batch = await self.orchestrator.run(records, [], [], gen_id, IdentitySource.SEEDREAM)
        return await self._result(batch)

    async def run_anchor(
        self, username: str | None, reference_image_urls: Sequence[str]
    ) -> StageResult:
        """Generate the 10-record anchor batch from completed seedream outputs.

        Raises:
            ValidationError: Missing username/references, or references that are
                not completed seedream outputs of this username
            ConflictError: If any batch of the username is still in flight
            NotFoundError: If the username has no completed seedream output
        """
        username = _require_username(username)
        if not reference_image_urls or not all(isinstance(u, str) for u in reference_image_urls):
            raise ValidationError("referenceImageUrls array is required")

        async with await self.uow_factory() as uow:
            if await uow.identities.has_in_flight_batch(username):
                raise ConflictError(
                    "Generation already in progress for this username",
                    instagram_username=username,
                    src=IdentitySource.ANCHOR.value,
                )
            available = await uow.identities.list_completed_urls(
                username, IdentitySource.SEEDREAM
            )

        if not available:
            raise NotFoundError("No completed seedream images found for this username")
        unknown = [url for url in reference_image_urls if url not in set(available)]
        if unknown:
            raise ValidationError(
                "Reference images must be completed seedream images for this username",
                invalid=unknown,
            )

        refs = list(reference_image_urls)
        gen_id, records = await self.create_batch(
            IdentitySource.ANCHOR, username, [refs] * ANCHOR_BATCH_SIZE
        )
        batch = await self.orchestrator.run(
            records, ANCHOR_MUTATIONS, refs, gen_id, IdentitySource.ANCHOR, ANCHOR_BASE_PROMPT
        )
        return await self._result(batch)

    async def run_variants(
        self, username: str | None, primary_image_url: str | None
    ) -> StageResult:
        """Generate the 5-record variant batch from the primary anchor image.

        Raises:
            ValidationError: Missing username or primary image URL
            ConflictError: If a variant batch for the username is in flight
        """
        username = _require_username(username)
        if not primary_image_url:
            raise ValidationError("primaryImageUrl is required")

        gen_id, records = await self.create_batch(
            IdentitySource.VARIANT, username, [[primary_image_url]] * VARIANT_BATCH_SIZE
        )
        batch = await self.orchestrator.run(
            records, VARIANT_MUTATIONS, [primary_image_url], gen_id, IdentitySource.VARIANT
        )
        return await self._result(batch)
