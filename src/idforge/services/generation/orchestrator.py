"""Batch generation orchestrator.

Runs one batch of identity records through generation, upload and status
writes, strictly one record at a time.

Every status write opens its own unit of work, so a record's write failure
never rolls back another record. After the loop, a single statement flips
gen_st to 'done' for the whole batch and the batch claim row is closed; this
runs even when the loop itself raised.

Outcome per record:
- generation/upload succeeded, write succeeded → completed
- generation/upload failed after retries → failed
- generation/upload succeeded, write failed after retries → left processing
  ("stalled"); the uploaded image is kept and the record can be repaired later
"""

import base64
import math
from dataclasses import dataclass, field
from typing import Callable, Sequence
from uuid import UUID

import structlog

from idforge.core.config import Settings
from idforge.models.identity import Identity, IdentitySource
from idforge.services.events import EVENT_UPDATE, IdentityEventBus
from idforge.services.exceptions import PersistenceError, TransientError
from idforge.services.image_generation.gemini_client import GeminiClient
from idforge.services.image_generation.prompts import (
    ANCHOR_BASE_PROMPT,
    SEEDREAM_PROMPT,
    Mutation,
)
from idforge.services.image_generation.seedream_client import SeedreamClient, output_size_for
from idforge.services.image_source import ImageSource
from idforge.services.retry import retry_with_backoff
from idforge.services.storage.r2_client import R2Client

logger = structlog.get_logger()

# Anchor storage keys number images 1..5 within each mutation group
ANCHOR_GROUP_SIZE = 5


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    initial_delay: float


@dataclass
class BatchResult:
    """Final counts for one orchestrator run."""

    generation_id: UUID
    total: int
    completed: int = 0
    failed: int = 0
    stalled: int = 0
    record_ids: list[UUID] = field(default_factory=list)


def select_mutation(
    kind: IdentitySource, mutations: Sequence[Mutation], index: int, total: int
) -> Mutation | None:
    """Pick the mutation applied to record ``index`` of a batch of ``total``.

    Anchor batches split records into equal consecutive groups, one per
    mutation (10 records / 2 mutations: 0-4 → first, 5-9 → second). Variant
    batches map record i to mutation i, wrapping around when there are fewer
    mutations than records. Seedream batches use no mutation.
    """
    if kind == IdentitySource.SEEDREAM or not mutations:
        return None
    if kind == IdentitySource.ANCHOR:
        group = max(1, math.ceil(total / len(mutations)))
        return mutations[min(index // group, len(mutations) - 1)]
    return mutations[index % len(mutations)]


def storage_key(
    kind: IdentitySource, identity_id: UUID, mutation: Mutation | None, index: int
) -> str:
    """Deterministic object key encoding stage, record, mutation and sequence."""
    if kind == IdentitySource.ANCHOR and mutation is not None:
        return f"anc_{identity_id}_{mutation.id}_{(index % ANCHOR_GROUP_SIZE) + 1}.jpg"
    if kind == IdentitySource.VARIANT and mutation is not None:
        return f"var_{identity_id}_{mutation.id}.jpg"
    return f"{kind.value}_{identity_id}.jpg"


class BatchOrchestrator:
    """Sequential generate → upload → update loop over one batch."""

    def __init__(
        self,
        uow_factory: Callable,
        image_client: GeminiClient,
        storage: R2Client,
        events: IdentityEventBus,
        seedream: SeedreamClient | None = None,
        image_source: ImageSource | None = None,
        generation_policy: RetryPolicy = RetryPolicy(3, 5.0),
        base64_policy: RetryPolicy = RetryPolicy(5, 2.0),
        update_policy: RetryPolicy = RetryPolicy(5, 1.0),
    ):
        """Initialize orchestrator.

        Args:
            uow_factory: Factory producing UnitOfWork instances
            image_client: Generative image client (anchor and variant stages)
            storage: Object storage sink for outputs
            events: Bus receiving an UPDATE event per status write
            seedream: Enhancement client (seedream stage)
            image_source: Resolver for seedream input photos
            generation_policy: Retry policy around the model/enhancement call
            base64_policy: Retry policy around source photo resolution
            update_policy: Retry policy around the completed status write
        """
        self.uow_factory = uow_factory
        self.image_client = image_client
        self.storage = storage
        self.events = events
        self.seedream = seedream
        self.image_source = image_source
        self.generation_policy = generation_policy
        self.base64_policy = base64_policy
        self.update_policy = update_policy

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        uow_factory: Callable,
        image_client: GeminiClient,
        storage: R2Client,
        events: IdentityEventBus,
        seedream: SeedreamClient | None = None,
        image_source: ImageSource | None = None,
    ) -> "BatchOrchestrator":
        return cls(
            uow_factory=uow_factory,
            image_client=image_client,
            storage=storage,
            events=events,
            seedream=seedream,
            image_source=image_source,
            generation_policy=RetryPolicy(
                settings.generation_max_attempts, settings.generation_initial_delay
            ),
            base64_policy=RetryPolicy(settings.base64_max_attempts, settings.base64_initial_delay),
            update_policy=RetryPolicy(
                settings.db_update_max_attempts, settings.db_update_initial_delay
            ),
        )

    async def run(
        self,
        identity_records: Sequence[Identity],
        mutations: Sequence[Mutation],
        reference_image_urls: Sequence[str],
        batch_id: UUID,
        kind: IdentitySource,
        base_prompt: str | None = None,
    ) -> BatchResult:
        """Process every record of a batch, then mark the batch done.

        Args:
            identity_records: Records created for this batch, in order
            mutations: Mutation descriptors (ignored for seedream)
            reference_image_urls: Shared reference images (anchor/variant)
            batch_id: gen_id shared by the records
            kind: Pipeline stage
            base_prompt: Anchor template override

        Returns:
            BatchResult with completed/failed/stalled counts

        Raises:
            PersistenceError: If the batch-done write fails after retries
        """
        log = logger.bind(generation_id=str(batch_id), kind=kind.value)
        total = len(identity_records)
        result = BatchResult(
            generation_id=batch_id,
            total=total,
            record_ids=[record.id for record in identity_records],
        )
        log.info("batch.started", total=total, references=len(reference_image_urls))

        try:
            for index, record in enumerate(identity_records):
                mutation = select_mutation(kind, mutations, index, total)
                record_log = log.bind(
                    identity_id=str(record.id),
                    index=index,
                    mutation=mutation.id if mutation else None,
                )
                record_log.info("batch.record.started", position=f"{index + 1}/{total}")

                try:
                    image_bytes = await self._produce_image(
                        record, kind, mutation, reference_image_urls, base_prompt
                    )
                    image_url = await self.storage.upload_bytes(
                        storage_key(kind, record.id, mutation, index), image_bytes, "image/jpeg"
                    )
                except Exception as e:
                    record_log.error(
                        "batch.record.generation_failed",
                        error=str(e),
                        error_type=type(e).__name__,
                        transient=isinstance(e, TransientError),
                    )
                    await self._mark_failed(record.id, record_log)
                    result.failed += 1
                    continue

                try:
                    await retry_with_backoff(
                        lambda: self._mark_completed(record.id, image_url),
                        max_attempts=self.update_policy.max_attempts,
                        initial_delay=self.update_policy.initial_delay,
                        operation_name="identity.mark_completed",
                    )
                except Exception as e:
                    # Image is uploaded; keep the record processing instead of failing it
                    record_log.error(
                        "batch.record.stalled",
                        image_url=image_url,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    result.stalled += 1
                    continue

                record_log.info("batch.record.completed", image_url=image_url)
                result.completed += 1
        except BaseException as e:
            log.error(
                "batch.loop_aborted",
                error=str(e),
                error_type=type(e).__name__,
                completed=result.completed,
                failed=result.failed,
            )
            raise
        finally:
            await self._finish(batch_id, result, log)

        log.info(
            "batch.finished",
            total=total,
            completed=result.completed,
            failed=result.failed,
            stalled=result.stalled,
        )
        return result

    async def _produce_image(
        self,
        record: Identity,
        kind: IdentitySource,
        mutation: Mutation | None,
        reference_image_urls: Sequence[str],
        base_prompt: str | None,
    ) -> bytes:
        if kind == IdentitySource.SEEDREAM:
            return await self._enhance(record)

        if kind == IdentitySource.ANCHOR:
            prompt = base_prompt or ANCHOR_BASE_PROMPT
            mutation_text = mutation.mutation if mutation else ""
        else:
            # Variant prompts are complete sentences; nothing to substitute
            prompt = (mutation.prompt or mutation.mutation) if mutation else (base_prompt or "")
            mutation_text = ""

        refs = list(reference_image_urls)
        image_b64 = await retry_with_backoff(
            lambda: self.image_client.generate(prompt, refs, mutation_text),
            max_attempts=self.generation_policy.max_attempts,
            initial_delay=self.generation_policy.initial_delay,
            operation_name="gemini.generate",
        )
        return base64.b64decode(image_b64)

    async def _enhance(self, record: Identity) -> bytes:
        if self.seedream is None or self.image_source is None:
            raise RuntimeError("Seedream stage requires an enhancement client and image source")
        if not record.source_photos:
            raise ValueError(f"Identity {record.id} has no source photo")

        source = record.source_photos[0]
        image_bytes, _ = await retry_with_backoff(
            lambda: self.image_source.fetch_bytes(source),  # type: ignore[union-attr]
            max_attempts=self.base64_policy.max_attempts,
            initial_delay=self.base64_policy.initial_delay,
            operation_name="image_source.fetch",
        )
        size = output_size_for(image_bytes)
        image_b64 = base64.b64encode(image_bytes).decode("ascii")

        output_url = await retry_with_backoff(
            lambda: self.seedream.enhance_image(image_b64, SEEDREAM_PROMPT, size),  # type: ignore[union-attr]
            max_attempts=self.generation_policy.max_attempts,
            initial_delay=self.generation_policy.initial_delay,
            operation_name="seedream.enhance",
        )
        return await retry_with_backoff(
            lambda: self.seedream.download(output_url),  # type: ignore[union-attr]
            max_attempts=self.base64_policy.max_attempts,
            initial_delay=self.base64_policy.initial_delay,
            operation_name="seedream.download",
        )

    async def _mark_completed(self, identity_id: UUID, image_url: str) -> None:
        async with await self.uow_factory() as uow:
            identity = await uow.identities.mark_completed(identity_id, image_url)
            if identity is None:
                raise PersistenceError(f"Identity {identity_id} no longer exists")
            snapshot = identity.to_snapshot()
        self.events.publish(EVENT_UPDATE, snapshot)

    async def _mark_failed(self, identity_id: UUID, record_log) -> None:
        # Best effort: the loop moves on whether or not this write lands
        try:
            async with await self.uow_factory() as uow:
                identity = await uow.identities.mark_failed(identity_id)
                snapshot = identity.to_snapshot() if identity else None
        except Exception as e:
            record_log.error(
                "batch.record.mark_failed_error",
                error=str(e),
                error_type=type(e).__name__,
            )
            return
        if snapshot:
            self.events.publish(EVENT_UPDATE, snapshot)

    async def _finish(self, batch_id: UUID, result: BatchResult, log) -> None:
        async def _write() -> list[dict]:
            async with await self.uow_factory() as uow:
                updated = await uow.identities.mark_batch_done(batch_id)
                await uow.batches.close(batch_id, result.completed, result.failed)
                rows = await uow.identities.list_by_generation(batch_id)
                log.info("batch.marked_done", rows_updated=updated)
                return [row.to_snapshot() for row in rows]

        try:
            snapshots = await retry_with_backoff(
                _write,
                max_attempts=self.update_policy.max_attempts,
                initial_delay=self.update_policy.initial_delay,
                operation_name="batch.mark_done",
            )
        except Exception as e:
            log.error("batch.mark_done_failed", error=str(e), error_type=type(e).__name__)
            raise PersistenceError(f"Failed to mark batch {batch_id} done: {e}") from e

        self.events.publish_many(EVENT_UPDATE, snapshots)
