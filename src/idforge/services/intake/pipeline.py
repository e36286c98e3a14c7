"""Profile intake: discover photos/reels, classify photos, persist media items.

Both entry points are async generators of event dicts. The API layer turns
each event into one NDJSON line. A run always ends with exactly one
``complete`` or ``error`` event.
"""

import asyncio
from typing import Any, AsyncIterator, Callable
from uuid import uuid4

import structlog

from idforge.models.media_item import MediaItem, MediaSource, MediaType
from idforge.services.intake.broker_client import EnsembleDataClient
from idforge.services.intake.extract import (
    PhotoCandidate,
    ReelCandidate,
    dedupe_by_url,
    extract_photos,
    extract_reels,
)
from idforge.services.intake.face_classifier import ClassificationReport, FaceClassifier
from idforge.services.intake.validation import extract_username, normalize_profile_url

logger = structlog.get_logger()


def log_event(step: int, message: str, status: str, **extra: Any) -> dict[str, Any]:
    return {"type": "log", "step": step, "message": message, "status": status, **extra}


def error_event(exc: Exception, default: str) -> dict[str, Any]:
    return {"type": "error", "error": str(exc) or default}


class IntakePipeline:
    """Runs photo and reel intake for one Instagram profile."""

    def __init__(
        self,
        broker: EnsembleDataClient,
        classifier: FaceClassifier,
        uow_factory: Callable,
    ):
        self.broker = broker
        self.classifier = classifier
        self.uow_factory = uow_factory

    @staticmethod
    def resolve_profile(profile_url: str | None) -> tuple[str, str]:
        """Validate the profile URL before any streaming starts.

        Returns:
            (normalized URL, username)

        Raises:
            ValidationError: If the URL is not an Instagram profile URL
        """
        normalized = normalize_profile_url(profile_url)
        return normalized, extract_username(normalized)

    async def _persist(self, items: list[MediaItem], log) -> None:
        if not items:
            return
        try:
            async with await self.uow_factory() as uow:
                start = await uow.media_items.next_display_order()
                for offset, item in enumerate(items):
                    item.display_order = start + offset
                await uow.media_items.add_many(items)
        except Exception as e:
            # Intake results are still returned to the caller
            log.error("intake.persist_failed", count=len(items), error=str(e))
            return
        log.info("intake.persisted", count=len(items))

    async def _classify(
        self, urls: list[str]
    ) -> AsyncIterator[tuple[dict[str, Any] | None, ClassificationReport | None]]:
        """Run the classifier, yielding progress events as batches finish.

        The last item yielded carries the report.
        """
        queue: asyncio.Queue = asyncio.Queue()

        def on_progress(batch: int, total_batches: int, analyzed: int, passed: int) -> None:
            queue.put_nowait(
                {
                    "type": "progress",
                    "batch": batch,
                    "totalBatches": total_batches,
                    "analyzed": analyzed,
                    "passed": passed,
                }
            )

        task = asyncio.create_task(self.classifier.classify(urls, on_progress=on_progress))
        try:
            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    yield getter.result(), None
                    continue
                getter.cancel()
                break
            while not queue.empty():
                yield queue.get_nowait(), None
            yield None, task.result()
        finally:
            if not task.done():
                task.cancel()

    async def analyze_photos(self, profile_url: str) -> AsyncIterator[dict[str, Any]]:
        """Discover, classify and persist the profile's usable photos."""
        session_id = str(uuid4())
        try:
            normalized, username = self.resolve_profile(profile_url)
            log = logger.bind(username=username, session_id=session_id)
            log.info("intake.photos.started", profile_url=normalized)

            yield log_event(1, f"Getting Instagram User ID for @{username}", "processing")
            user_id = await self.broker.get_user_id(username, session_id=session_id)
            yield log_event(1, f"User ID retrieved: {user_id}", "complete")

            yield log_event(2, "Fetching photos and reels", "processing")
            candidates: list[PhotoCandidate] = []
            pages = 0
            async for page in self.broker.iter_post_pages(user_id):
                pages += 1
                candidates.extend(extract_photos(page.items, start_index=len(candidates)))

            photos = dedupe_by_url(candidates)
            log.info("intake.photos.discovered", photos=len(photos), pages=pages)
            yield log_event(2, f"Found {len(photos)} photos", "complete", photoCount=len(photos))

            urls = [photo.url for photo in photos]
            yield log_event(
                3,
                f"Starting Gemini analysis of {len(urls)} photos",
                "processing",
                totalPhotos=len(urls),
            )
            report = ClassificationReport()
            async for progress, result in self._classify(urls):
                if progress is not None:
                    yield progress
                if result is not None:
                    report = result

            passed = report.passed_urls()
            kept = []
            for photo in photos:
                if photo.url in passed:
                    photo.classification = passed[photo.url].to_dict()
                    kept.append(photo)

            await self._persist(
                [
                    MediaItem(
                        type=MediaType.PHOTO,
                        source=MediaSource.INSTAGRAM,
                        url=photo.url,
                        caption=photo.caption,
                        instagram_id=photo.id,
                        instagram_username=username,
                    )
                    for photo in kept
                ],
                log,
            )

            log.info("intake.photos.completed", analyzed=len(urls), passed=len(kept))
            yield {
                "type": "complete",
                "photos": [photo.to_dict() for photo in kept],
                "totalAnalyzed": len(urls),
                "totalPassed": len(kept),
            }
        except Exception as e:
            logger.error(
                "intake.photos.failed",
                session_id=session_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            yield error_event(e, "Failed to analyze photos")

    async def collect_reels(self, profile_url: str) -> AsyncIterator[dict[str, Any]]:
        """Discover and persist the profile's reels."""
        session_id = str(uuid4())
        try:
            normalized, username = self.resolve_profile(profile_url)
            log = logger.bind(username=username, session_id=session_id)
            log.info("intake.reels.started", profile_url=normalized)

            yield log_event(1, f"Getting Instagram User ID for @{username}", "processing")
            user_id = await self.broker.get_user_id(username, session_id=session_id)
            yield log_event(1, f"User ID retrieved: {user_id}", "complete")

            yield log_event(2, "Fetching Instagram reels", "processing")
            reels: list[ReelCandidate] = []
            pages = 0
            async for page in self.broker.iter_reel_pages(user_id):
                pages += 1
                reels.extend(extract_reels(page.items, start_index=len(reels)))
            log.info("intake.reels.discovered", reels=len(reels), pages=pages)

            await self._persist(
                [
                    MediaItem(
                        type=MediaType.VIDEO,
                        source=MediaSource.INSTAGRAM,
                        url=reel.url,
                        thumbnail_url=reel.thumbnail,
                        caption=reel.caption,
                        instagram_id=reel.id,
                        instagram_username=username,
                    )
                    for reel in reels
                ],
                log,
            )

            yield log_event(2, f"Found {len(reels)} reels", "complete", reelCount=len(reels))
            yield {
                "type": "complete",
                "reels": [reel.to_dict() for reel in reels],
                "totalReels": len(reels),
            }
        except Exception as e:
            logger.error(
                "intake.reels.failed",
                session_id=session_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            yield error_event(e, "Failed to fetch reels")
