"""Batch face/quality classification of candidate photos."""

import asyncio
import json
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Callable

import structlog

from idforge.services.exceptions import ContentBlocked
from idforge.services.image_generation.gemini_client import GeminiClient
from idforge.services.image_generation.prompts import classifier_prompt
from idforge.services.image_source import ImageSource

logger = structlog.get_logger()

TOP_SELECTION_COUNT = 5

_FENCED_JSON = re.compile(r"```json\s*([\s\S]*?)\s*```")
_FENCED_ANY = re.compile(r"```\s*([\s\S]*?)\s*```")

ProgressCallback = Callable[[int, int, int, int], None]


@dataclass
class ClassificationResult:
    url: str
    zoom_score: int = 0
    visibility_score: int = 0
    total: int = 0
    decision: str = "no"
    explanation: str = ""

    @property
    def passed(self) -> bool:
        return self.decision == "yes"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ClassificationReport:
    all_results: list[ClassificationResult] = field(default_factory=list)
    top_selections: list[ClassificationResult] = field(default_factory=list)

    def passed_urls(self) -> dict[str, ClassificationResult]:
        return {result.url: result for result in self.all_results if result.passed}


def _rejected(url: str, explanation: str) -> ClassificationResult:
    return ClassificationResult(url=url, decision="no", explanation=explanation)


def parse_classifier_output(text: str) -> list[dict[str, Any]]:
    """Parse the model's JSON answer, fenced or bare, into a list of entries.

    Raises:
        ValueError: If no JSON can be decoded
    """
    match = _FENCED_JSON.search(text) or _FENCED_ANY.search(text)
    payload = match.group(1) if match else text
    payload = payload.strip().replace("```json", "").replace("```", "")
    parsed = json.loads(payload)
    entries = parsed if isinstance(parsed, list) else [parsed]
    return [entry for entry in entries if isinstance(entry, dict)]


def map_results(entries: list[dict[str, Any]], urls: list[str]) -> list[ClassificationResult]:
    """Map parsed entries back to URLs by their ``index`` (or list position)."""
    results = []
    for position, entry in enumerate(entries):
        index = entry.get("index", position)
        if not isinstance(index, int) or not 0 <= index < len(urls):
            continue
        zoom = entry.get("zoom_score") or 0
        visibility = entry.get("visibility_score") or 0
        results.append(
            ClassificationResult(
                url=urls[index],
                zoom_score=zoom,
                visibility_score=visibility,
                total=entry.get("total") or zoom + visibility,
                decision="yes" if entry.get("decision") == "yes" else "no",
                explanation=entry.get("explanation") or "",
            )
        )
    return results


class FaceClassifier:
    """Scores photos for identity-cloning suitability in fixed-size batches.

    Every input URL ends up with a result: fetch failures, safety blocks and
    model errors are reported as ``decision='no'`` rather than raised.
    """

    def __init__(
        self,
        gemini: GeminiClient,
        image_source: ImageSource,
        batch_size: int = 10,
        fetch_timeout: float = 15.0,
    ):
        self.gemini = gemini
        self.image_source = image_source
        self.batch_size = batch_size
        self.fetch_timeout = fetch_timeout

    async def _fetch(self, url: str) -> tuple[bytes, str] | None:
        try:
            return await self.image_source.fetch_bytes(url, timeout=self.fetch_timeout)
        except Exception as e:
            logger.warning("classifier.fetch_failed", url=url[:30], error=str(e))
            return None

    async def _classify_batch(self, urls: list[str]) -> list[ClassificationResult]:
        fetched = await asyncio.gather(*(self._fetch(url) for url in urls))

        results = [
            _rejected(url, "Failed to fetch image")
            for url, image in zip(urls, fetched)
            if image is None
        ]
        valid = [(url, image) for url, image in zip(urls, fetched) if image is not None]
        if not valid:
            logger.error("classifier.batch_empty", size=len(urls))
            return results

        valid_urls = [url for url, _ in valid]
        try:
            text = await self.gemini.analyze_images(
                classifier_prompt(len(valid)), [image for _, image in valid]
            )
        except ContentBlocked:
            logger.warning("classifier.batch_blocked", size=len(valid))
            blocked = [_rejected(url, "Content blocked by safety filters") for url in valid_urls]
            return results + blocked

        return results + map_results(parse_classifier_output(text), valid_urls)

    async def classify(
        self, urls: list[str], on_progress: ProgressCallback | None = None
    ) -> ClassificationReport:
        """Classify every URL, batch by batch.

        Args:
            urls: Candidate photo URLs
            on_progress: Called after each batch with
                (batch, total_batches, analyzed, passed)

        Returns:
            All results plus the five highest-scoring passed photos
        """
        results: list[ClassificationResult] = []
        total_batches = -(-len(urls) // self.batch_size)

        for start in range(0, len(urls), self.batch_size):
            batch = urls[start : start + self.batch_size]
            batch_number = start // self.batch_size + 1
            try:
                batch_results = await self._classify_batch(batch)
            except Exception as e:
                logger.error(
                    "classifier.batch_failed",
                    batch=batch_number,
                    total_batches=total_batches,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                results.extend(_rejected(url, "API error") for url in batch)
                continue

            results.extend(batch_results)
            passed = sum(1 for result in results if result.passed)
            logger.info(
                "classifier.batch_complete",
                batch=batch_number,
                total_batches=total_batches,
                analyzed=len(results),
                passed=passed,
            )
            if on_progress is not None:
                on_progress(batch_number, total_batches, len(results), passed)

        top = sorted((r for r in results if r.passed), key=lambda r: r.total, reverse=True)
        return ClassificationReport(all_results=results, top_selections=top[:TOP_SELECTION_COUNT])
