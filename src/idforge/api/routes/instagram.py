"""Instagram profile intake endpoints.

Both endpoints answer with a stream of newline-delimited JSON events
(``log``, ``progress``, then ``complete`` or ``error``). An invalid profile
URL is rejected with 400 before the stream starts.
"""

import json
from typing import Any, AsyncIterator

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from idforge.api.dependencies import get_intake_pipeline
from idforge.services.intake.pipeline import IntakePipeline

logger = structlog.get_logger()
router = APIRouter(prefix="/api/instagram", tags=["instagram"])

NDJSON_MEDIA_TYPE = "application/x-ndjson"


class ProfileRequest(BaseModel):
    profileUrl: str | None = None


async def to_ndjson(events: AsyncIterator[dict[str, Any]]) -> AsyncIterator[str]:
    async for event in events:
        yield json.dumps(event) + "\n"


def ndjson_response(events: AsyncIterator[dict[str, Any]]) -> StreamingResponse:
    return StreamingResponse(
        to_ndjson(events),
        media_type=NDJSON_MEDIA_TYPE,
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/analyze")
async def analyze_profile(
    request: ProfileRequest,
    pipeline: IntakePipeline = Depends(get_intake_pipeline),
) -> StreamingResponse:
    """Discover and classify the profile's photos; keep the usable ones."""
    _, username = pipeline.resolve_profile(request.profileUrl)
    logger.info("api.instagram.analyze_requested", username=username)
    return ndjson_response(pipeline.analyze_photos(request.profileUrl or ""))


@router.post("/reels")
async def collect_reels(
    request: ProfileRequest,
    pipeline: IntakePipeline = Depends(get_intake_pipeline),
) -> StreamingResponse:
    """Discover the profile's reels and store them as video media items."""
    _, username = pipeline.resolve_profile(request.profileUrl)
    logger.info("api.instagram.reels_requested", username=username)
    return ndjson_response(pipeline.collect_reels(request.profileUrl or ""))
