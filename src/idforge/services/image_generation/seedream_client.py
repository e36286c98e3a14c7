"""Wavespeed Seedream client for photo enhancement jobs."""

import asyncio
import io
from typing import Any

import httpx
import structlog
from PIL import Image, UnidentifiedImageError

from idforge.services.exceptions import EnhancementFailed, UpstreamError, UpstreamRequestError
from idforge.services.image_generation.prompts import SEEDREAM_PROMPT
from idforge.services.upstream import raise_for_upstream_status, wrap_transport_error

logger = structlog.get_logger()

DEFAULT_SIZE = "3072*3840"
TARGET_HEIGHT = 3840
EDIT_ENDPOINT = "/api/v3/bytedance/seedream-v4.5/edit"

_DONE_STATUSES = ("completed", "succeeded")
_FAILED_STATUSES = ("failed", "error")


def calculate_output_size(width: int, height: int) -> str:
    """Keep the input aspect ratio at a fixed height of 3840, width rounded to a multiple of 8.

    Returns:
        Size string in the API's ``W*H`` format
    """
    if width <= 0 or height <= 0:
        return DEFAULT_SIZE
    target_width = round(TARGET_HEIGHT * (width / height))
    final_width = round(target_width / 8) * 8
    final_height = round(TARGET_HEIGHT / 8) * 8
    return f"{final_width}*{final_height}"


def output_size_for(image_bytes: bytes) -> str:
    """Compute the output size for an input image, falling back to 3072*3840."""
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            width, height = img.size
    except (UnidentifiedImageError, OSError, ValueError) as e:
        logger.warning("seedream.dimensions_unreadable", error=str(e))
        return DEFAULT_SIZE
    return calculate_output_size(width, height)


def _first_output(data: dict[str, Any], envelope: dict[str, Any]) -> str | None:
    outputs = data.get("outputs")
    if isinstance(outputs, list) and outputs:
        return outputs[0]
    return data.get("output") or envelope.get("output")


class SeedreamClient:
    """Submit an edit job and poll the prediction until it finishes."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.wavespeed.ai",
        timeout: float = 120.0,
        poll_interval: float = 5.0,
        max_polls: int = 60,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize Seedream client.

        Args:
            api_key: Wavespeed API key (from WAVESPEED_API_KEY env var)
            base_url: API base URL
            timeout: Per-request timeout in seconds
            poll_interval: Seconds to wait before each poll
            max_polls: Poll attempts before giving up (404 responses count)
            transport: Optional httpx transport (tests)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.transport = transport
        self.headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            timeout=self.timeout,
            transport=self.transport,
        )

    async def enhance_image(
        self, image_base64: str, prompt: str = SEEDREAM_PROMPT, size: str = DEFAULT_SIZE
    ) -> str:
        """Run one enhancement job.

        Args:
            image_base64: Input image as base64 (no data: prefix)
            prompt: Edit instruction
            size: Output size as ``W*H``

        Returns:
            URL of the enhanced image

        Raises:
            EnhancementFailed: If the job fails or polling runs out
            UpstreamError: On HTTP or network failures
        """
        payload = {"images": [image_base64], "prompt": prompt, "size": size}

        try:
            async with self._client() as client:
                response = await client.post(EDIT_ENDPOINT, json=payload)
                raise_for_upstream_status(response, "wavespeed")
                envelope = response.json()
                data = envelope.get("data") or envelope

                request_id = data.get("id") or data.get("requestId")
                if request_id:
                    logger.info("seedream.job_submitted", request_id=request_id, size=size)
                    return await self._poll_for_result(client, request_id)

                image_url = (
                    envelope.get("output")
                    or data.get("output")
                    or ((data.get("outputs") or [None])[0])
                    or envelope.get("url")
                    or data.get("url")
                )
                if image_url:
                    return image_url
                raise UpstreamRequestError(f"wavespeed: invalid response format: {envelope}")
        except httpx.HTTPError as e:
            raise wrap_transport_error(e, "wavespeed") from e

    async def _poll_for_result(self, client: httpx.AsyncClient, request_id: str) -> str:
        for attempt in range(1, self.max_polls + 1):
            await asyncio.sleep(self.poll_interval)

            response = await client.get(f"/api/v3/predictions/{request_id}/result")
            if response.status_code == 404:
                # Result not registered yet
                continue
            raise_for_upstream_status(response, "wavespeed")

            envelope = response.json()
            data = envelope.get("data") or envelope
            status = data.get("status") or envelope.get("status")

            if status in _DONE_STATUSES:
                image_url = _first_output(data, envelope)
                if image_url:
                    logger.info("seedream.job_completed", request_id=request_id, polls=attempt)
                    return image_url
            if status in _FAILED_STATUSES:
                raise EnhancementFailed(f"Image processing failed: {data}")

        raise EnhancementFailed(
            f"Timeout waiting for image processing result after {self.max_polls} polls"
        )

    async def download(self, url: str) -> bytes:
        """Fetch the finished image so it can be re-hosted in our bucket."""
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=True, transport=self.transport
            ) as client:
                response = await client.get(url)
                raise_for_upstream_status(response, "wavespeed-output")
                if not response.content:
                    raise UpstreamError(f"Empty enhancement output at {url}")
                return response.content
        except httpx.HTTPError as e:
            raise wrap_transport_error(e, "wavespeed-output") from e
