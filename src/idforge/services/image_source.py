"""Resolve image references (data URLs, base64, bucket URLs, web URLs) to bytes."""

import base64
import binascii

import httpx
import structlog

from idforge.services.exceptions import UpstreamError, ValidationError
from idforge.services.storage.r2_client import R2Client
from idforge.services.upstream import raise_for_upstream_status, wrap_transport_error

logger = structlog.get_logger()

# Instagram's CDN rejects requests that do not look like a browser
BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Referer": "https://www.instagram.com/",
}


def is_data_url(ref: str) -> bool:
    return ref.startswith("data:")


def is_http_url(ref: str) -> bool:
    return ref.startswith("http://") or ref.startswith("https://")


def split_data_url(ref: str) -> tuple[str, str]:
    """Split a data URL into (mime type, base64 payload).

    Raises:
        ValidationError: If the data URL has no payload
    """
    header, sep, payload = ref.partition(",")
    if not sep or not payload:
        raise ValidationError("Malformed data URL")
    mime = header[len("data:") :].split(";", 1)[0] or "image/jpeg"
    return mime, payload


class ImageSource:
    """Turns any image reference into raw bytes or base64.

    Bucket URLs are read with storage credentials; every other URL is fetched
    over HTTP with browser-like headers.
    """

    def __init__(
        self,
        storage: R2Client | None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize image source.

        Args:
            storage: Bucket client used for private URLs (None disables that path)
            timeout: Per-request timeout for web fetches in seconds
            transport: Optional httpx transport (tests)
        """
        self.storage = storage
        self.timeout = timeout
        self.transport = transport

    async def fetch_bytes(self, ref: str, timeout: float | None = None) -> tuple[bytes, str]:
        """Resolve a reference to (content, mime type).

        Args:
            ref: Data URL, raw base64, bucket URL or web URL
            timeout: Override of the default fetch timeout

        Returns:
            Tuple of raw bytes and MIME type

        Raises:
            ValidationError: If the reference is neither a URL nor valid base64
            UpstreamError: If the fetch fails
        """
        if is_data_url(ref):
            mime, payload = split_data_url(ref)
            return _b64decode(payload), mime

        if not is_http_url(ref):
            return _b64decode(ref), "image/jpeg"

        if self.storage is not None and self.storage.is_private_url(ref):
            return await self.storage.download_by_url(ref)

        try:
            async with httpx.AsyncClient(
                timeout=timeout or self.timeout,
                follow_redirects=True,
                transport=self.transport,
            ) as client:
                response = await client.get(ref, headers=BROWSER_HEADERS)
                raise_for_upstream_status(response, "image-fetch")
                mime = response.headers.get("content-type", "image/jpeg").split(";", 1)[0]
                return response.content, mime
        except httpx.HTTPError as e:
            raise wrap_transport_error(e, "image-fetch") from e

    async def to_base64(self, ref: str, timeout: float | None = None) -> str:
        """Resolve a reference to a base64 string.

        Data URLs and raw base64 are passed through without a round trip.
        """
        if is_data_url(ref):
            return split_data_url(ref)[1]
        if not is_http_url(ref):
            return ref

        content, _ = await self.fetch_bytes(ref, timeout=timeout)
        if not content:
            raise UpstreamError(f"Empty image body from {ref[:100]}")
        logger.debug("image_source.fetched", url=ref[:100], size_bytes=len(content))
        return base64.b64encode(content).decode("ascii")


def _b64decode(payload: str) -> bytes:
    try:
        return base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as e:
        raise ValidationError("Image reference is not valid base64") from e
