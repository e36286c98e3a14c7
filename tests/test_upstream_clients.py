"""Outbound HTTP client tests (Seedream jobs, image fetching).

Upstream APIs are replaced with httpx.MockTransport handlers.
"""

import base64
import io
import json

import httpx
import pytest
from PIL import Image

from idforge.services.exceptions import (
    EnhancementFailed,
    UpstreamAuthError,
    UpstreamNetworkError,
    UpstreamRateLimitError,
    UpstreamRequestError,
    ValidationError,
)
from idforge.services.image_generation.seedream_client import (
    DEFAULT_SIZE,
    EDIT_ENDPOINT,
    SeedreamClient,
    calculate_output_size,
    output_size_for,
)
from idforge.services.image_source import ImageSource


def png_bytes(width: int, height: int) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height)).save(buffer, format="PNG")
    return buffer.getvalue()


# Output size


@pytest.mark.parametrize(
    "width,height,expected",
    [
        (1080, 1350, "3072*3840"),
        (1080, 1080, "3840*3840"),
        (1080, 1920, "2160*3840"),
        (0, 100, DEFAULT_SIZE),
    ],
)
def test_calculate_output_size(width, height, expected):
    assert calculate_output_size(width, height) == expected


def test_output_size_reads_image_dimensions():
    assert output_size_for(png_bytes(100, 100)) == "3840*3840"


def test_output_size_falls_back_for_unreadable_bytes():
    assert output_size_for(b"not an image") == DEFAULT_SIZE


# Seedream


class WavespeedStub:
    """Serves a submit response followed by a sequence of poll responses."""

    def __init__(self, submit: httpx.Response, polls: list[httpx.Response] | None = None):
        self.submit = submit
        self.polls = list(polls or [])
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == EDIT_ENDPOINT:
            return self.submit
        return self.polls.pop(0)


def seedream_with(stub: WavespeedStub, max_polls: int = 5) -> SeedreamClient:
    return SeedreamClient(
        api_key="test-key",
        poll_interval=0,
        max_polls=max_polls,
        transport=httpx.MockTransport(stub),
    )


@pytest.mark.asyncio
async def test_enhance_polls_until_completed():
    stub = WavespeedStub(
        httpx.Response(200, json={"data": {"id": "req-1"}}),
        [
            httpx.Response(404),
            httpx.Response(200, json={"data": {"status": "processing"}}),
            httpx.Response(
                200,
                json={"data": {"status": "completed", "outputs": ["https://ws.test/o.jpg"]}},
            ),
        ],
    )

    url = await seedream_with(stub).enhance_image("aW1n", "make it nice", "3072*3840")

    assert url == "https://ws.test/o.jpg"
    submit = stub.requests[0]
    assert submit.headers["authorization"] == "Bearer test-key"
    assert json.loads(submit.content) == {
        "images": ["aW1n"],
        "prompt": "make it nice",
        "size": "3072*3840",
    }
    assert stub.requests[-1].url.path == "/api/v3/predictions/req-1/result"


@pytest.mark.asyncio
async def test_enhance_accepts_synchronous_output():
    stub = WavespeedStub(httpx.Response(200, json={"output": "https://ws.test/direct.jpg"}))

    assert await seedream_with(stub).enhance_image("aW1n") == "https://ws.test/direct.jpg"


@pytest.mark.asyncio
async def test_enhance_reports_failed_job():
    stub = WavespeedStub(
        httpx.Response(200, json={"data": {"id": "req-1"}}),
        [httpx.Response(200, json={"data": {"status": "failed", "error": "nsfw"}})],
    )

    with pytest.raises(EnhancementFailed, match="Image processing failed"):
        await seedream_with(stub).enhance_image("aW1n")


@pytest.mark.asyncio
async def test_enhance_gives_up_after_max_polls():
    stub = WavespeedStub(
        httpx.Response(200, json={"data": {"id": "req-1"}}),
        [httpx.Response(404)] * 3,
    )

    with pytest.raises(EnhancementFailed, match="after 3 polls"):
        await seedream_with(stub, max_polls=3).enhance_image("aW1n")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status_code,error_type",
    [
        (429, UpstreamRateLimitError),
        (503, UpstreamNetworkError),
        (401, UpstreamAuthError),
        (422, UpstreamRequestError),
    ],
)
async def test_submit_errors_are_classified(status_code, error_type):
    stub = WavespeedStub(httpx.Response(status_code, text="nope"))

    with pytest.raises(error_type):
        await seedream_with(stub).enhance_image("aW1n")


@pytest.mark.asyncio
async def test_transport_failures_become_network_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = SeedreamClient(api_key="k", transport=httpx.MockTransport(handler))

    with pytest.raises(UpstreamNetworkError, match="network error"):
        await client.enhance_image("aW1n")


@pytest.mark.asyncio
async def test_download_returns_output_bytes():
    client = SeedreamClient(
        api_key="k",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, content=b"jpeg")),
    )

    assert await client.download("https://ws.test/o.jpg") == b"jpeg"


# Image source


class PrivateBucket:
    def __init__(self):
        self.read: list[str] = []

    def is_private_url(self, url: str) -> bool:
        return ".r2.cloudflarestorage.com" in url

    async def download_by_url(self, url: str) -> tuple[bytes, str]:
        self.read.append(url)
        return b"private", "image/png"


@pytest.mark.asyncio
async def test_image_source_decodes_data_urls_and_raw_base64():
    source = ImageSource(storage=None)
    payload = base64.b64encode(b"pixels").decode()

    assert await source.fetch_bytes(f"data:image/png;base64,{payload}") == (b"pixels", "image/png")
    assert await source.fetch_bytes(payload) == (b"pixels", "image/jpeg")
    assert await source.to_base64(f"data:image/png;base64,{payload}") == payload


@pytest.mark.asyncio
async def test_image_source_rejects_malformed_data_url():
    with pytest.raises(ValidationError):
        await ImageSource(storage=None).fetch_bytes("data:image/png;base64,")


@pytest.mark.asyncio
async def test_image_source_reads_private_bucket_urls_with_credentials():
    bucket = PrivateBucket()
    source = ImageSource(storage=bucket)
    url = "https://acct.r2.cloudflarestorage.com/bucket/a.png"

    assert await source.fetch_bytes(url) == (b"private", "image/png")
    assert bucket.read == [url]


@pytest.mark.asyncio
async def test_image_source_fetches_web_urls_with_browser_headers():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=b"jpeg", headers={"content-type": "image/webp"})

    source = ImageSource(storage=None, transport=httpx.MockTransport(handler))

    assert await source.fetch_bytes("https://cdn.ig/a.jpg") == (b"jpeg", "image/webp")
    assert await source.to_base64("https://cdn.ig/a.jpg") == base64.b64encode(b"jpeg").decode()
    assert seen[0].headers["referer"] == "https://www.instagram.com/"
    assert "Mozilla" in seen[0].headers["user-agent"]


@pytest.mark.asyncio
async def test_image_source_classifies_http_errors():
    source = ImageSource(
        storage=None, transport=httpx.MockTransport(lambda request: httpx.Response(404))
    )

    with pytest.raises(UpstreamRequestError, match="image-fetch"):
        await source.fetch_bytes("https://cdn.ig/missing.jpg")
