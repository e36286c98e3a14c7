"""Google Gemini client for image generation and photo classification."""

import asyncio
import base64
from typing import Any

import structlog
from google import genai
from google.genai import types

from idforge.services.exceptions import (
    ContentBlocked,
    NoImageReturned,
    UpstreamAuthError,
    UpstreamError,
    UpstreamNetworkError,
    UpstreamRateLimitError,
    UpstreamRequestError,
)
from idforge.services.image_generation.prompts import apply_mutation
from idforge.services.image_source import ImageSource

logger = structlog.get_logger()


def classify_error(exception: Exception) -> UpstreamError:
    """Classify an SDK or network exception into the upstream error hierarchy.

    Classification rules:
        - Timeout errors → UpstreamNetworkError
        - 429 / resource exhausted → UpstreamRateLimitError
        - 500 / 503 / unavailable → UpstreamNetworkError
        - 401 / 403 / API key problems → UpstreamAuthError
        - Safety / prohibited content → ContentBlocked
        - Connection errors → UpstreamNetworkError
        - Anything else → UpstreamRequestError
    """
    if isinstance(exception, UpstreamError):
        return exception

    error_message = str(exception)
    error_message_lower = error_message.lower()

    if (
        isinstance(exception, (asyncio.TimeoutError, TimeoutError))
        or "timeout" in error_message_lower
    ):
        return UpstreamNetworkError(f"gemini: timeout: {error_message}")

    if "429" in error_message or "resource_exhausted" in error_message_lower:
        return UpstreamRateLimitError(f"gemini: rate limit exceeded: {error_message}")

    if (
        "500" in error_message
        or "503" in error_message
        or "unavailable" in error_message_lower
        or "internal" in error_message_lower
    ):
        return UpstreamNetworkError(f"gemini: service unavailable: {error_message}")

    if (
        "401" in error_message
        or "403" in error_message
        or "api key" in error_message_lower
        or "permission_denied" in error_message_lower
    ):
        return UpstreamAuthError(f"gemini: authentication failed: {error_message}")

    if "prohibited_content" in error_message_lower or "safety" in error_message_lower:
        return ContentBlocked(f"gemini: content blocked: {error_message}")

    if isinstance(exception, (ConnectionError, OSError)):
        return UpstreamNetworkError(f"gemini: connection error: {error_message}")

    return UpstreamRequestError(f"gemini: {error_message}")


def extract_image_data(response: Any) -> bytes | None:
    """Return the first inline image payload of a generate_content response."""
    parts = getattr(response, "parts", None)
    if parts:
        for part in parts:
            inline = getattr(part, "inline_data", None)
            if inline is not None and inline.data:
                return inline.data

    candidates = getattr(response, "candidates", None)
    if candidates:
        content = getattr(candidates[0], "content", None)
        for part in getattr(content, "parts", None) or []:
            inline = getattr(part, "inline_data", None)
            if inline is not None and inline.data:
                return inline.data

    return None


def block_reason(response: Any) -> str | None:
    """Return the prompt-level block reason, if the model refused the request."""
    feedback = getattr(response, "prompt_feedback", None)
    reason = getattr(feedback, "block_reason", None)
    if reason:
        return str(reason)
    candidates = getattr(response, "candidates", None)
    if candidates:
        finish = str(getattr(candidates[0], "finish_reason", "") or "")
        if "SAFETY" in finish or "PROHIBITED" in finish:
            return finish
    return None


class GeminiClient:
    """Gemini wrapper owned by the application lifespan.

    The underlying ``genai.Client`` is created on first use and reused for the
    lifetime of this instance. Calls have no internal retry: callers wrap them
    in ``retry_with_backoff``.
    """

    def __init__(
        self,
        api_key: str,
        image_source: ImageSource,
        image_model: str = "gemini-3-pro-image-preview",
        vision_model: str = "gemini-2.0-flash",
        aspect_ratio: str = "9:16",
        image_size: str = "4K",
        timeout: float = 120.0,
    ):
        """Initialize Gemini client.

        Args:
            api_key: Gemini API key (from GEMINI_API_KEY env var)
            image_source: Resolver for reference images
            image_model: Model id used for image generation
            vision_model: Model id used for photo classification
            aspect_ratio: Requested output aspect ratio
            image_size: Requested output resolution tier
            timeout: Overall timeout per model call in seconds
        """
        self.api_key = api_key
        self.image_source = image_source
        self.image_model = image_model
        self.vision_model = vision_model
        self.aspect_ratio = aspect_ratio
        self.image_size = image_size
        self.timeout = timeout
        self._client: genai.Client | None = None

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            if not self.api_key:
                raise UpstreamAuthError("GEMINI_API_KEY not configured")
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    async def _generate_content(self, model: str, contents: list, config: Any) -> Any:
        # SDK call is synchronous - run in a worker thread with an overall timeout
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(
                    self.client.models.generate_content,
                    model=model,
                    contents=contents,
                    config=config,
                ),
                timeout=self.timeout,
            )
        except Exception as e:
            raise classify_error(e) from e

    async def generate(self, prompt: str, reference_images: list[str], mutation: str = "") -> str:
        """Generate one image from a prompt and reference images.

        Args:
            prompt: Prompt template; the first ``{mutation}`` placeholder is replaced
            reference_images: Data URLs, base64 strings or image URLs
            mutation: Fragment substituted into the template (may be empty)

        Returns:
            Base64-encoded output image

        Raises:
            NoImageReturned: If the response carries no inline image part
            UpstreamError: On SDK, network or reference resolution failures
        """
        final_prompt = apply_mutation(prompt, mutation)

        parts: list = [final_prompt]
        for ref in reference_images:
            image_b64 = await self.image_source.to_base64(ref)
            parts.append(
                types.Part.from_bytes(data=base64.b64decode(image_b64), mime_type="image/jpeg")
            )

        config = types.GenerateContentConfig(
            response_modalities=["TEXT", "IMAGE"],
            image_config=types.ImageConfig(
                aspect_ratio=self.aspect_ratio,
                image_size=self.image_size,
            ),
        )

        logger.info(
            "gemini.generate.started",
            model=self.image_model,
            reference_count=len(reference_images),
            mutation=mutation or None,
        )
        response = await self._generate_content(self.image_model, parts, config)

        data = extract_image_data(response)
        if data is None:
            reason = block_reason(response)
            logger.warning("gemini.generate.no_image", block_reason=reason)
            raise NoImageReturned(
                "Gemini API did not return image data"
                + (f" (blocked: {reason})" if reason else "")
            )

        if isinstance(data, str):
            # Some transports hand back base64 text instead of raw bytes
            return data
        return base64.b64encode(data).decode("ascii")

    async def analyze_images(self, prompt: str, images: list[tuple[bytes, str]]) -> str:
        """Ask the vision model about a set of images and return its text answer.

        Args:
            prompt: Instruction text placed before the images
            images: (content, mime type) pairs

        Returns:
            Model text output

        Raises:
            ContentBlocked: If the model refused to answer on safety grounds
            UpstreamError: On SDK or network failures
        """
        parts: list = [prompt]
        for content, mime in images:
            parts.append(types.Part.from_bytes(data=content, mime_type=mime))

        response = await self._generate_content(self.vision_model, parts, None)

        reason = block_reason(response)
        text = getattr(response, "text", None)
        if reason or not text:
            raise ContentBlocked(f"Content blocked by safety filters ({reason or 'no text'})")
        return text
