"""Instagram profile URL normalization and username extraction."""

from urllib.parse import urlsplit

from idforge.services.exceptions import ValidationError

_NON_PROFILE_SEGMENTS = ("p", "embed", "reel", "reels", "stories", "explore")


def normalize_profile_url(url: str | None) -> str:
    """Normalize a profile URL to ``https://<host>/<username>``.

    A scheme is added when missing; query string, fragment and trailing
    slashes are dropped.

    Raises:
        ValidationError: If the URL is empty, not on instagram.com, or has no
            username path (post and embed URLs are rejected)
    """
    if not url or not str(url).strip():
        raise ValidationError("URL is required")

    trimmed = str(url).strip()
    normalized = trimmed if trimmed.startswith("http") else f"https://{trimmed}"
    parts = urlsplit(normalized)

    if not parts.hostname or "instagram.com" not in parts.hostname:
        raise ValidationError("Must be an Instagram profile URL")

    segments = [segment for segment in parts.path.split("/") if segment]
    if not segments or segments[0] in _NON_PROFILE_SEGMENTS:
        raise ValidationError(
            "Must be a valid Instagram profile URL (e.g., https://instagram.com/username)"
        )

    return f"https://{parts.hostname}/{segments[0]}"


def extract_username(url: str) -> str:
    """Return the username of a profile URL, without a leading '@'.

    Raises:
        ValidationError: If the URL does not name a profile
    """
    normalized = normalize_profile_url(url)
    username = normalized.rsplit("/", 1)[1].lstrip("@")
    if not username:
        raise ValidationError("Could not extract username from URL")
    return username
