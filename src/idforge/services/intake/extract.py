"""Normalization of broker pages into photo and reel candidates.

Broker payloads are not contractually stable, so every field is looked up
through a list of known locations in priority order.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, TypeVar


@dataclass
class PhotoCandidate:
    url: str
    id: str
    thumbnail: str | None = None
    caption: str = ""
    classification: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["geminiResult"] = data.pop("classification")
        return data


@dataclass
class ReelCandidate:
    url: str
    id: str
    thumbnail: str | None = None
    caption: str = ""
    shortcode: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Page:
    """One broker page: raw items plus the cursor for the next request."""

    items: list[dict[str, Any]] = field(default_factory=list)
    next_cursor: str | None = None


def _dig(obj: Any, *path: Any) -> Any:
    for key in path:
        if obj is None:
            return None
        if isinstance(key, int):
            if not isinstance(obj, list) or len(obj) <= key:
                return None
            obj = obj[key]
        else:
            if not isinstance(obj, dict):
                return None
            obj = obj.get(key)
    return obj


def _first(*values: Any) -> Any:
    for value in values:
        if value:
            return value
    return None


def page_payload(body: dict[str, Any]) -> dict[str, Any]:
    """Unwrap the broker's ``{"data": {...}}`` envelope when present."""
    data = body.get("data") if isinstance(body, dict) else None
    if isinstance(data, dict):
        return data
    return body if isinstance(body, dict) else {}


def parse_posts_page(body: dict[str, Any]) -> Page:
    payload = page_payload(body)
    posts = payload.get("posts") or []
    return Page(
        items=[post.get("node") or post for post in posts if isinstance(post, dict)],
        next_cursor=payload.get("last_cursor") or None,
    )


def parse_reels_page(body: dict[str, Any]) -> Page:
    payload = page_payload(body)
    raw = payload.get("data") or payload.get("reels") or payload.get("posts") or []
    items = []
    for item in raw if isinstance(raw, list) else []:
        if isinstance(item, dict):
            items.append(item.get("media") or item.get("node") or item)
    return Page(items=items, next_cursor=payload.get("last_cursor") or None)


def _caption(post: dict[str, Any]) -> str:
    return _dig(post, "edge_media_to_caption", "edges", 0, "node", "text") or ""


def extract_photos(posts: Iterable[dict[str, Any]], start_index: int = 0) -> list[PhotoCandidate]:
    """Extract image posts and image children of carousel posts.

    Args:
        posts: Unwrapped post nodes
        start_index: Number of photos collected before this page (used for
            generated child ids)
    """
    photos: list[PhotoCandidate] = []
    for post in posts:
        typename = post.get("__typename")
        display_url = post.get("display_url")
        if typename not in ("GraphImage", "GraphSidecar") or not display_url:
            continue

        caption = _caption(post)
        post_id = str(post.get("id") or post.get("shortcode") or "")
        photos.append(
            PhotoCandidate(url=display_url, thumbnail=display_url, id=post_id, caption=caption)
        )

        if typename != "GraphSidecar":
            continue
        for edge in _dig(post, "edge_sidecar_to_children", "edges") or []:
            child = edge.get("node") or {}
            if child.get("__typename") == "GraphImage" and child.get("display_url"):
                child_id = child.get("id") or f"{post.get('id')}_{start_index + len(photos)}"
                photos.append(
                    PhotoCandidate(
                        url=child["display_url"],
                        thumbnail=child["display_url"],
                        id=str(child_id),
                        caption=caption,
                    )
                )
    return photos


def extract_reel(media: dict[str, Any], fallback_index: int) -> ReelCandidate | None:
    """Extract one reel; returns None when no video URL can be found."""
    video_url = _first(
        _dig(media, "video_versions", 0, "url"),
        media.get("video_url"),
        _dig(media, "video_versions2", "candidates", 0, "url"),
    )
    if not video_url:
        return None

    thumbnail = _first(
        _dig(media, "image_versions2", "candidates", 0, "url"),
        media.get("display_url"),
        media.get("thumbnail_src"),
        media.get("thumbnail_url"),
        _dig(media, "image_versions", 0, "url"),
    )
    caption_field = media.get("caption")
    caption = _first(
        caption_field.get("text") if isinstance(caption_field, dict) else None,
        _caption(media),
        media.get("caption_text"),
    )
    shortcode = media.get("code") or media.get("shortcode")
    reel_id = _first(shortcode, media.get("id"), media.get("pk"))

    return ReelCandidate(
        url=video_url,
        thumbnail=thumbnail,
        id=str(reel_id) if reel_id else f"reel_{fallback_index}",
        caption=caption or "",
        shortcode=shortcode,
    )


def extract_reels(items: Iterable[dict[str, Any]], start_index: int = 0) -> list[ReelCandidate]:
    reels: list[ReelCandidate] = []
    for media in items:
        reel = extract_reel(media, start_index + len(reels))
        if reel is not None:
            reels.append(reel)
    return reels


T = TypeVar("T", PhotoCandidate, ReelCandidate)


def dedupe_by_url(items: Iterable[T]) -> list[T]:
    """Drop repeated URLs, keeping the first-seen entry and its position."""
    unique: dict[str, T] = {}
    for item in items:
        unique.setdefault(item.url, item)
    return list(unique.values())
