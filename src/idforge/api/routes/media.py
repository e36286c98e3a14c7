"""Media library endpoints.

- GET /api/media - All media items in display order
- DELETE /api/media - Delete every item (and the blobs the library owns)
- DELETE /api/media/{item_id} - Delete one item and its extracted frames
- POST /api/media/upload - Upload a photo or video (multipart)
- POST /api/media/frames - Store frames extracted from a video
- POST /api/media/reels - Get or create a video item by URL
- GET /api/media/proxy?url= - Read an image/video through the backend
"""

from typing import Any, Callable
from uuid import UUID, uuid4

import structlog
from fastapi import APIRouter, Depends, File, Query, Response, UploadFile
from pydantic import BaseModel

from idforge.api.dependencies import get_image_source, get_storage, get_uow_factory
from idforge.models.media_item import MediaItem, MediaSource, MediaType
from idforge.services.exceptions import NotFoundError, StorageError, ValidationError
from idforge.services.image_source import ImageSource, is_http_url
from idforge.services.storage.r2_client import R2Client

logger = structlog.get_logger()
router = APIRouter(prefix="/api/media", tags=["media"])

PROXY_CACHE_CONTROL = "public, max-age=31536000, immutable"


class FramesRequest(BaseModel):
    frames: list[str] | None = None
    parentVideoId: UUID | None = None


class ReelRequest(BaseModel):
    url: str | None = None
    thumbnail_url: str | None = None
    caption: str | None = None
    instagram_id: str | None = None
    instagram_username: str | None = None
    source: MediaSource | None = None


def serialize(item: MediaItem) -> dict[str, Any]:
    return item.model_dump(mode="json")


async def _delete_blobs(storage: R2Client, items: list[MediaItem]) -> int:
    """Delete the blobs behind owned items; failures are logged and skipped."""
    deleted = 0
    for item in items:
        if not item.owns_blob or not item.url:
            continue
        try:
            if await storage.delete_by_url(item.url):
                deleted += 1
        except StorageError as e:
            logger.warning("media.blob_delete_failed", media_id=str(item.id), error=str(e))
    return deleted


@router.get("")
async def list_media(uow_factory: Callable = Depends(get_uow_factory)) -> list[dict[str, Any]]:
    async with await uow_factory() as uow:
        return [serialize(item) for item in await uow.media_items.list_all()]


@router.delete("")
async def delete_all_media(
    uow_factory: Callable = Depends(get_uow_factory),
    storage: R2Client = Depends(get_storage),
) -> dict[str, Any]:
    """Delete every media item; uploaded and extracted blobs are removed too."""
    async with await uow_factory() as uow:
        items = await uow.media_items.delete_all()
    blobs = await _delete_blobs(storage, items)
    logger.info("media.cleared", items=len(items), blobs_deleted=blobs)
    return {"success": True, "deleted": len(items)}


@router.delete("/{item_id}")
async def delete_media(
    item_id: UUID,
    uow_factory: Callable = Depends(get_uow_factory),
    storage: R2Client = Depends(get_storage),
) -> dict[str, Any]:
    async with await uow_factory() as uow:
        item = await uow.media_items.get_by_id(item_id)
        if item is None:
            raise NotFoundError("Media item not found", media_id=str(item_id))
        frames = await uow.media_items.list_frames(item_id)
        await uow.media_items.delete(item)
    await _delete_blobs(storage, [item, *frames])
    logger.info("media.deleted", media_id=str(item_id), frames=len(frames))
    return {"success": True}


@router.post("/upload")
async def upload_media(
    file: UploadFile | None = File(default=None),
    uow_factory: Callable = Depends(get_uow_factory),
    storage: R2Client = Depends(get_storage),
) -> dict[str, Any]:
    """Store an uploaded file and add it to the library.

    Raises:
        400: No file provided
    """
    if file is None:
        raise ValidationError("No file provided")

    content_type = file.content_type or "application/octet-stream"
    extension = content_type.split("/", 1)[1] if "/" in content_type else "bin"
    data = await file.read()
    url = await storage.upload_bytes(f"upload_{uuid4()}.{extension}", data, content_type)

    async with await uow_factory() as uow:
        item = await uow.media_items.add(
            MediaItem(
                type=MediaType.VIDEO if content_type.startswith("video") else MediaType.PHOTO,
                source=MediaSource.UPLOAD,
                url=url,
                display_order=await uow.media_items.next_display_order(),
            )
        )
        item_id = str(item.id)
    logger.info("media.uploaded", media_id=item_id, content_type=content_type, size_bytes=len(data))
    return {"url": url, "id": item_id}


@router.post("/frames")
async def save_frames(
    request: FramesRequest,
    uow_factory: Callable = Depends(get_uow_factory),
    storage: R2Client = Depends(get_storage),
    image_source: ImageSource = Depends(get_image_source),
) -> dict[str, Any]:
    """Store video frames (data URLs or URLs) as frame items of a video.

    Each frame is stored independently; failures are reported per frame.

    Raises:
        400: No frames, or parentVideoId missing
    """
    if not request.frames:
        raise ValidationError("No frames provided")
    if request.parentVideoId is None:
        raise ValidationError("parentVideoId is required")

    async with await uow_factory() as uow:
        start = await uow.media_items.next_display_order()

    urls: list[str] = []
    errors: list[str] = []
    for index, frame in enumerate(request.frames):
        try:
            data, _ = await image_source.fetch_bytes(frame)
            url = await storage.upload_bytes(f"frame_{uuid4()}.png", data, "image/png")
            async with await uow_factory() as uow:
                await uow.media_items.add(
                    MediaItem(
                        type=MediaType.FRAME,
                        source=MediaSource.EXTRACTED,
                        url=url,
                        parent_video_id=request.parentVideoId,
                        display_order=start + index,
                    )
                )
            urls.append(url)
        except Exception as e:
            logger.warning("media.frame_failed", frame=index + 1, error=str(e))
            errors.append(f"Frame {index + 1}: {e}")

    body: dict[str, Any] = {
        "urls": urls,
        "successCount": len(urls),
        "totalCount": len(request.frames),
    }
    if errors:
        body["errors"] = errors
    return body


@router.post("/reels")
async def get_or_create_reel(
    request: ReelRequest,
    uow_factory: Callable = Depends(get_uow_factory),
) -> dict[str, Any]:
    """Return the id of the video item with this URL, creating it if needed.

    Raises:
        400: URL missing
    """
    if not request.url:
        raise ValidationError("URL is required")

    async with await uow_factory() as uow:
        existing = await uow.media_items.get_by_url(request.url, MediaType.VIDEO)
        if existing is not None:
            return {"id": str(existing.id)}
        item = await uow.media_items.add(
            MediaItem(
                type=MediaType.VIDEO,
                source=request.source or MediaSource.UPLOAD,
                url=request.url,
                thumbnail_url=request.thumbnail_url,
                caption=request.caption,
                instagram_id=request.instagram_id,
                instagram_username=request.instagram_username,
                display_order=await uow.media_items.next_display_order(),
            )
        )
        item_id = str(item.id)
    logger.info("media.reel_created", media_id=item_id)
    return {"id": item_id}


@router.get("/proxy")
async def proxy_media(
    url: str | None = Query(default=None),
    storage: R2Client = Depends(get_storage),
    image_source: ImageSource = Depends(get_image_source),
) -> Response:
    """Serve a bucket object or a remote (CDN) image/video through the backend.

    Raises:
        400: URL missing or not http(s)
    """
    if not url or not is_http_url(url):
        raise ValidationError("URL parameter is required")

    if storage.is_public_url(url):
        content, content_type = await storage.download_by_url(url)
    else:
        content, content_type = await image_source.fetch_bytes(url)

    return Response(
        content=content,
        media_type=content_type or "image/jpeg",
        headers={"Cache-Control": PROXY_CACHE_CONTROL},
    )
