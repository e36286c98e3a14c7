"""Identity generation API endpoints.

- POST /api/seedream - Enhance source photos into seedream identities
- POST /api/anchor/generate - Generate the 10-record anchor batch
- POST /api/anchor/variants - Generate the 5-record variant batch

Each request runs its batch to the end before answering. Records become
visible to other clients (list, progress, event stream) as they complete.
"""

from typing import Any

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from idforge.api.dependencies import get_generation_service
from idforge.services.generation.batches import GenerationService

logger = structlog.get_logger()
router = APIRouter(prefix="/api", tags=["generation"])


# Request Models


class SeedreamRequest(BaseModel):
    photos: list[str] | None = Field(
        default=None,
        description="Source photos (URLs, data URLs or base64), one identity per photo",
    )
    instagram_username: str | None = Field(
        default=None,
        description="Grouping key; omitted means the identities are uncategorized",
    )


class AnchorRequest(BaseModel):
    instagram_username: str | None = None
    referenceImageUrls: list[str] | None = Field(
        default=None,
        description="Completed seedream output URLs of the same username",
    )


class VariantsRequest(BaseModel):
    instagram_username: str | None = None
    primaryImageUrl: str | None = Field(
        default=None,
        description="Output URL of the selected primary anchor",
    )


# Endpoints


@router.post("/seedream")
async def generate_seedream(
    request: SeedreamRequest,
    service: GenerationService = Depends(get_generation_service),
) -> dict[str, Any]:
    """Create one seedream identity per photo and enhance each in turn.

    Returns:
        {success, generationId, identities, total, completed, failed}

    Raises:
        400: photos missing or empty
        409: Username already has a seedream identity or a batch in flight
    """
    logger.info(
        "api.seedream.requested",
        photos=len(request.photos or []),
        instagram_username=request.instagram_username,
    )
    result = await service.run_seedream(request.photos or [], request.instagram_username)
    return result.to_response(include_identities=True)


@router.post("/anchor/generate")
async def generate_anchor(
    request: AnchorRequest,
    service: GenerationService = Depends(get_generation_service),
) -> dict[str, Any]:
    """Generate the anchor batch from completed seedream reference images.

    Raises:
        400: Missing username or references, or references not owned by the username
        404: Username has no completed seedream output
        409: Anchor batch already in flight for the username
    """
    logger.info(
        "api.anchor.requested",
        instagram_username=request.instagram_username,
        references=len(request.referenceImageUrls or []),
    )
    result = await service.run_anchor(
        request.instagram_username, request.referenceImageUrls or []
    )
    return result.to_response()


@router.post("/anchor/variants")
async def generate_variants(
    request: VariantsRequest,
    service: GenerationService = Depends(get_generation_service),
) -> dict[str, Any]:
    """Generate the variant batch from the primary anchor image.

    Raises:
        400: Missing username or primary image URL
        409: Variant batch already in flight for the username
    """
    logger.info("api.variants.requested", instagram_username=request.instagram_username)
    result = await service.run_variants(request.instagram_username, request.primaryImageUrl)
    return result.to_response()
