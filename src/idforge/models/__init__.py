"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from idforge.models.api_usage_log import ApiUsageLog
from idforge.models.generation_batch import GenerationBatch
from idforge.models.identity import (
    GenerationState,
    Identity,
    IdentitySource,
    IdentityStatus,
    InvalidStateTransition,
)
from idforge.models.media_item import MediaItem, MediaSource, MediaType

__all__ = [
    "Identity",
    "IdentityStatus",
    "IdentitySource",
    "GenerationState",
    "InvalidStateTransition",
    "GenerationBatch",
    "MediaItem",
    "MediaType",
    "MediaSource",
    "ApiUsageLog",
]
