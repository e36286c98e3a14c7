"""Repository layer for idforge backend.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from idforge.repositories.api_usage_log import ApiUsageLogRepository
from idforge.repositories.generation_batch import GenerationBatchRepository
from idforge.repositories.identity import IdentityRepository
from idforge.repositories.media_item import MediaItemRepository

__all__ = [
    "IdentityRepository",
    "GenerationBatchRepository",
    "MediaItemRepository",
    "ApiUsageLogRepository",
]
