"""FastAPI dependencies for shared, lifespan-owned services.

Every collaborator is created once in the application lifespan and stored on
``app.state``; these functions hand them to route handlers.
"""

from typing import Callable

from fastapi import Request

from idforge.services.events import IdentityEventBus
from idforge.services.generation.batches import GenerationService
from idforge.services.image_source import ImageSource
from idforge.services.intake.pipeline import IntakePipeline
from idforge.services.storage.r2_client import R2Client
from idforge.uow import UnitOfWork


def get_uow_factory(request: Request) -> Callable[[], UnitOfWork]:
    """Get UnitOfWork factory from app state.

    Example:
        >>> @router.get("/endpoint")
        >>> async def endpoint(uow_factory=Depends(get_uow_factory)):
        ...     async with await uow_factory() as uow:
        ...         await uow.identities.list_visible()
    """
    return request.app.state.uow_factory


def get_generation_service(request: Request) -> GenerationService:
    return request.app.state.generation_service


def get_intake_pipeline(request: Request) -> IntakePipeline:
    return request.app.state.intake_pipeline


def get_event_bus(request: Request) -> IdentityEventBus:
    return request.app.state.event_bus


def get_storage(request: Request) -> R2Client:
    return request.app.state.storage


def get_image_source(request: Request) -> ImageSource:
    return request.app.state.image_source
