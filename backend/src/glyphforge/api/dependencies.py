"""FastAPI dependencies for request context and shared services.

Shared objects (UoW factory, queue, cache) are created once in the app lifespan
and stored on app.state; these functions hand them to route handlers.
"""

from typing import Annotated
from uuid import UUID

from fastapi import Header, HTTPException, Request, status

from glyphforge.core.config import Settings
from glyphforge.queue.durable_queue import DurableQueue
from glyphforge.services.cache import ResultsCache
from glyphforge.uow import UnitOfWorkFactory


def get_settings(request: Request) -> Settings:
    """Get application settings instance.

    Returns the instance created by the lifespan, or loads one from the environment.
    """
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        settings = Settings()  # type: ignore[call-arg]  # Pydantic loads from env vars
    return settings


def get_uow_factory(request: Request) -> UnitOfWorkFactory:
    """Get UnitOfWork factory from app state.

    Example:
        >>> @router.get("/endpoint")
        >>> async def endpoint(uow_factory=Depends(get_uow_factory)):
        ...     async with await uow_factory() as uow:
        ...         await uow.generation_jobs.get_by_id(job_id)
    """
    return request.app.state.uow_factory


def get_queue(request: Request) -> DurableQueue:
    """Get the generation queue from app state."""
    return request.app.state.queue


def get_cache(request: Request) -> ResultsCache | None:
    """Get the public results cache from app state (None when not configured)."""
    return getattr(request.app.state, "cache", None)


def get_current_user_id(
    x_user_id: Annotated[str | None, Header()] = None,
) -> UUID:
    """Resolve the calling user from the X-User-Id header.

    Authentication happens upstream of this service; the gateway forwards the
    authenticated user id in this header.

    Raises:
        HTTPException 401: Header missing
        HTTPException 400: Header is not a UUID
    """
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header"
        )
    try:
        return UUID(x_user_id.strip())
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid X-User-Id")
