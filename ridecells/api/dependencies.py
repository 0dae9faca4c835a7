"""FastAPI dependency injection helpers."""

from fastapi import Header, Request

from ridecells.infrastructure.documents import DocumentStore


async def get_store(request: Request) -> DocumentStore:
    """The document store opened by the application lifespan."""
    return request.app.state.store


async def get_current_uid(
    x_user_id: str = Header(..., alias="X-User-Id", min_length=1),
) -> str:
    """Acting user; authentication happens in front of this service."""
    return x_user_id
