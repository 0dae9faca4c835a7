"""
FastAPI application factory.

* Registers routes for cells, ride requests and presence.
* Opens / closes the Redis-backed document store via lifespan events.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from ridecells.api.middleware import limiter
from ridecells.api.routes import cells, presence, requests
from ridecells.config import settings
from ridecells.infrastructure.redis_client import close_redis, get_redis
from ridecells.infrastructure.redis_store import RedisDocumentStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the document store on startup; close the client on shutdown."""
    client = await get_redis()
    app.state.store = RedisDocumentStore(client)
    logger.info("Document store ready at %s", settings.redis_url)
    yield
    await close_redis(client)


def create_app() -> FastAPI:
    app = FastAPI(
        title="Ride Cells API",
        description=(
            "Cell-sharded ride matching: riders publish requests into the "
            "geographic cell of their pickup, drivers heartbeat their presence "
            "and discover fresh open requests in their own and neighbouring cells."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Routers
    app.include_router(cells.router, prefix="/api/v1")
    app.include_router(requests.router, prefix="/api/v1")
    app.include_router(presence.router, prefix="/api/v1")

    return app
