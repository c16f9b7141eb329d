import logging
import math
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from adventure95.core.config import settings
from adventure95.core.exceptions import AdventureError, RateLimitedError
from adventure95.database import init_db
from adventure95.services.sse_service import redis_client, sse_generator
from adventure95.api.v1.endpoints import characters, game, models
from adventure95.scheduler import scheduler, setup_scheduler

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Handles application startup and shutdown events.
    """
    # Startup
    logging.basicConfig(level=settings.LOG_LEVEL.upper(), format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    await init_db()
    await redis_client.connect()
    setup_scheduler()
    scheduler.start()

    yield

    # Shutdown
    await redis_client.close()
    scheduler.shutdown()

app = FastAPI(title="Adventure95", lifespan=lifespan)

@app.exception_handler(AdventureError)
async def adventure_error_handler(request: Request, exc: AdventureError):
    """
    Renders every domain, precondition and provider error as {"detail": message}.
    """
    headers = None
    if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
        headers = {"Retry-After": str(math.ceil(exc.retry_after))}
    if exc.status_code >= 500:
        logging.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message}, headers=headers)

@app.get("/events/{game_id}")
async def sse_events(request: Request, game_id: int):
    """
    Endpoint for Server-Sent Events (SSE) to stream generation progress.
    """
    return StreamingResponse(sse_generator(game_id), media_type="text/event-stream")

# Include API routers
app.include_router(game.router, prefix="/api/v1", tags=["game"])
app.include_router(models.router, prefix="/api/v1", tags=["models"])
app.include_router(characters.router, prefix="/api/v1", tags=["characters"])
