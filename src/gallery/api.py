"""FastAPI application entry point."""

import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text

from gallery.database import SessionLocal
from gallery.errors import (
    DimensionMismatchError,
    EmptyQueryError,
    GalleryError,
    InvalidEmbeddingError,
    NotFoundError,
    RateLimitExceededError,
    UploadRejectedError,
)
from gallery.ratelimit import limiter
from gallery.routers import images, search
from gallery.settings import settings


app = FastAPI(
    title=settings.app_name,
    description="Image gallery with embedding-based similarity search",
    version="0.1.0",
)
logger = logging.getLogger(__name__)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

_worker_pool = None


@app.exception_handler(GalleryError)
async def gallery_error_handler(request: Request, exc: GalleryError):
    """Translate domain errors into HTTP responses."""
    if isinstance(exc, RateLimitExceededError):
        return JSONResponse(
            status_code=429,
            content={"detail": "Too many search requests. Please try again later.", "retry_after": exc.retry_after},
            headers={"Retry-After": str(exc.retry_after)},
        )
    if isinstance(exc, NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})
    if isinstance(exc, (EmptyQueryError, UploadRejectedError, DimensionMismatchError, InvalidEmbeddingError)):
        return JSONResponse(status_code=422, content={"detail": str(exc)})
    logger.error("Unhandled gallery error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Internal error"})


@app.on_event("startup")
async def start_worker_mode():
    """Start background queue workers when the service runs in worker mode."""
    global _worker_pool
    if not settings.worker_mode:
        return
    try:
        from gallery.dependencies import get_task_handlers
        from gallery.worker import start_worker_pool

        _worker_pool = start_worker_pool(
            settings.worker_threads,
            handlers=get_task_handlers(),
            session_factory=SessionLocal,
        )
    except Exception:
        # Keep API process alive even if worker startup fails.
        logger.exception("Failed to start worker threads")


@app.on_event("shutdown")
async def stop_worker_mode():
    """Stop background queue workers when the service shuts down."""
    global _worker_pool
    if _worker_pool is None:
        return
    _worker_pool.stop()
    _worker_pool = None


app.include_router(images.router)
app.include_router(search.router)


@app.get("/health")
async def health_check():
    """Health check endpoint with DB connectivity verification."""
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        return {"status": "healthy"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"Database unavailable: {exc}")
    finally:
        db.close()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "gallery.api:app",
        host=settings.api_host,
        port=settings.api_port,
        workers=settings.api_workers,
        reload=settings.debug
    )
