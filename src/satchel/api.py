"""FastAPI application entry point."""

import logging

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text

from satchel.database import SessionLocal
from satchel.ratelimit import limiter
from satchel.routers import archives, downloads, jobs
from satchel.settings import settings
from satchel.worker import start_background_worker_thread, stop_background_worker_thread

app = FastAPI(
    title=settings.app_name,
    description="Gallery archive cache and streaming delivery",
    version="0.1.0"
)
logger = logging.getLogger(__name__)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.on_event("startup")
async def start_worker_mode():
    """Start the archive worker thread when the service runs in worker mode."""
    if not settings.worker_mode:
        return
    try:
        start_background_worker_thread()
    except Exception:
        # Keep API process alive even if worker startup fails.
        logger.exception("Failed to start worker mode thread")


@app.on_event("shutdown")
async def stop_worker_mode():
    if not settings.worker_mode:
        return
    try:
        stop_background_worker_thread()
    except Exception:
        logger.exception("Failed to stop worker mode thread")


_allowed_origins = [settings.app_url]
if settings.is_development:
    _allowed_origins += [
        "http://localhost:5173",
        "http://localhost:8080",
        "http://127.0.0.1:5173",
        "http://127.0.0.1:8080",
    ]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition", "X-Archive-Status"],
)

app.include_router(archives.router)
app.include_router(downloads.router)
app.include_router(jobs.router)


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

    uvicorn.run("satchel.api:app", host=settings.api_host, port=settings.api_port, reload=settings.debug)
