"""
PodBrief - FastAPI Backend
Audio upload, transcription, summaries and prepaid credits.
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    account,
    uploads,
    transcriptions,
    billing,
    cron,
    chapters,
)
from services.background import drain_background_tasks
from services.job_queue import sweep_stuck_jobs


async def _periodic_sweep() -> None:
    interval_seconds = max(int(settings.SWEEP_INTERVAL_SECONDS), 0)
    if interval_seconds <= 0:
        return
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            result = await sweep_stuck_jobs()
            if result.get("found"):
                print(
                    f"♻️ Sweep tick: found={result.get('found', 0)} "
                    f"resubmitted={result.get('resubmitted', 0)}"
                )
        except Exception as exc:
            print(f"⚠️ Sweep tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting PodBrief API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    if not settings.OPENAI_API_KEY:
        print("⚠️ OPENAI_API_KEY is not set; transcription jobs will fail with invalid_credentials.")

    sweep_task = None
    if settings.ENABLE_SWEEP_LOOP and int(settings.SWEEP_INTERVAL_SECONDS) > 0:
        sweep_task = asyncio.create_task(_periodic_sweep())
        print(f"📅 Stuck-job sweep loop enabled (every {int(settings.SWEEP_INTERVAL_SECONDS)}s).")
    yield
    # Shutdown
    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
    await drain_background_tasks(timeout=30)
    print("👋 Shutting down API...")


app = FastAPI(
    title="PodBrief API",
    description="Upload audio, get transcripts and summaries, pay per minute with credits",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(account.router, prefix="/account", tags=["Account"])
app.include_router(uploads.router, prefix="/uploads", tags=["Uploads"])
app.include_router(transcriptions.jobs_router, prefix="/audio-files", tags=["Jobs"])
app.include_router(transcriptions.router, prefix="/transcriptions", tags=["Transcriptions"])
app.include_router(transcriptions.public_router, prefix="/share", tags=["Sharing"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(cron.router, prefix="/cron", tags=["Cron"])
app.include_router(chapters.router, prefix="/chapters", tags=["Chapters"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "PodBrief API",
        "version": "0.1.0",
        "status": "running"
    }
