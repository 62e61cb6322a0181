import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from datasync.api.routes import copy_configs, copy_jobs
from datasync.config import settings
from datasync.core.logging import setup_logging
from datasync.db.session import init_db
from datasync.dependencies import get_orchestrator, get_scheduler

logger = logging.getLogger(__name__)

# Seconds to wait for running copy pages to finish on shutdown
SHUTDOWN_GRACE_SECONDS = 30


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(level=settings.LOG_LEVEL, log_file=settings.LOG_FILE)
    init_db()

    orchestrator = get_orchestrator()
    recovered = orchestrator.recover_interrupted_jobs()
    if recovered:
        logger.warning("Marked %d interrupted copy jobs as failed (resumable): %s", len(recovered), recovered)

    scheduler = get_scheduler() if settings.SCHEDULER_ENABLED else None
    if scheduler:
        scheduler.start()

    yield

    if scheduler:
        scheduler.shutdown()
    await orchestrator.shutdown(timeout=SHUTDOWN_GRACE_SECONDS)
    logger.info("%s stopped", settings.APP_NAME)


app = FastAPI(title=settings.APP_NAME, debug=settings.DEBUG, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(copy_configs.router)
app.include_router(copy_jobs.router)


@app.get("/api/health")
def health() -> dict:
    return {"status": "ok"}
