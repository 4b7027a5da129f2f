"""FastAPI application for transcript-dispatch."""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from src.config import settings
from src.database import init_db, close_db
from src.handlers.renewal import run_renewal_loop
from src.routes.cancellation import router as cancellation_router
from src.routes.webhooks import router as webhooks_router
from src.workers.queue_worker import QueueWorker

logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("transcript-dispatch starting up")
    await init_db()

    stop = asyncio.Event()
    tasks: list[asyncio.Task] = []
    if settings.queue_worker_enabled:
        tasks.append(asyncio.create_task(QueueWorker().run(stop), name="queue-worker"))
    if settings.renewal_enabled:
        tasks.append(asyncio.create_task(run_renewal_loop(stop), name="subscription-renewal"))
    yield

    logger.info("transcript-dispatch shutting down")
    stop.set()
    await asyncio.gather(*tasks, return_exceptions=True)
    await close_db()


app = FastAPI(
    title="Transcript Dispatch",
    description="Queues meeting-transcript notifications and dispatches one processing job per transcript",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(webhooks_router, prefix=settings.api_prefix)
app.include_router(cancellation_router, prefix=settings.api_prefix)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "transcript-dispatch"}
