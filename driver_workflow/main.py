import asyncio
import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import Response

from driver_workflow.coordinator import OrderWorkflowCoordinator
from driver_workflow.db import PostgresOrderRepository, close_pool, get_pool, init_schema
from driver_workflow.metrics import get_metrics_bytes, get_metrics_content_type
from driver_workflow.realtime import run_feed
from driver_workflow.redis_client import close_redis, get_redis, publish_status
from driver_workflow.routes import orders, workflow

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    r = await get_redis()
    pool = await get_pool()
    await init_schema(pool)
    coordinator = OrderWorkflowCoordinator(PostgresOrderRepository(pool), publisher=publish_status)
    app.state.coordinator = coordinator

    shutdown_event = asyncio.Event()
    feed = asyncio.create_task(run_feed(coordinator, shutdown_event, r))
    try:
        yield
    finally:
        shutdown_event.set()
        try:
            await feed
        except Exception:
            logger.exception("Realtime feed exited with an error")
        finally:
            await close_pool()
            await close_redis()


app = FastAPI(title="Driver Order Workflow", lifespan=lifespan)
app.include_router(orders.router)
app.include_router(workflow.router)


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus scrape endpoint."""
    return Response(
        content=get_metrics_bytes(),
        media_type=get_metrics_content_type(),
    )
