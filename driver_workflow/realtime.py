"""
Realtime feed: subscribe to order status pushes on Redis pub/sub and reconcile them
against the coordinator's local state.
- Messages: {"order_id": str, "status": str, "assigned_driver_id": str | null}
- Prometheus /metrics on settings.feed_metrics_port when run standalone.
- Graceful shutdown on SIGTERM.
Run: python -m driver_workflow.realtime
"""
import asyncio
import json
import logging
import signal
import sys
import threading

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from driver_workflow.config import settings
from driver_workflow.coordinator import OrderWorkflowCoordinator
from driver_workflow.metrics import realtime_events_total, realtime_reconnects_total

logger = logging.getLogger(__name__)

POLL_TIMEOUT = 1.0
REDIS_ERRORS = (RedisConnectionError, RedisTimeoutError)


def parse_event(raw: str | bytes) -> tuple[str, str, str | None] | None:
    """Return (order_id, status, assigned_driver_id), or None for malformed messages."""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning("Invalid JSON on realtime channel: %s", e)
        realtime_events_total.labels(outcome="invalid").inc()
        return None
    if not isinstance(data, dict):
        logger.warning("Realtime message is not an object, skipping")
        realtime_events_total.labels(outcome="invalid").inc()
        return None
    order_id = data.get("order_id")
    status = data.get("status")
    if not order_id or not status:
        logger.warning("Realtime message missing order_id or status, skipping")
        realtime_events_total.labels(outcome="invalid").inc()
        return None
    return str(order_id), str(status), data.get("assigned_driver_id")


def handle_message(coordinator: OrderWorkflowCoordinator, raw: str | bytes) -> bool:
    event = parse_event(raw)
    if event is None:
        return False
    order_id, status, driver_id = event
    return coordinator.apply_remote_status(order_id, status, assigned_driver_id=driver_id)


async def _wait_or_shutdown(shutdown_event: asyncio.Event, delay: float) -> None:
    try:
        await asyncio.wait_for(shutdown_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        pass


async def _resync(coordinator: OrderWorkflowCoordinator) -> None:
    try:
        await coordinator.resync()
    except Exception:
        logger.exception("Resync after reconnect failed, cached snapshots may be stale")


async def _close_pubsub(pubsub) -> None:
    try:
        await pubsub.unsubscribe(settings.realtime_channel)
    except REDIS_ERRORS as e:
        logger.warning("Could not unsubscribe from %s: %s", settings.realtime_channel, e)
    await pubsub.aclose()


async def run_feed(
    coordinator: OrderWorkflowCoordinator,
    shutdown_event: asyncio.Event,
    r: redis.Redis | None = None,
) -> None:
    """
    Apply pushes until shutdown. A lost connection is retried with capped exponential
    backoff; after resubscribing, tracked orders are reloaded since pushes may have been missed.
    """
    own_client = r is None
    if own_client:
        r = redis.from_url(settings.redis_url, decode_responses=True)
    attempts = 0
    try:
        while not shutdown_event.is_set():
            pubsub = r.pubsub()
            try:
                await pubsub.subscribe(settings.realtime_channel)
                logger.info("Listening for status pushes on %s ...", settings.realtime_channel)
                if attempts:
                    await _resync(coordinator)
                    attempts = 0
                while not shutdown_event.is_set():
                    message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=POLL_TIMEOUT)
                    if message is None or message.get("type") != "message":
                        continue
                    handle_message(coordinator, message["data"])
            except REDIS_ERRORS as e:
                attempts += 1
                realtime_reconnects_total.inc()
                backoff_sec = min(
                    settings.feed_reconnect_backoff_base_sec * 2 ** (attempts - 1),
                    settings.feed_reconnect_backoff_max_sec,
                )
                logger.warning(
                    "Realtime feed lost its connection (attempt %d), resubscribing in %.1fs: %s",
                    attempts, backoff_sec, e,
                )
                await _wait_or_shutdown(shutdown_event, backoff_sec)
            finally:
                await _close_pubsub(pubsub)
    finally:
        if own_client:
            await r.aclose()
        logger.info("Realtime feed stopped.")


def _start_metrics_server() -> None:
    from prometheus_client import start_http_server
    start_http_server(settings.feed_metrics_port)


async def _run_standalone(shutdown_event: asyncio.Event) -> None:
    from driver_workflow.db import PostgresOrderRepository, close_pool, get_pool

    pool = await get_pool()
    coordinator = OrderWorkflowCoordinator(PostgresOrderRepository(pool))
    coordinator.subscribe(
        lambda snapshot: logger.info("Order %s is now %s", snapshot.order_id, snapshot.status.value)
    )
    try:
        await run_feed(coordinator, shutdown_event)
    finally:
        await close_pool()


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, shutdown_event: asyncio.Event) -> None:
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, shutdown_event.set)
        except NotImplementedError:
            # Windows event loops
            signal.signal(sig, lambda *_: shutdown_event.set())


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        stream=sys.stdout,
    )
    threading.Thread(target=_start_metrics_server, daemon=True).start()
    logger.info("Metrics server listening on port %s", settings.feed_metrics_port)

    shutdown_event = asyncio.Event()
    loop = asyncio.new_event_loop()
    _install_signal_handlers(loop, shutdown_event)
    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(_run_standalone(shutdown_event))
    finally:
        loop.close()


if __name__ == "__main__":
    main()
