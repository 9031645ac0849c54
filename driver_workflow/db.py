"""
Async Postgres order repository: orders, order_items, order_proofs (one proof per kind),
order_status_events (transition log) and order_issues.
Each commit runs in a single transaction: lock order row, check ownership and current
status, re-validate transition and proof, store proof, update status, log the event.
"""
import asyncio
import logging
import uuid
from datetime import datetime
from decimal import Decimal

import asyncpg
from asyncpg.exceptions import (
    InsufficientPrivilegeError,
    InterfaceError,
    PostgresConnectionError,
    UniqueViolationError,
)
from pydantic import BaseModel, Field

from driver_workflow.config import settings
from driver_workflow.confirmation import DeliveryConfirmation, Proof, check_proof
from driver_workflow.errors import CommitResult, ErrorKind, InvalidTransitionError
from driver_workflow.order_state import (
    DriverOrderStatus,
    is_terminal,
    normalize_status,
    to_order_status,
    validate_transition,
)

logger = logging.getLogger(__name__)

_pool: asyncpg.Pool | None = None

# Column stamped when an order enters the status
STATUS_TIMESTAMP_COLUMNS: dict[DriverOrderStatus, str] = {
    DriverOrderStatus.ON_ROUTE_TO_VENDOR: "started_route_at",
    DriverOrderStatus.ARRIVED_AT_VENDOR: "arrived_at_vendor_at",
    DriverOrderStatus.PICKED_UP: "picked_up_at",
    DriverOrderStatus.ARRIVED_AT_CUSTOMER: "arrived_at_customer_at",
    DriverOrderStatus.DELIVERED: "delivered_at",
    DriverOrderStatus.CANCELLED: "cancelled_at",
}

NETWORK_ERRORS = (PostgresConnectionError, InterfaceError, OSError, asyncio.TimeoutError)


class OrderItem(BaseModel):
    name: str
    quantity: int = 1
    unit_price: Decimal = Decimal("0")


class Order(BaseModel):
    id: str
    status: DriverOrderStatus
    assigned_driver_id: str | None = None
    vendor_id: str | None = None
    customer_id: str | None = None
    total_amount: Decimal = Decimal("0")
    delivery_fee: Decimal = Decimal("0")
    items: list[OrderItem] = Field(default_factory=list)
    created_at: datetime | None = None
    estimated_delivery_at: datetime | None = None
    delivered_at: datetime | None = None


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=5,
            command_timeout=60,
        )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                order_id VARCHAR(255) PRIMARY KEY,
                status VARCHAR(50) NOT NULL DEFAULT 'assigned',
                order_status VARCHAR(50) NOT NULL DEFAULT 'confirmed',
                assigned_driver_id VARCHAR(255),
                vendor_id VARCHAR(255),
                customer_id VARCHAR(255),
                total_amount NUMERIC(12, 2) NOT NULL DEFAULT 0,
                delivery_fee NUMERIC(12, 2) NOT NULL DEFAULT 0,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                estimated_delivery_at TIMESTAMPTZ,
                started_route_at TIMESTAMPTZ,
                arrived_at_vendor_at TIMESTAMPTZ,
                picked_up_at TIMESTAMPTZ,
                arrived_at_customer_at TIMESTAMPTZ,
                delivered_at TIMESTAMPTZ,
                cancelled_at TIMESTAMPTZ,
                updated_at TIMESTAMPTZ DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS order_items (
                id UUID PRIMARY KEY,
                order_id VARCHAR(255) NOT NULL REFERENCES orders(order_id) ON DELETE CASCADE,
                name VARCHAR(255) NOT NULL,
                quantity INT NOT NULL DEFAULT 1,
                unit_price NUMERIC(12, 2) NOT NULL DEFAULT 0
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS order_proofs (
                id UUID PRIMARY KEY,
                order_id VARCHAR(255) NOT NULL REFERENCES orders(order_id) ON DELETE CASCADE,
                kind VARCHAR(20) NOT NULL,
                photo_url TEXT,
                latitude DOUBLE PRECISION,
                longitude DOUBLE PRECISION,
                location_accuracy DOUBLE PRECISION,
                recipient_name VARCHAR(255),
                notes TEXT,
                confirmed_by VARCHAR(255),
                confirmed_at TIMESTAMPTZ NOT NULL,
                UNIQUE(order_id, kind)
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS order_status_events (
                id UUID PRIMARY KEY,
                order_id VARCHAR(255) NOT NULL,
                from_status VARCHAR(50) NOT NULL,
                to_status VARCHAR(50) NOT NULL,
                driver_id VARCHAR(255),
                created_at TIMESTAMPTZ DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_order_status_events_order_id
            ON order_status_events(order_id);
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS order_issues (
                id UUID PRIMARY KEY,
                order_id VARCHAR(255) NOT NULL,
                driver_id VARCHAR(255),
                status VARCHAR(50) NOT NULL,
                description TEXT NOT NULL,
                created_at TIMESTAMPTZ DEFAULT NOW()
            );
        """)


def _proof_row(proof: Proof) -> tuple:
    kind = "delivery" if isinstance(proof, DeliveryConfirmation) else "pickup"
    location = proof.location
    return (
        uuid.uuid4(),
        proof.order_id,
        kind,
        proof.photo_url,
        location.latitude if location else None,
        location.longitude if location else None,
        location.accuracy if location else None,
        getattr(proof, "recipient_name", None),
        proof.notes,
        proof.confirmed_at,
    )


class PostgresOrderRepository:
    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def fetch_order(self, order_id: str) -> Order | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT order_id, status, assigned_driver_id, vendor_id, customer_id,
                       total_amount, delivery_fee, created_at, estimated_delivery_at, delivered_at
                FROM orders WHERE order_id = $1;
                """,
                order_id,
            )
            if row is None:
                return None
            items = await conn.fetch(
                "SELECT name, quantity, unit_price FROM order_items WHERE order_id = $1;",
                order_id,
            )
        return Order(
            id=row["order_id"],
            status=normalize_status(row["status"], row["assigned_driver_id"]),
            assigned_driver_id=row["assigned_driver_id"],
            vendor_id=row["vendor_id"],
            customer_id=row["customer_id"],
            total_amount=row["total_amount"],
            delivery_fee=row["delivery_fee"],
            items=[OrderItem(name=i["name"], quantity=i["quantity"], unit_price=i["unit_price"]) for i in items],
            created_at=row["created_at"],
            estimated_delivery_at=row["estimated_delivery_at"],
            delivered_at=row["delivered_at"],
        )

    async def commit_status(
        self,
        order_id: str,
        from_status: DriverOrderStatus,
        to_status: DriverOrderStatus,
        proof: Proof | None = None,
        driver_id: str | None = None,
    ) -> CommitResult:
        """
        Commit one transition. Network failures are retried with exponential backoff;
        every other failure is returned as-is so the caller can refresh or give up.
        InvalidTransitionError / MissingProofError propagate: they mean the caller skipped validation.
        """
        attempts = 0
        while True:
            try:
                return await self._commit_once(order_id, from_status, to_status, proof, driver_id)
            except NETWORK_ERRORS as e:
                attempts += 1
                if attempts > settings.commit_max_retries:
                    logger.error("Commit for order %s failed after %d attempts: %s", order_id, attempts, e)
                    return CommitResult.failure(ErrorKind.NETWORK_ERROR, "Network error. Please check your connection and try again.")
                backoff_sec = settings.commit_backoff_base_sec * 2 ** (attempts - 1)
                logger.warning(
                    "Commit for order %s hit a connection error (attempt %d/%d), retrying in %.1fs: %s",
                    order_id, attempts, settings.commit_max_retries, backoff_sec, e,
                )
                await asyncio.sleep(backoff_sec)
            except InsufficientPrivilegeError as e:
                logger.warning("Permission denied committing order %s: %s", order_id, e)
                return CommitResult.failure(ErrorKind.PERMISSION_DENIED, "You are not allowed to update this order")
            except asyncpg.PostgresError as e:
                logger.exception("Unexpected database error committing order %s", order_id)
                return CommitResult.failure(ErrorKind.UNKNOWN, str(e))

    async def _commit_once(
        self,
        order_id: str,
        from_status: DriverOrderStatus,
        to_status: DriverOrderStatus,
        proof: Proof | None,
        driver_id: str | None,
    ) -> CommitResult:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT status, assigned_driver_id FROM orders WHERE order_id = $1 FOR UPDATE;",
                    order_id,
                )
                if row is None:
                    return CommitResult.failure(ErrorKind.UNKNOWN, f"Order {order_id} not found")
                if driver_id is None or row["assigned_driver_id"] != driver_id:
                    return CommitResult.failure(
                        ErrorKind.PERMISSION_DENIED,
                        f"Order {order_id} is not assigned to driver {driver_id}",
                    )

                current = normalize_status(row["status"], row["assigned_driver_id"])
                if is_terminal(current):
                    return CommitResult.failure(
                        ErrorKind.ALREADY_COMPLETED,
                        f"Order {order_id} has already been {current.display_name.lower()}",
                        status=current.value,
                    )
                if current != from_status:
                    return CommitResult.failure(
                        ErrorKind.CONFLICT,
                        f"Order {order_id} is {current.display_name}, expected {from_status.display_name}",
                        status=current.value,
                    )

                result = validate_transition(current, to_status)
                if not result.is_valid:
                    raise InvalidTransitionError(current, to_status, result.error_message)
                check_proof(order_id, to_status, proof)

                if proof is not None:
                    try:
                        # Savepoint so the duplicate is reported without aborting the outer transaction
                        async with conn.transaction():
                            await conn.execute(
                                """
                                INSERT INTO order_proofs (id, order_id, kind, photo_url, latitude, longitude,
                                    location_accuracy, recipient_name, notes, confirmed_at, confirmed_by)
                                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11);
                                """,
                                *_proof_row(proof),
                                driver_id,
                            )
                    except UniqueViolationError:
                        return CommitResult.failure(
                            ErrorKind.ALREADY_COMPLETED,
                            f"Proof for order {order_id} has already been submitted",
                            status=current.value,
                        )

                timestamp_column = STATUS_TIMESTAMP_COLUMNS.get(to_status)
                stamp = f", {timestamp_column} = NOW()" if timestamp_column else ""
                await conn.execute(
                    f"""
                    UPDATE orders SET status = $1, order_status = $2, updated_at = NOW(){stamp}
                    WHERE order_id = $3;
                    """,
                    to_status.value,
                    to_order_status(to_status),
                    order_id,
                )
                await conn.execute(
                    """
                    INSERT INTO order_status_events (id, order_id, from_status, to_status, driver_id)
                    VALUES ($1, $2, $3, $4, $5);
                    """,
                    uuid.uuid4(),
                    order_id,
                    current.value,
                    to_status.value,
                    driver_id,
                )
        logger.info("Order %s: %s -> %s", order_id, from_status.value, to_status.value)
        return CommitResult.success(to_status.value)

    async def report_issue(self, order_id: str, driver_id: str | None, description: str) -> CommitResult:
        try:
            async with self._pool.acquire() as conn:
                row = await conn.fetchrow(
                    "SELECT status, assigned_driver_id FROM orders WHERE order_id = $1;", order_id
                )
                if row is None:
                    return CommitResult.failure(ErrorKind.UNKNOWN, f"Order {order_id} not found")
                if driver_id is None or row["assigned_driver_id"] != driver_id:
                    return CommitResult.failure(
                        ErrorKind.PERMISSION_DENIED,
                        f"Order {order_id} is not assigned to driver {driver_id}",
                    )
                await conn.execute(
                    """
                    INSERT INTO order_issues (id, order_id, driver_id, status, description)
                    VALUES ($1, $2, $3, $4, $5);
                    """,
                    uuid.uuid4(),
                    order_id,
                    driver_id,
                    row["status"],
                    description,
                )
        except NETWORK_ERRORS as e:
            logger.error("Could not report issue for order %s: %s", order_id, e)
            return CommitResult.failure(ErrorKind.NETWORK_ERROR, "Network error. Please try again.")
        logger.info("Issue reported for order %s by driver %s", order_id, driver_id)
        return CommitResult.success(row["status"])


