"""
Single owner of per-order workflow state. Driver actions and realtime pushes both
go through here; listeners subscribe to snapshot changes instead of re-deriving status.

- At most one commit per order is in flight; a second attempt raises CommitInProgressError.
- Actions publish an optimistic snapshot, then settle to the repository's answer.
- The last confirmed status is kept apart from the optimistic one. Pushes are checked
  against it: only forward or terminal moves are applied.
- Tracked orders are capped; the least recently touched idle snapshot is dropped first.
"""
import logging
from collections import OrderedDict
from typing import Awaitable, Callable, Protocol

from pydantic import BaseModel, ConfigDict

from driver_workflow.config import settings
from driver_workflow.confirmation import Proof, check_proof
from driver_workflow.db import Order
from driver_workflow.errors import (
    CommitInProgressError,
    CommitResult,
    ErrorKind,
    InvalidTransitionError,
    MissingProofError,
    OrderNotFoundError,
    UnknownStatusError,
)
from driver_workflow.metrics import (
    commit_failures_total,
    realtime_events_total,
    transitions_committed_total,
    transitions_rejected_total,
)
from driver_workflow.order_state import (
    PROGRESSION,
    DriverOrderAction,
    DriverOrderStatus,
    get_available_actions,
    is_terminal,
    map_action_to_target_status,
    normalize_status,
    validate_transition,
)

logger = logging.getLogger(__name__)


class OrderRepository(Protocol):
    async def fetch_order(self, order_id: str) -> Order | None: ...

    async def commit_status(
        self,
        order_id: str,
        from_status: DriverOrderStatus,
        to_status: DriverOrderStatus,
        proof: Proof | None = None,
        driver_id: str | None = None,
    ) -> CommitResult: ...

    async def report_issue(self, order_id: str, driver_id: str | None, description: str) -> CommitResult: ...


class OrderSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    order_id: str
    status: DriverOrderStatus
    optimistic: bool = False  # local guess not yet confirmed by the repository
    pending: bool = False  # commit in flight
    version: int = 0
    last_error: ErrorKind | None = None
    message: str | None = None


Listener = Callable[[OrderSnapshot], None]
Publisher = Callable[[str, DriverOrderStatus], Awaitable[None]]


def is_ahead(status: DriverOrderStatus, of: DriverOrderStatus) -> bool:
    """True when moving from `of` to `status` goes forward or ends the order."""
    if is_terminal(of) or status == of:
        return False
    return is_terminal(status) or PROGRESSION.index(status) > PROGRESSION.index(of)


class OrderWorkflowCoordinator:
    def __init__(
        self,
        repository: OrderRepository,
        publisher: Publisher | None = None,
        max_tracked_orders: int | None = None,
    ):
        self._repository = repository
        self._publisher = publisher
        self._max_tracked = max_tracked_orders or settings.max_tracked_orders
        self._snapshots: OrderedDict[str, OrderSnapshot] = OrderedDict()
        self._confirmed: dict[str, DriverOrderStatus] = {}
        self._in_flight: set[str] = set()
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register for snapshot changes. Returns a function that unsubscribes."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def snapshot(self, order_id: str) -> OrderSnapshot | None:
        return self._snapshots.get(order_id)

    def tracked_orders(self) -> list[str]:
        return list(self._snapshots)

    def is_pending(self, order_id: str) -> bool:
        return order_id in self._in_flight

    def _publish(self, order_id: str, confirmed: bool = True, **fields) -> OrderSnapshot:
        previous = self._snapshots.get(order_id)
        version = previous.version + 1 if previous else 1
        snapshot = OrderSnapshot(
            order_id=order_id,
            version=version,
            optimistic=not confirmed,
            pending=order_id in self._in_flight,
            **fields,
        )
        self._snapshots[order_id] = snapshot
        self._snapshots.move_to_end(order_id)
        if confirmed:
            self._confirmed[order_id] = snapshot.status
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Snapshot listener failed for order %s", order_id)
        self._evict()
        return snapshot

    def _evict(self) -> None:
        while len(self._snapshots) > self._max_tracked:
            victim = next((oid for oid in self._snapshots if oid not in self._in_flight), None)
            if victim is None:
                return
            del self._snapshots[victim]
            self._confirmed.pop(victim, None)
            logger.debug("Stopped tracking order %s", victim)

    def forget(self, order_id: str) -> None:
        if order_id in self._in_flight:
            return
        self._snapshots.pop(order_id, None)
        self._confirmed.pop(order_id, None)

    async def load(self, order_id: str, last_error: ErrorKind | None = None, message: str | None = None) -> OrderSnapshot:
        """Replace local state with the repository's authoritative status."""
        order = await self._repository.fetch_order(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return self._publish(order_id, status=order.status, last_error=last_error, message=message)

    async def resync(self) -> None:
        """Reload every tracked idle order, e.g. after pushes may have been missed."""
        for order_id in self.tracked_orders():
            if order_id in self._in_flight:
                continue
            try:
                await self.load(order_id)
            except OrderNotFoundError:
                logger.warning("Order %s disappeared from the repository, no longer tracked", order_id)
                self.forget(order_id)

    async def available_actions(self, order_id: str) -> list[DriverOrderAction]:
        snapshot = self._snapshots.get(order_id) or await self.load(order_id)
        return get_available_actions(snapshot.status)

    async def perform_action(
        self,
        order_id: str,
        action: DriverOrderAction,
        proof: Proof | None = None,
        driver_id: str | None = None,
        notes: str | None = None,
    ) -> CommitResult:
        snapshot = self._snapshots.get(order_id) or await self.load(order_id)
        if order_id in self._in_flight:
            transitions_rejected_total.labels(reason="in_flight").inc()
            raise CommitInProgressError(order_id)
        current = snapshot.status

        if action == DriverOrderAction.REPORT_ISSUE:
            if action not in get_available_actions(current):
                transitions_rejected_total.labels(reason="invalid_transition").inc()
                raise InvalidTransitionError(
                    current, current, f"{action.display_name} is not available while the order is {current.display_name}"
                )
            self._in_flight.add(order_id)
            try:
                result = await self._repository.report_issue(order_id, driver_id, notes or "")
            finally:
                self._in_flight.discard(order_id)
            if not result.ok:
                commit_failures_total.labels(error_kind=result.error_kind.value).inc()
                logger.info("Issue report for order %s failed: %s", order_id, result.error_kind.value)
            return result

        target = map_action_to_target_status(action)
        validation = validate_transition(current, target)
        if not validation.is_valid:
            transitions_rejected_total.labels(reason="invalid_transition").inc()
            raise InvalidTransitionError(current, target, validation.error_message)
        try:
            check_proof(order_id, target, proof)
        except MissingProofError:
            transitions_rejected_total.labels(reason="missing_proof").inc()
            raise

        self._in_flight.add(order_id)
        self._publish(order_id, confirmed=False, status=target)
        try:
            result = await self._repository.commit_status(order_id, current, target, proof=proof, driver_id=driver_id)
        except Exception:
            self._in_flight.discard(order_id)
            self._publish(order_id, status=self._confirmed.get(order_id, current), last_error=ErrorKind.UNKNOWN)
            raise
        self._in_flight.discard(order_id)

        # May have moved past `current` if a push landed while the commit was in flight
        confirmed = self._confirmed.get(order_id, current)
        if result.ok:
            transitions_committed_total.labels(to_status=target.value).inc()
            self._publish(order_id, status=confirmed if is_ahead(confirmed, target) else target)
            await self._announce(order_id, target)
            return result

        commit_failures_total.labels(error_kind=result.error_kind.value).inc()
        logger.info(
            "Commit %s -> %s for order %s failed: %s (%s)",
            current.value, target.value, order_id, result.error_kind.value, result.message,
        )
        if result.error_kind.requires_refresh:
            await self.load(order_id, last_error=result.error_kind, message=result.message)
        else:
            self._publish(order_id, status=confirmed, last_error=result.error_kind, message=result.message)
        return result

    async def _announce(self, order_id: str, status: DriverOrderStatus) -> None:
        if self._publisher is None:
            return
        try:
            await self._publisher(order_id, status)
        except Exception:
            # The commit already succeeded; subscribers will catch up on their next load.
            logger.exception("Failed to publish status %s for order %s", status.value, order_id)

    def apply_remote_status(self, order_id: str, raw_status: str, assigned_driver_id: str | None = None) -> bool:
        """
        Reconcile a pushed status with the last confirmed status. Returns True when the
        push was applied. An optimistic snapshot is replaced only by a forward or terminal move.
        """
        try:
            status = normalize_status(raw_status, assigned_driver_id)
        except UnknownStatusError as e:
            logger.warning("Ignoring realtime push for order %s: %s", order_id, e)
            realtime_events_total.labels(outcome="invalid").inc()
            return False

        confirmed = self._confirmed.get(order_id)
        if confirmed is not None:
            if status == confirmed:
                realtime_events_total.labels(outcome="ignored").inc()
                return False
            if not is_ahead(status, confirmed):
                logger.warning(
                    "Rejected realtime push for order %s: %s -> %s is not a forward move",
                    order_id, confirmed.value, status.value,
                )
                realtime_events_total.labels(outcome="rejected").inc()
                return False
            logger.info("Order %s updated by realtime push: %s -> %s", order_id, confirmed.value, status.value)

        self._publish(order_id, status=status)
        realtime_events_total.labels(outcome="accepted").inc()
        return True
