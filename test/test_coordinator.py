import asyncio

import pytest

from driver_workflow.coordinator import OrderWorkflowCoordinator
from driver_workflow.errors import (
    CommitInProgressError,
    ErrorKind,
    InvalidTransitionError,
    MissingProofError,
    OrderNotFoundError,
)
from driver_workflow.order_state import DriverOrderAction, DriverOrderStatus

from _helper import DRIVER_ID, InMemoryOrderRepository, delivery_proof, pickup_proof


@pytest.fixture
def repo():
    return InMemoryOrderRepository()


@pytest.fixture
def coordinator(repo):
    return OrderWorkflowCoordinator(repo)


async def test_full_delivery_flow(repo):
    repo.add("ord-1")
    published = []

    async def publisher(order_id, status):
        published.append((order_id, status))

    coordinator = OrderWorkflowCoordinator(repo, publisher=publisher)
    steps = [
        (DriverOrderAction.NAVIGATE_TO_VENDOR, None),
        (DriverOrderAction.ARRIVED_AT_VENDOR, None),
        (DriverOrderAction.CONFIRM_PICKUP, pickup_proof("ord-1")),
        (DriverOrderAction.NAVIGATE_TO_CUSTOMER, None),
        (DriverOrderAction.ARRIVED_AT_CUSTOMER, None),
        (DriverOrderAction.CONFIRM_DELIVERY_WITH_PHOTO, delivery_proof("ord-1")),
    ]
    for action, proof in steps:
        result = await coordinator.perform_action("ord-1", action, proof=proof, driver_id=DRIVER_ID)
        assert result.ok, result.message

    snapshot = coordinator.snapshot("ord-1")
    assert snapshot.status == DriverOrderStatus.DELIVERED
    assert not snapshot.optimistic
    assert not snapshot.pending
    assert repo.orders["ord-1"].status == DriverOrderStatus.DELIVERED
    assert published[-1] == ("ord-1", DriverOrderStatus.DELIVERED)
    assert await coordinator.available_actions("ord-1") == []


async def test_invalid_transition_does_not_touch_state(repo, coordinator):
    repo.add("ord-1")
    before = await coordinator.load("ord-1")
    with pytest.raises(InvalidTransitionError, match="cannot skip"):
        await coordinator.perform_action("ord-1", DriverOrderAction.CONFIRM_DELIVERY_WITH_PHOTO, proof=delivery_proof("ord-1"))
    assert coordinator.snapshot("ord-1") == before
    assert repo.commits == []


async def test_missing_proof_blocks_commit(repo, coordinator):
    repo.add("ord-1", DriverOrderStatus.ARRIVED_AT_CUSTOMER)
    with pytest.raises(MissingProofError):
        await coordinator.perform_action(
            "ord-1", DriverOrderAction.CONFIRM_DELIVERY_WITH_PHOTO, proof=delivery_proof("ord-1", photo_url="")
        )
    with pytest.raises(MissingProofError):
        await coordinator.perform_action("ord-1", DriverOrderAction.CONFIRM_DELIVERY_WITH_PHOTO)
    assert repo.commits == []
    assert coordinator.snapshot("ord-1").status == DriverOrderStatus.ARRIVED_AT_CUSTOMER


async def test_unknown_order_raises(coordinator):
    with pytest.raises(OrderNotFoundError):
        await coordinator.perform_action("missing", DriverOrderAction.CANCEL)


async def test_second_action_while_commit_in_flight_is_rejected(repo, coordinator):
    repo.add("ord-1")
    repo.gate = asyncio.Event()
    await coordinator.load("ord-1")

    first = asyncio.create_task(coordinator.perform_action("ord-1", DriverOrderAction.NAVIGATE_TO_VENDOR, driver_id=DRIVER_ID))
    await asyncio.sleep(0)
    snapshot = coordinator.snapshot("ord-1")
    assert snapshot.optimistic and snapshot.pending
    assert snapshot.status == DriverOrderStatus.ON_ROUTE_TO_VENDOR

    with pytest.raises(CommitInProgressError):
        await coordinator.perform_action("ord-1", DriverOrderAction.CANCEL)

    repo.gate.set()
    result = await first
    assert result.ok
    assert repo.commits == [("ord-1", DriverOrderStatus.ASSIGNED, DriverOrderStatus.ON_ROUTE_TO_VENDOR)]
    assert not coordinator.is_pending("ord-1")


async def test_duplicate_delivery_returns_already_completed_and_refreshes(repo, coordinator):
    repo.add("ord-1", DriverOrderStatus.ARRIVED_AT_CUSTOMER)
    await coordinator.load("ord-1")
    # Delivered by another device; local state is stale
    repo.set_status("ord-1", DriverOrderStatus.DELIVERED)

    result = await coordinator.perform_action(
        "ord-1", DriverOrderAction.CONFIRM_DELIVERY_WITH_PHOTO, proof=delivery_proof("ord-1"), driver_id=DRIVER_ID
    )

    assert not result.ok
    assert result.error_kind == ErrorKind.ALREADY_COMPLETED
    snapshot = coordinator.snapshot("ord-1")
    assert snapshot.status == DriverOrderStatus.DELIVERED
    assert snapshot.last_error == ErrorKind.ALREADY_COMPLETED
    assert not snapshot.optimistic


async def test_conflict_refreshes_from_repository(repo, coordinator):
    repo.add("ord-1", DriverOrderStatus.ON_ROUTE_TO_VENDOR)
    await coordinator.load("ord-1")
    repo.set_status("ord-1", DriverOrderStatus.ARRIVED_AT_VENDOR)

    result = await coordinator.perform_action("ord-1", DriverOrderAction.ARRIVED_AT_VENDOR, driver_id=DRIVER_ID)

    assert result.error_kind == ErrorKind.CONFLICT
    assert coordinator.snapshot("ord-1").status == DriverOrderStatus.ARRIVED_AT_VENDOR


@pytest.mark.parametrize("kind", [ErrorKind.NETWORK_ERROR, ErrorKind.PERMISSION_DENIED, ErrorKind.UNKNOWN])
async def test_other_failures_roll_back_optimistic_state(repo, coordinator, kind):
    repo.add("ord-1")
    repo.fail_with = kind
    result = await coordinator.perform_action("ord-1", DriverOrderAction.NAVIGATE_TO_VENDOR, driver_id=DRIVER_ID)

    assert result.error_kind == kind
    snapshot = coordinator.snapshot("ord-1")
    assert snapshot.status == DriverOrderStatus.ASSIGNED
    assert snapshot.last_error == kind
    assert not snapshot.optimistic
    assert kind.retryable is (kind == ErrorKind.NETWORK_ERROR)


async def test_permission_denied_for_other_driver(repo, coordinator):
    repo.add("ord-1")
    result = await coordinator.perform_action("ord-1", DriverOrderAction.NAVIGATE_TO_VENDOR, driver_id="drv-2")
    assert result.error_kind == ErrorKind.PERMISSION_DENIED
    assert repo.orders["ord-1"].status == DriverOrderStatus.ASSIGNED


async def test_action_without_driver_is_permission_denied(repo, coordinator):
    repo.add("ord-1")
    result = await coordinator.perform_action("ord-1", DriverOrderAction.CANCEL)
    assert result.error_kind == ErrorKind.PERMISSION_DENIED
    assert repo.orders["ord-1"].status == DriverOrderStatus.ASSIGNED
    assert coordinator.snapshot("ord-1").status == DriverOrderStatus.ASSIGNED


async def test_report_issue_by_other_driver_is_permission_denied(repo, coordinator):
    repo.add("ord-1", DriverOrderStatus.ARRIVED_AT_VENDOR)
    result = await coordinator.perform_action("ord-1", DriverOrderAction.REPORT_ISSUE, driver_id="drv-2", notes="closed")
    assert result.error_kind == ErrorKind.PERMISSION_DENIED
    assert repo.issues == []
    result = await coordinator.perform_action("ord-1", DriverOrderAction.REPORT_ISSUE, notes="closed")
    assert result.error_kind == ErrorKind.PERMISSION_DENIED


async def test_report_issue_keeps_status(repo, coordinator):
    repo.add("ord-1", DriverOrderStatus.ARRIVED_AT_VENDOR)
    result = await coordinator.perform_action(
        "ord-1", DriverOrderAction.REPORT_ISSUE, driver_id=DRIVER_ID, notes="Restaurant closed"
    )
    assert result.ok
    assert repo.issues == [("ord-1", DRIVER_ID, "Restaurant closed")]
    assert coordinator.snapshot("ord-1").status == DriverOrderStatus.ARRIVED_AT_VENDOR


async def test_report_issue_unavailable_while_driving(repo, coordinator):
    repo.add("ord-1", DriverOrderStatus.ON_ROUTE_TO_CUSTOMER)
    with pytest.raises(InvalidTransitionError):
        await coordinator.perform_action("ord-1", DriverOrderAction.REPORT_ISSUE, notes="flat tyre")
    assert repo.issues == []


async def test_listeners_receive_snapshots_and_can_unsubscribe(repo, coordinator):
    repo.add("ord-1")
    seen = []
    unsubscribe = coordinator.subscribe(lambda s: seen.append((s.status, s.optimistic)))

    await coordinator.perform_action("ord-1", DriverOrderAction.NAVIGATE_TO_VENDOR, driver_id=DRIVER_ID)
    assert seen == [
        (DriverOrderStatus.ASSIGNED, False),
        (DriverOrderStatus.ON_ROUTE_TO_VENDOR, True),
        (DriverOrderStatus.ON_ROUTE_TO_VENDOR, False),
    ]

    unsubscribe()
    await coordinator.perform_action("ord-1", DriverOrderAction.ARRIVED_AT_VENDOR, driver_id=DRIVER_ID)
    assert len(seen) == 3


async def test_failing_listener_does_not_block_others(repo, coordinator):
    repo.add("ord-1")
    seen = []

    def broken(snapshot):
        raise RuntimeError("boom")

    coordinator.subscribe(broken)
    coordinator.subscribe(seen.append)
    await coordinator.load("ord-1")
    assert len(seen) == 1


async def test_publisher_failure_does_not_fail_commit(repo):
    repo.add("ord-1")

    async def publisher(order_id, status):
        raise ConnectionError("redis down")

    coordinator = OrderWorkflowCoordinator(repo, publisher=publisher)
    result = await coordinator.perform_action("ord-1", DriverOrderAction.NAVIGATE_TO_VENDOR, driver_id=DRIVER_ID)
    assert result.ok
    assert coordinator.snapshot("ord-1").status == DriverOrderStatus.ON_ROUTE_TO_VENDOR


class TestRemoteStatus:
    async def test_forward_push_is_applied(self, repo, coordinator):
        repo.add("ord-1")
        await coordinator.load("ord-1")
        assert coordinator.apply_remote_status("ord-1", "arrived_at_vendor")
        assert coordinator.snapshot("ord-1").status == DriverOrderStatus.ARRIVED_AT_VENDOR

    async def test_backend_failure_is_applied_from_any_active_status(self, repo, coordinator):
        repo.add("ord-1", DriverOrderStatus.ON_ROUTE_TO_CUSTOMER)
        await coordinator.load("ord-1")
        assert coordinator.apply_remote_status("ord-1", "failed")
        assert coordinator.snapshot("ord-1").status == DriverOrderStatus.FAILED

    async def test_backwards_push_on_authoritative_state_is_rejected(self, repo, coordinator):
        repo.add("ord-1", DriverOrderStatus.PICKED_UP)
        await coordinator.load("ord-1")
        assert not coordinator.apply_remote_status("ord-1", "arrived_at_vendor")
        assert coordinator.snapshot("ord-1").status == DriverOrderStatus.PICKED_UP

    async def test_terminal_state_is_never_left(self, repo, coordinator):
        repo.add("ord-1", DriverOrderStatus.DELIVERED)
        await coordinator.load("ord-1")
        assert not coordinator.apply_remote_status("ord-1", "cancelled")
        assert coordinator.snapshot("ord-1").status == DriverOrderStatus.DELIVERED

    async def test_same_status_is_ignored(self, repo, coordinator):
        repo.add("ord-1")
        before = await coordinator.load("ord-1")
        assert not coordinator.apply_remote_status("ord-1", "assigned")
        assert coordinator.snapshot("ord-1") == before

    def test_unknown_order_is_accepted_and_legacy_status_normalized(self, coordinator):
        assert coordinator.apply_remote_status("ord-9", "out_for_delivery")
        assert coordinator.snapshot("ord-9").status == DriverOrderStatus.PICKED_UP

    def test_unknown_status_on_unassigned_order_is_dropped(self, coordinator):
        assert not coordinator.apply_remote_status("ord-9", "teleported")
        assert coordinator.snapshot("ord-9") is None

    async def test_authoritative_push_wins_over_optimistic_state(self, repo, coordinator):
        repo.add("ord-1")
        repo.gate = asyncio.Event()
        await coordinator.load("ord-1")

        task = asyncio.create_task(coordinator.perform_action("ord-1", DriverOrderAction.NAVIGATE_TO_VENDOR, driver_id=DRIVER_ID))
        await asyncio.sleep(0)
        assert coordinator.snapshot("ord-1").optimistic

        # Backend cancelled the order while the driver's commit was in flight
        repo.set_status("ord-1", DriverOrderStatus.CANCELLED)
        assert coordinator.apply_remote_status("ord-1", "cancelled")

        repo.gate.set()
        result = await task
        assert result.error_kind == ErrorKind.ALREADY_COMPLETED
        snapshot = coordinator.snapshot("ord-1")
        assert snapshot.status == DriverOrderStatus.CANCELLED
        assert not snapshot.optimistic

    async def test_stale_push_during_commit_is_rejected(self, repo, coordinator):
        repo.add("ord-1", DriverOrderStatus.PICKED_UP)
        repo.gate = asyncio.Event()
        await coordinator.load("ord-1")

        task = asyncio.create_task(
            coordinator.perform_action("ord-1", DriverOrderAction.NAVIGATE_TO_CUSTOMER, driver_id=DRIVER_ID)
        )
        await asyncio.sleep(0)
        assert not coordinator.apply_remote_status("ord-1", "assigned")
        assert not coordinator.apply_remote_status("ord-1", "picked_up")
        assert coordinator.snapshot("ord-1").optimistic

        repo.gate.set()
        result = await task
        assert result.ok
        snapshot = coordinator.snapshot("ord-1")
        assert snapshot.status == DriverOrderStatus.ON_ROUTE_TO_CUSTOMER
        assert snapshot.status == repo.orders["ord-1"].status
        assert not snapshot.optimistic and not snapshot.pending

    async def test_push_ahead_of_commit_target_is_kept(self, repo, coordinator):
        repo.add("ord-1", DriverOrderStatus.PICKED_UP)
        repo.gate = asyncio.Event()
        await coordinator.load("ord-1")

        task = asyncio.create_task(
            coordinator.perform_action("ord-1", DriverOrderAction.NAVIGATE_TO_CUSTOMER, driver_id=DRIVER_ID)
        )
        await asyncio.sleep(0)
        assert coordinator.apply_remote_status("ord-1", "arrived_at_customer")

        repo.gate.set()
        assert (await task).ok
        snapshot = coordinator.snapshot("ord-1")
        assert snapshot.status == DriverOrderStatus.ARRIVED_AT_CUSTOMER
        assert not snapshot.pending


class TestTracking:
    def test_least_recently_touched_order_is_dropped(self, repo):
        coordinator = OrderWorkflowCoordinator(repo, max_tracked_orders=2)
        for order_id in ("ord-1", "ord-2", "ord-3"):
            assert coordinator.apply_remote_status(order_id, "assigned", assigned_driver_id=DRIVER_ID)
        assert coordinator.tracked_orders() == ["ord-2", "ord-3"]
        assert coordinator.snapshot("ord-1") is None

        assert coordinator.apply_remote_status("ord-2", "on_route_to_vendor")
        assert coordinator.apply_remote_status("ord-4", "assigned", assigned_driver_id=DRIVER_ID)
        assert coordinator.tracked_orders() == ["ord-2", "ord-4"]

    async def test_order_with_commit_in_flight_is_never_dropped(self, repo):
        repo.add("ord-1")
        repo.gate = asyncio.Event()
        coordinator = OrderWorkflowCoordinator(repo, max_tracked_orders=1)
        await coordinator.load("ord-1")

        task = asyncio.create_task(
            coordinator.perform_action("ord-1", DriverOrderAction.NAVIGATE_TO_VENDOR, driver_id=DRIVER_ID)
        )
        await asyncio.sleep(0)
        coordinator.apply_remote_status("ord-2", "picked_up")
        assert coordinator.tracked_orders() == ["ord-1"]

        repo.gate.set()
        assert (await task).ok
        assert coordinator.snapshot("ord-1").status == DriverOrderStatus.ON_ROUTE_TO_VENDOR

    async def test_resync_reloads_tracked_orders(self, repo, coordinator):
        repo.add("ord-1")
        repo.add("ord-2")
        await coordinator.load("ord-1")
        await coordinator.load("ord-2")
        repo.set_status("ord-1", DriverOrderStatus.ARRIVED_AT_VENDOR)
        del repo.orders["ord-2"]

        await coordinator.resync()

        assert coordinator.snapshot("ord-1").status == DriverOrderStatus.ARRIVED_AT_VENDOR
        assert coordinator.tracked_orders() == ["ord-1"]
