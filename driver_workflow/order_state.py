"""
Driver order lifecycle state machine. Pure lookups and validation, no I/O.

Statuses move forward one step at a time along PROGRESSION, or jump to a terminal
state. Drivers may only cancel; FAILED is set by the backend.
"""
import logging
from enum import Enum

from pydantic import BaseModel

from driver_workflow.errors import UnknownStatusError
from driver_workflow.metrics import status_normalization_fallbacks_total

logger = logging.getLogger(__name__)


class DriverOrderStatus(str, Enum):
    ASSIGNED = "assigned"
    ON_ROUTE_TO_VENDOR = "on_route_to_vendor"
    ARRIVED_AT_VENDOR = "arrived_at_vendor"
    PICKED_UP = "picked_up"
    ON_ROUTE_TO_CUSTOMER = "on_route_to_customer"
    ARRIVED_AT_CUSTOMER = "arrived_at_customer"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def display_name(self) -> str:
        return STATUS_DISPLAY_NAMES[self]


class DriverOrderAction(str, Enum):
    NAVIGATE_TO_VENDOR = "navigate_to_vendor"
    ARRIVED_AT_VENDOR = "arrived_at_vendor"
    CONFIRM_PICKUP = "confirm_pickup"
    NAVIGATE_TO_CUSTOMER = "navigate_to_customer"
    ARRIVED_AT_CUSTOMER = "arrived_at_customer"
    CONFIRM_DELIVERY_WITH_PHOTO = "confirm_delivery_with_photo"
    CANCEL = "cancel"
    REPORT_ISSUE = "report_issue"

    @property
    def display_name(self) -> str:
        return ACTION_LABELS[self][0]

    @property
    def description(self) -> str:
        return ACTION_LABELS[self][1]

    @property
    def icon(self) -> str:
        return ACTION_LABELS[self][2]

    @property
    def target_status(self) -> "DriverOrderStatus | None":
        return ACTION_TARGETS[self]

    @property
    def is_dangerous(self) -> bool:
        return self in (DriverOrderAction.CANCEL, DriverOrderAction.REPORT_ISSUE)

    @property
    def requires_confirmation(self) -> bool:
        return self in (
            DriverOrderAction.CONFIRM_PICKUP,
            DriverOrderAction.CONFIRM_DELIVERY_WITH_PHOTO,
            DriverOrderAction.CANCEL,
        )


class ConfirmationType(str, Enum):
    PICKUP_CONFIRMATION = "pickup_confirmation"
    DELIVERY_WITH_PHOTO = "delivery_with_photo"


class ValidationResult(BaseModel):
    is_valid: bool
    error_message: str | None = None

    @classmethod
    def valid(cls) -> "ValidationResult":
        return cls(is_valid=True)

    @classmethod
    def invalid(cls, message: str) -> "ValidationResult":
        return cls(is_valid=False, error_message=message)


PROGRESSION: list[DriverOrderStatus] = [
    DriverOrderStatus.ASSIGNED,
    DriverOrderStatus.ON_ROUTE_TO_VENDOR,
    DriverOrderStatus.ARRIVED_AT_VENDOR,
    DriverOrderStatus.PICKED_UP,
    DriverOrderStatus.ON_ROUTE_TO_CUSTOMER,
    DriverOrderStatus.ARRIVED_AT_CUSTOMER,
    DriverOrderStatus.DELIVERED,
]

TERMINAL_STATUSES: frozenset[DriverOrderStatus] = frozenset({
    DriverOrderStatus.DELIVERED,
    DriverOrderStatus.CANCELLED,
    DriverOrderStatus.FAILED,
})

STATUS_DISPLAY_NAMES: dict[DriverOrderStatus, str] = {
    DriverOrderStatus.ASSIGNED: "Assigned",
    DriverOrderStatus.ON_ROUTE_TO_VENDOR: "On Route to Restaurant",
    DriverOrderStatus.ARRIVED_AT_VENDOR: "Arrived at Restaurant",
    DriverOrderStatus.PICKED_UP: "Picked Up",
    DriverOrderStatus.ON_ROUTE_TO_CUSTOMER: "On Route to Customer",
    DriverOrderStatus.ARRIVED_AT_CUSTOMER: "Arrived at Customer",
    DriverOrderStatus.DELIVERED: "Delivered",
    DriverOrderStatus.CANCELLED: "Cancelled",
    DriverOrderStatus.FAILED: "Failed",
}

# action -> (label, description, icon)
ACTION_LABELS: dict[DriverOrderAction, tuple[str, str, str]] = {
    DriverOrderAction.NAVIGATE_TO_VENDOR: ("Navigate to Restaurant", "Start GPS navigation to the restaurant", "navigation"),
    DriverOrderAction.ARRIVED_AT_VENDOR: ("Mark Arrived", "Mark as arrived at the restaurant", "location_on"),
    DriverOrderAction.CONFIRM_PICKUP: ("Confirm Pickup", "Confirm order pickup with restaurant staff (mandatory)", "check_circle"),
    DriverOrderAction.NAVIGATE_TO_CUSTOMER: ("Navigate to Customer", "Start GPS navigation to customer location", "navigation"),
    DriverOrderAction.ARRIVED_AT_CUSTOMER: ("Mark Arrived", "Mark as arrived at customer location", "location_on"),
    DriverOrderAction.CONFIRM_DELIVERY_WITH_PHOTO: ("Complete Delivery", "Complete delivery with photo proof (mandatory)", "camera_alt"),
    DriverOrderAction.CANCEL: ("Cancel Order", "Cancel this order", "cancel"),
    DriverOrderAction.REPORT_ISSUE: ("Report Issue", "Report an issue with this order", "report_problem"),
}

# REPORT_ISSUE records an issue without moving the order.
ACTION_TARGETS: dict[DriverOrderAction, DriverOrderStatus | None] = {
    DriverOrderAction.NAVIGATE_TO_VENDOR: DriverOrderStatus.ON_ROUTE_TO_VENDOR,
    DriverOrderAction.ARRIVED_AT_VENDOR: DriverOrderStatus.ARRIVED_AT_VENDOR,
    DriverOrderAction.CONFIRM_PICKUP: DriverOrderStatus.PICKED_UP,
    DriverOrderAction.NAVIGATE_TO_CUSTOMER: DriverOrderStatus.ON_ROUTE_TO_CUSTOMER,
    DriverOrderAction.ARRIVED_AT_CUSTOMER: DriverOrderStatus.ARRIVED_AT_CUSTOMER,
    DriverOrderAction.CONFIRM_DELIVERY_WITH_PHOTO: DriverOrderStatus.DELIVERED,
    DriverOrderAction.CANCEL: DriverOrderStatus.CANCELLED,
    DriverOrderAction.REPORT_ISSUE: None,
}

# Current status -> actions, primary first
AVAILABLE_ACTIONS: dict[DriverOrderStatus, list[DriverOrderAction]] = {
    DriverOrderStatus.ASSIGNED: [DriverOrderAction.NAVIGATE_TO_VENDOR, DriverOrderAction.CANCEL],
    DriverOrderStatus.ON_ROUTE_TO_VENDOR: [DriverOrderAction.ARRIVED_AT_VENDOR, DriverOrderAction.CANCEL],
    DriverOrderStatus.ARRIVED_AT_VENDOR: [
        DriverOrderAction.CONFIRM_PICKUP,
        DriverOrderAction.REPORT_ISSUE,
        DriverOrderAction.CANCEL,
    ],
    DriverOrderStatus.PICKED_UP: [DriverOrderAction.NAVIGATE_TO_CUSTOMER, DriverOrderAction.CANCEL],
    DriverOrderStatus.ON_ROUTE_TO_CUSTOMER: [DriverOrderAction.ARRIVED_AT_CUSTOMER, DriverOrderAction.CANCEL],
    DriverOrderStatus.ARRIVED_AT_CUSTOMER: [
        DriverOrderAction.CONFIRM_DELIVERY_WITH_PHOTO,
        DriverOrderAction.REPORT_ISSUE,
        DriverOrderAction.CANCEL,
    ],
    DriverOrderStatus.DELIVERED: [],
    DriverOrderStatus.CANCELLED: [],
    DriverOrderStatus.FAILED: [],
}

SECONDARY_ACTIONS = (DriverOrderAction.CANCEL, DriverOrderAction.REPORT_ISSUE)

DRIVER_INSTRUCTIONS: dict[DriverOrderStatus, str] = {
    DriverOrderStatus.ASSIGNED: "Start navigation to the restaurant to pick up the order",
    DriverOrderStatus.ON_ROUTE_TO_VENDOR: 'Navigate to the restaurant. Mark "Arrived" when you reach the location',
    DriverOrderStatus.ARRIVED_AT_VENDOR: "Confirm pickup with the restaurant staff. You must verify the order before proceeding",
    DriverOrderStatus.PICKED_UP: "Start navigation to the customer delivery address",
    DriverOrderStatus.ON_ROUTE_TO_CUSTOMER: 'Navigate to customer. Mark "Arrived" when you reach the delivery location',
    DriverOrderStatus.ARRIVED_AT_CUSTOMER: "Complete delivery by taking a photo of the delivered order. This is mandatory",
    DriverOrderStatus.DELIVERED: "Order completed successfully. You can now accept new orders",
    DriverOrderStatus.CANCELLED: "Order was cancelled. You can now accept new orders",
    DriverOrderStatus.FAILED: "Order delivery failed. Please contact support if needed",
}

TRANSITION_DESCRIPTIONS: dict[DriverOrderStatus, str] = {
    DriverOrderStatus.ASSIGNED: "Order assigned to driver",
    DriverOrderStatus.ON_ROUTE_TO_VENDOR: "Driver started navigation to restaurant",
    DriverOrderStatus.ARRIVED_AT_VENDOR: "Driver arrived at restaurant",
    DriverOrderStatus.PICKED_UP: "Order picked up from restaurant",
    DriverOrderStatus.ON_ROUTE_TO_CUSTOMER: "Driver started delivery to customer",
    DriverOrderStatus.ARRIVED_AT_CUSTOMER: "Driver arrived at customer location",
    DriverOrderStatus.DELIVERED: "Order delivered to customer",
    DriverOrderStatus.CANCELLED: "Order cancelled",
    DriverOrderStatus.FAILED: "Order delivery failed",
}

REQUIRED_CONFIRMATIONS: dict[DriverOrderStatus, ConfirmationType] = {
    DriverOrderStatus.ARRIVED_AT_VENDOR: ConfirmationType.PICKUP_CONFIRMATION,
    DriverOrderStatus.ARRIVED_AT_CUSTOMER: ConfirmationType.DELIVERY_WITH_PHOTO,
}

# Coarse order status shown to customers and vendors
ORDER_STATUS_BY_DRIVER_STATUS: dict[DriverOrderStatus, str] = {
    DriverOrderStatus.ASSIGNED: "confirmed",
    DriverOrderStatus.ON_ROUTE_TO_VENDOR: "on_route_to_vendor",
    DriverOrderStatus.ARRIVED_AT_VENDOR: "arrived_at_vendor",
    DriverOrderStatus.PICKED_UP: "out_for_delivery",
    DriverOrderStatus.ON_ROUTE_TO_CUSTOMER: "out_for_delivery",
    DriverOrderStatus.ARRIVED_AT_CUSTOMER: "out_for_delivery",
    DriverOrderStatus.DELIVERED: "delivered",
    DriverOrderStatus.CANCELLED: "cancelled",
    DriverOrderStatus.FAILED: "cancelled",
}

LEGACY_STATUS_ALIASES: dict[str, DriverOrderStatus] = {
    "out_for_delivery": DriverOrderStatus.PICKED_UP,
}

# Order-side statuses that precede driver work; only meaningful once a driver is assigned
PRE_PICKUP_ORDER_STATUSES = frozenset({"confirmed", "preparing", "ready"})


def is_terminal(status: DriverOrderStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_be_cancelled_by_driver(status: DriverOrderStatus) -> bool:
    return not is_terminal(status)


def get_next_status(status: DriverOrderStatus) -> DriverOrderStatus | None:
    """Next step along the progression, or None for terminal statuses."""
    if is_terminal(status):
        return None
    return PROGRESSION[PROGRESSION.index(status) + 1]


def get_available_actions(status: DriverOrderStatus) -> list[DriverOrderAction]:
    return list(AVAILABLE_ACTIONS.get(status, []))


def get_primary_action(status: DriverOrderStatus) -> DriverOrderAction | None:
    for action in AVAILABLE_ACTIONS.get(status, []):
        if action not in SECONDARY_ACTIONS:
            return action
    return None


def map_action_to_target_status(action: DriverOrderAction) -> DriverOrderStatus | None:
    return ACTION_TARGETS[action]


def get_driver_instructions(status: DriverOrderStatus) -> str:
    return DRIVER_INSTRUCTIONS[status]


def get_transition_description(status: DriverOrderStatus) -> str:
    """Human-readable description of moving into `status`."""
    return TRANSITION_DESCRIPTIONS[status]


def get_required_confirmation(status: DriverOrderStatus) -> ConfirmationType | None:
    return REQUIRED_CONFIRMATIONS.get(status)


def requires_mandatory_confirmation(status: DriverOrderStatus) -> bool:
    return status in REQUIRED_CONFIRMATIONS


def to_order_status(status: DriverOrderStatus) -> str:
    return ORDER_STATUS_BY_DRIVER_STATUS[status]


def validate_transition(from_status: DriverOrderStatus, to_status: DriverOrderStatus) -> ValidationResult:
    """
    Check a driver-initiated transition. Never raises; the error message names the rule violated.
    """
    if is_terminal(from_status):
        return ValidationResult.invalid(
            f"Order already in terminal state {from_status.display_name}; no further changes are allowed"
        )
    if to_status == from_status:
        return ValidationResult.invalid(f"Order is already {from_status.display_name}")
    if to_status == DriverOrderStatus.CANCELLED:
        return ValidationResult.valid()
    if to_status == DriverOrderStatus.FAILED:
        return ValidationResult.invalid(
            f"Cannot mark order as {to_status.display_name}; only the backend sets this status"
        )

    current_index = PROGRESSION.index(from_status)
    target_index = PROGRESSION.index(to_status)
    if target_index < current_index:
        return ValidationResult.invalid(
            f"Cannot move backwards from {from_status.display_name} to {to_status.display_name}"
        )
    if target_index == current_index + 1:
        return ValidationResult.valid()

    skipped = PROGRESSION[current_index + 1:target_index]
    message = (
        f"Invalid status transition from {from_status.display_name} to {to_status.display_name}: "
        f"cannot skip {', '.join(s.display_name for s in skipped)}"
    )
    if DriverOrderStatus.PICKED_UP in skipped:
        message += "; cannot skip pickup confirmation"
    if to_status == DriverOrderStatus.DELIVERED and from_status != DriverOrderStatus.ARRIVED_AT_CUSTOMER:
        message += "; cannot skip delivery confirmation"
    return ValidationResult.invalid(message)


def normalize_status(raw: str | None, assigned_driver_id: str | None = None) -> DriverOrderStatus:
    """
    Map a stored or pushed status string onto DriverOrderStatus.

    Legacy values normalize forward. An unknown value on an order without a driver
    raises UnknownStatusError; on an assigned order it falls back to PICKED_UP and
    the fallback is logged and counted so the inconsistency stays visible.
    """
    value = (raw or "").strip()
    key = value.lower()
    try:
        return DriverOrderStatus(key)
    except ValueError:
        pass
    # camelCase values written by older clients, e.g. "onRouteToVendor"
    snake = "".join("_" + c.lower() if c.isupper() else c for c in value).lstrip("_")
    try:
        return DriverOrderStatus(snake)
    except ValueError:
        pass
    if key in LEGACY_STATUS_ALIASES:
        return LEGACY_STATUS_ALIASES[key]
    if key in PRE_PICKUP_ORDER_STATUSES and assigned_driver_id:
        return DriverOrderStatus.ASSIGNED

    if not assigned_driver_id:
        raise UnknownStatusError(raw)
    logger.warning(
        "Unknown status %r on order assigned to driver %s; assuming %s",
        raw,
        assigned_driver_id,
        DriverOrderStatus.PICKED_UP.value,
    )
    status_normalization_fallbacks_total.inc()
    return DriverOrderStatus.PICKED_UP
