"""
Pickup and delivery proof. No PICKED_UP or DELIVERED commit goes through without it;
check_proof runs in the coordinator and again inside the repository transaction.
"""
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from driver_workflow.config import settings
from driver_workflow.errors import MissingProofError
from driver_workflow.order_state import DriverOrderStatus


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Geolocation(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: float = Field(..., ge=0, description="Horizontal accuracy radius in metres")


class PickupConfirmation(BaseModel):
    order_id: str
    confirmed_at: datetime = Field(default_factory=_now)
    photo_url: str | None = None
    location: Geolocation | None = None
    notes: str | None = None


class DeliveryConfirmation(BaseModel):
    order_id: str
    confirmed_at: datetime = Field(default_factory=_now)
    photo_url: str | None = None
    location: Geolocation | None = None
    recipient_name: str | None = None
    notes: str | None = None


Proof = PickupConfirmation | DeliveryConfirmation


def can_submit(confirmation: Proof | None, max_accuracy_m: float | None = None) -> bool:
    """True when every mandatory field is present (photo + bounded GPS for delivery)."""
    if confirmation is None or not confirmation.order_id.strip():
        return False
    if isinstance(confirmation, DeliveryConfirmation):
        if not (confirmation.photo_url or "").strip():
            return False
        if confirmation.location is None:
            return False
        limit = settings.max_location_accuracy_m if max_accuracy_m is None else max_accuracy_m
        return confirmation.location.accuracy <= limit
    return True


def check_proof(order_id: str, target_status: DriverOrderStatus, proof: Proof | None) -> None:
    """Raise MissingProofError unless `proof` satisfies the gate for `target_status`."""
    if target_status == DriverOrderStatus.PICKED_UP:
        expected, label = PickupConfirmation, "Pickup confirmation"
    elif target_status == DriverOrderStatus.DELIVERED:
        expected, label = DeliveryConfirmation, "Delivery confirmation with photo and location"
    else:
        return

    if proof is None:
        raise MissingProofError(f"{label} is required for order {order_id}")
    if not isinstance(proof, expected):
        raise MissingProofError(f"{label} is required for order {order_id}, got {type(proof).__name__}")
    if proof.order_id != order_id:
        raise MissingProofError(f"Proof belongs to order {proof.order_id}, not {order_id}")
    if not can_submit(proof):
        if isinstance(proof, DeliveryConfirmation) and proof.location is not None and (proof.photo_url or "").strip():
            raise MissingProofError(
                f"Location accuracy {proof.location.accuracy:.1f}m exceeds the "
                f"{settings.max_location_accuracy_m:.0f}m limit for order {order_id}"
            )
        raise MissingProofError(f"{label} is incomplete for order {order_id}")
