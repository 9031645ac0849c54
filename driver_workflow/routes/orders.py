from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from driver_workflow.confirmation import DeliveryConfirmation, PickupConfirmation
from driver_workflow.coordinator import OrderWorkflowCoordinator
from driver_workflow.errors import (
    CommitInProgressError,
    ErrorKind,
    InvalidTransitionError,
    MissingProofError,
    OrderNotFoundError,
    UnknownStatusError,
)
from driver_workflow.order_state import (
    DriverOrderAction,
    get_available_actions,
    get_driver_instructions,
    get_primary_action,
)
from driver_workflow.redis_client import check_idempotency, forget_idempotency

router = APIRouter(prefix="/orders", tags=["orders"])

ERROR_STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.NETWORK_ERROR: 503,
    ErrorKind.PERMISSION_DENIED: 403,
    ErrorKind.ALREADY_COMPLETED: 409,
    ErrorKind.CONFLICT: 409,
    ErrorKind.UNKNOWN: 500,
}


class ActionBody(BaseModel):
    driver_id: str = Field(..., min_length=1, description="Driver performing the action")
    pickup: PickupConfirmation | None = Field(default=None, description="Required for confirm_pickup")
    delivery: DeliveryConfirmation | None = Field(default=None, description="Required for confirm_delivery_with_photo")
    notes: str | None = Field(default=None, description="Issue description for report_issue")


def _coordinator(request: Request) -> OrderWorkflowCoordinator:
    return request.app.state.coordinator


def _action_payload(action: DriverOrderAction) -> dict:
    return {
        "action": action.value,
        "label": action.display_name,
        "description": action.description,
        "icon": action.icon,
        "target_status": action.target_status.value if action.target_status else None,
        "is_dangerous": action.is_dangerous,
        "requires_confirmation": action.requires_confirmation,
    }


@router.get("/{order_id}/workflow")
async def get_workflow(order_id: str, request: Request) -> JSONResponse:
    coordinator = _coordinator(request)
    try:
        snapshot = coordinator.snapshot(order_id) or await coordinator.load(order_id)
    except OrderNotFoundError as e:
        return JSONResponse(status_code=404, content={"status": "not_found", "detail": str(e)})
    except UnknownStatusError as e:
        return JSONResponse(status_code=422, content={"status": "unknown_status", "detail": str(e)})
    primary = get_primary_action(snapshot.status)
    return JSONResponse(
        status_code=200,
        content={
            "order_id": order_id,
            "status": snapshot.status.value,
            "status_label": snapshot.status.display_name,
            "pending": snapshot.pending,
            "instructions": get_driver_instructions(snapshot.status),
            "primary_action": primary.value if primary else None,
            "actions": [_action_payload(a) for a in get_available_actions(snapshot.status)],
        },
    )


@router.post("/{order_id}/actions/{action}")
async def perform_action(
    order_id: str,
    action: DriverOrderAction,
    body: ActionBody,
    request: Request,
    idempotency_key: str | None = Header(default=None),
) -> JSONResponse:
    """
    Run one driver action. With an Idempotency-Key header, a repeated submission
    returns 200 already_processed instead of committing twice.
    """
    key = f"idempotency:{order_id}:{action.value}:{idempotency_key}" if idempotency_key else None
    if key and await check_idempotency(key):
        return JSONResponse(status_code=200, content={"status": "already_processed", "order_id": order_id})

    if action == DriverOrderAction.CONFIRM_PICKUP:
        proof = body.pickup
    elif action == DriverOrderAction.CONFIRM_DELIVERY_WITH_PHOTO:
        proof = body.delivery
    else:
        proof = None

    coordinator = _coordinator(request)
    try:
        result = await coordinator.perform_action(
            order_id, action, proof=proof, driver_id=body.driver_id, notes=body.notes
        )
    except (InvalidTransitionError, MissingProofError, UnknownStatusError) as e:
        response = JSONResponse(status_code=422, content={"status": "rejected", "detail": str(e)})
    except CommitInProgressError as e:
        response = JSONResponse(status_code=409, content={"status": "in_progress", "detail": str(e)})
    except OrderNotFoundError as e:
        response = JSONResponse(status_code=404, content={"status": "not_found", "detail": str(e)})
    else:
        if result.ok:
            return JSONResponse(status_code=200, content={"status": "ok", "order_id": order_id, "order_status": result.status})
        snapshot = coordinator.snapshot(order_id)
        response = JSONResponse(
            status_code=ERROR_STATUS_CODES[result.error_kind],
            content={
                "status": result.error_kind.value,
                "detail": result.message,
                "refresh": result.error_kind.requires_refresh,
                "retryable": result.error_kind.retryable,
                "order_status": snapshot.status.value if snapshot else result.status,
            },
        )
    if key:
        await forget_idempotency(key)
    return response
