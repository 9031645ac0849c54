from fastapi import APIRouter

from driver_workflow.order_state import (
    DriverOrderStatus,
    get_available_actions,
    get_driver_instructions,
    get_next_status,
    get_primary_action,
    get_required_confirmation,
    get_transition_description,
    is_terminal,
)

router = APIRouter(prefix="/workflow", tags=["workflow"])


@router.get("/statuses/{status}")
async def describe_status(status: DriverOrderStatus) -> dict:
    """Static workflow metadata for one status; no order lookup involved."""
    primary = get_primary_action(status)
    confirmation = get_required_confirmation(status)
    next_status = get_next_status(status)
    return {
        "status": status.value,
        "label": status.display_name,
        "description": get_transition_description(status),
        "instructions": get_driver_instructions(status),
        "terminal": is_terminal(status),
        "next_status": next_status.value if next_status else None,
        "primary_action": primary.value if primary else None,
        "actions": [a.value for a in get_available_actions(status)],
        "required_confirmation": confirmation.value if confirmation else None,
    }
