"""
Workflow errors. Local validation failures are exceptions raised before any I/O;
remote commit outcomes are CommitResult values tagged with an ErrorKind.
"""
from enum import Enum

from pydantic import BaseModel


class ErrorKind(str, Enum):
    NETWORK_ERROR = "network_error"
    PERMISSION_DENIED = "permission_denied"
    ALREADY_COMPLETED = "already_completed"
    CONFLICT = "conflict"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self is ErrorKind.NETWORK_ERROR

    @property
    def requires_refresh(self) -> bool:
        """Another actor changed the order; reload authoritative state instead of retrying."""
        return self in (ErrorKind.ALREADY_COMPLETED, ErrorKind.CONFLICT)


class CommitResult(BaseModel):
    ok: bool
    status: str | None = None
    error_kind: ErrorKind | None = None
    message: str | None = None

    @classmethod
    def success(cls, status: str | None = None) -> "CommitResult":
        return cls(ok=True, status=status)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, status: str | None = None) -> "CommitResult":
        return cls(ok=False, error_kind=kind, message=message, status=status)


class WorkflowError(Exception):
    """Base for errors raised locally, before anything reaches the repository."""


class InvalidTransitionError(WorkflowError):
    def __init__(self, from_status, to_status, message: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(message)


class MissingProofError(WorkflowError):
    """Pickup or delivery proof absent or incomplete."""


class CommitInProgressError(WorkflowError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"A status change for order {order_id} is already being submitted")


class UnknownStatusError(WorkflowError):
    def __init__(self, raw_status: str | None):
        self.raw_status = raw_status
        super().__init__(f"Unrecognized order status {raw_status!r} on an order with no assigned driver")


class OrderNotFoundError(WorkflowError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")
