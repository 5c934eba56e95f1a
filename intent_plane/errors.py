"""
Intent Plane Errors
===================

Error taxonomy shared by every component.

- InvalidInput: rejected synchronously, never persisted
- TransientError: network/storage hiccup, retried within an attempt budget
- Conflict: someone else already performed the transition
- InvalidTransition: an edge the state machine does not allow (a bug)

Expired outcomes and lost compare-and-swap races are NOT exceptions; they are
returned as typed results.
"""


class IntentPlaneError(Exception):
    """Base class for all intent plane errors."""


class InvalidInput(IntentPlaneError):
    """Malformed context or unknown profile/block/product."""


class NotFound(InvalidInput):
    """Referenced record does not exist."""


class AuthenticationRequired(IntentPlaneError):
    """Caller must be authenticated for this operation."""


class PermissionDenied(IntentPlaneError):
    """Caller is authenticated but does not own the resource."""


class Conflict(IntentPlaneError):
    """Operation conflicts with a committed state."""


class DuplicateOrder(Conflict):
    """The intent already has an order awaiting a gateway result."""


class TransientError(IntentPlaneError):
    """Temporary failure; the caller may retry."""


class GatewayError(TransientError):
    """Payment gateway could not be reached or answered with a server error."""


class InvalidTransition(IntentPlaneError):
    """Requested status edge is not part of the state machine."""

    def __init__(self, record: str, current: str, new: str):
        self.record = record
        self.current = current
        self.new = new
        super().__init__(f"{record}: {current} -> {new} is not an allowed transition")
