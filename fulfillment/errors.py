"""
Structured, recoverable errors raised by the order lifecycle.

Every rejection names the guard that failed so callers can surface it
verbatim. None of these is fatal; callers re-read the order and retry with
corrected input.
"""
from typing import Any, Dict, Optional


class FulfillmentError(Exception):
    kind = "fulfillment_error"

    def __init__(self, message: str, guard: Optional[str] = None, **context: Any):
        super().__init__(message)
        self.message = message
        self.guard = guard
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.kind, "guard": self.guard, "message": self.message}
        if self.context:
            body["context"] = {key: str(value) for key, value in self.context.items()}
        return body


class InvalidTransition(FulfillmentError):
    """Wrong role, wrong current status or a missing precondition."""
    kind = "invalid_transition"


class ConcurrentModification(FulfillmentError):
    """Another actor changed the order between read and write."""
    kind = "concurrent_modification"


class ValidationError(FulfillmentError):
    """Malformed input."""
    kind = "validation_error"


class NotFound(FulfillmentError):
    kind = "not_found"
