"""Exception types shared across EventCall components."""

from __future__ import annotations

NETWORK = "network"
RATE_LIMIT = "rate_limit"
AUTH = "auth"
NOT_FOUND = "not_found"
CONFLICT = "conflict"
VALIDATION = "validation"
UNKNOWN = "unknown"


class EventCallError(Exception):
    """Base class for errors surfaced to callers."""

    category = UNKNOWN
    retryable = False

    def __init__(self, message: str, *, category: str | None = None):
        super().__init__(message)
        self.message = message
        if category is not None:
            self.category = category


class ValidationError(EventCallError):
    """Raised when user input fails one or more field rules."""

    category = VALIDATION

    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors) or "Invalid input")
        self.errors = list(errors)


class RemoteError(EventCallError):
    """A remote collaborator rejected or failed a request."""

    def __init__(
        self,
        message: str,
        *,
        category: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message, category=category)
        self.status_code = status_code


class TransientRemoteError(RemoteError):
    """Network failures, rate limits and 5xx responses."""

    category = NETWORK
    retryable = True


class AuthorizationError(RemoteError):
    """401/403 from a remote, or an ownership guard denial."""

    category = AUTH


class NotFoundError(RemoteError):
    category = NOT_FOUND


class ConflictError(RemoteError):
    """A conditional write was rejected because its version token is stale."""

    category = CONFLICT


class SyncInProgressError(EventCallError):
    def __init__(self, message: str = "Sync already in progress"):
        super().__init__(message)


class SubmissionInProgressError(EventCallError):
    def __init__(self, message: str = "Submission already in progress"):
        super().__init__(message)


_GUIDANCE: dict[str, dict[str, object]] = {
    NETWORK: {
        "userMessage": "Network connection issue. Please check your internet connection.",
        "suggestions": [
            "Check your internet connection",
            "Try refreshing the page and submitting again",
            "If the problem persists, contact the event organizer directly",
        ],
    },
    RATE_LIMIT: {
        "userMessage": "Too many requests. Please wait a moment and try again.",
        "suggestions": [
            "Wait 60 seconds before trying again",
            "Only submit your RSVP once",
            "Contact the event organizer if urgent",
        ],
    },
    AUTH: {
        "userMessage": "System authentication issue. This is a temporary problem.",
        "suggestions": [
            "Try again in a few minutes",
            "Contact the event organizer with your RSVP details",
            "Reference Error Code: AUTH_001",
        ],
    },
    NOT_FOUND: {
        "userMessage": "Backend workflow not found. Please contact the administrator.",
        "suggestions": [
            "Contact the event organizer with your RSVP details",
            "Reference Error Code: DISPATCH_404",
        ],
    },
    UNKNOWN: {
        "userMessage": "An unexpected error occurred during submission.",
        "suggestions": [
            "Try refreshing the page and submitting again",
            "Contact the event organizer directly",
            "Include the error details when contacting support",
        ],
    },
}


def guidance_for(error: BaseException | None) -> dict[str, object]:
    """Return user-facing guidance for ``error`` based on its category."""
    category = getattr(error, "category", UNKNOWN)
    guidance = _GUIDANCE.get(category, _GUIDANCE[UNKNOWN])
    return {
        "category": category if category in _GUIDANCE else UNKNOWN,
        "userMessage": guidance["userMessage"],
        "suggestions": list(guidance["suggestions"]),
    }
