"""Error taxonomy for the messaging core.

Every error carries a stable ``code`` that is sent to the originating client
inside an ``error`` event, and an HTTP ``status_code`` used by REST routes.
"""


class ChatError(Exception):
    """Base exception for messaging core errors."""
    code = "chat_error"
    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_event(self) -> dict:
        """Render the error as an ``error`` event payload."""
        return {"type": "error", "message": self.message, "code": self.code}


class AuthenticationError(ChatError):
    """Bad, expired or missing token. Terminal for the connection attempt."""
    code = "authentication_error"
    status_code = 401


class AuthorizationError(ChatError):
    """Caller is not allowed to act on the room. The connection stays open."""
    code = "authorization_error"
    status_code = 403


class PayloadValidationError(ChatError):
    """Malformed event payload or message content."""
    code = "validation_error"
    status_code = 422


class PersistenceError(ChatError):
    """The persistence gateway failed; the operation left no partial state."""
    code = "persistence_error"
    status_code = 503


class TransientDeliveryFailure(ChatError):
    """A subscriber's transport is dead. Logged and pruned, never surfaced."""
    code = "delivery_failure"
