"""Domain errors raised by the scheduling engine and mapped to HTTP responses by the API layer."""


class EngineError(Exception):
    """Base for user-facing engine errors."""


class SecretValidationError(EngineError):
    """Bad interval, recipient list or payload. Nothing was written."""


class SecretNotFoundError(EngineError):
    """Secret does not exist or is not owned by the caller."""


class InvalidTransitionError(EngineError):
    """Lifecycle transition not allowed from the secret's current status."""

    def __init__(self, status: str, action: str):
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} a secret that is {status}")


class CheckInTokenError(EngineError):
    """Check-in link token is unknown, already used, or expired."""

    def __init__(self, reason: str):
        self.reason = reason  # invalid | used | expired
        messages = {
            "invalid": "Invalid or expired token",
            "used": "Token has already been used",
            "expired": "Token has expired",
        }
        super().__init__(messages.get(reason, "Invalid or expired token"))


class DeliveryNotFoundError(EngineError):
    """Disclosure delivery row does not exist."""


class DeliveryNotRetryableError(EngineError):
    """Only failed disclosure deliveries can be sent again."""

    def __init__(self, status: str):
        self.status = status
        super().__init__(f"Cannot retry a delivery that is {status}")
