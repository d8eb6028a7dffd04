"""Error taxonomy for webhook intake and the delivery sweep.

AuthenticationError and MalformedPayloadError abort a whole request.
StoreError and DeliveryError are local to one event or one subscriber.
"""


class NotifierError(Exception):
    """Base class for all application errors."""


class AuthenticationError(NotifierError):
    """Webhook signature missing or mismatched (HTTP 401)."""


class MalformedPayloadError(NotifierError):
    """Webhook body is not a valid event envelope (HTTP 500)."""


class StoreError(NotifierError):
    """Subscriber store operation failed."""


class DeliveryError(NotifierError):
    """Outbound LINE API call failed."""

    def __init__(self, message: str, status_code: int | None = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class ConfigurationError(NotifierError):
    """Required configuration is missing."""
