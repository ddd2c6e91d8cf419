"""
Custom exceptions for the realtime sync core.

Transport failures are retried internally and never cross the public
boundary; these types carry the detail that ends up in ``last_error`` and
in log records.
"""


class RealtimeError(Exception):
    """Base exception for all realtime sync errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidTargetError(RealtimeError):
    """Raised when a stream URL cannot be built for a resource."""

    def __init__(self, resource_id: str, reason: str):
        super().__init__(
            f"Invalid realtime URL for {resource_id!r}: {reason}",
            {"resource_id": resource_id, "reason": reason},
        )
        self.resource_id = resource_id
        self.reason = reason


class StreamConnectionError(RealtimeError):
    """Raised when a stream attempt fails at the transport or HTTP level.

    Note: Named StreamConnectionError to avoid shadowing the builtin ConnectionError.
    """

    def __init__(
        self,
        endpoint: str,
        status: int | None = None,
        cause: Exception | None = None,
    ):
        details: dict = {"endpoint": endpoint}
        message = f"Stream connection failed to {endpoint}"
        if status is not None:
            details["status"] = status
            message += f" (HTTP {status})"
        if cause:
            details["cause"] = str(cause)
        super().__init__(message, details)
        self.endpoint = endpoint
        self.status = status
        self.cause = cause


class RecordDecodeError(RealtimeError):
    """Raised when a single event record or patch payload is malformed."""

    def __init__(self, reason: str, event_name: str | None = None):
        details = {"reason": reason}
        if event_name:
            details["event_name"] = event_name
        super().__init__(f"Malformed record: {reason}", details)
        self.reason = reason
        self.event_name = event_name


class ConfigurationError(RealtimeError):
    """Raised when realtime configuration values are invalid."""

    def __init__(self, field: str, reason: str, value: str | None = None):
        details = {"field": field, "reason": reason}
        if value is not None:
            details["value"] = value
        super().__init__(f"Invalid configuration for {field}: {reason}", details)
        self.field = field
        self.reason = reason
        self.value = value
