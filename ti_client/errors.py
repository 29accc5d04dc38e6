"""Error types raised by the TI service client.

Every failure surfaces as a subclass of TIClientError:

    ValidationError      missing required argument, raised before any I/O
    TransportError       no response at all (connect, TLS, timeout)
    DomainError          the server answered with a status >= 300
      ClientError        status < 500, never retried
      ServerError        status >= 500, retried for retryable operations
    ResponseDecodeError  2xx body did not match the expected result shape
    CancelledError       the caller's cancellation token fired
"""

from __future__ import annotations


class TIClientError(Exception):
    """Base class for TI client errors."""


class ValidationError(TIClientError):
    """Raised when a required argument or config field is empty."""


class UnsupportedPayloadError(ValidationError):
    """Raised when an upload payload is not one of the supported variants."""

    def __init__(self) -> None:
        super().__init__("payload type not supported")


class TransportError(TIClientError):
    """Raised when a request fails without producing a response."""


class DomainError(TIClientError):
    """Structured error built from a non-2xx HTTP response."""

    def __init__(self, code: int, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")

    @property
    def is_server_error(self) -> bool:
        return self.code >= 500


class ClientError(DomainError):
    """HTTP status in the 3xx/4xx range."""


class ServerError(DomainError):
    """HTTP status >= 500."""


class HealthCheckError(DomainError):
    """Healthz answered with a status other than 200."""


class ResponseDecodeError(TIClientError):
    """Raised when a successful response body cannot be decoded."""


class CancelledError(TIClientError):
    """Raised when the caller cancelled the operation."""


class DeadlineExceededError(CancelledError):
    """Raised when the caller's deadline passed before the operation finished."""


def domain_error(code: int, message: str) -> DomainError:
    """Build the DomainError subclass matching ``code``."""
    if code >= 500:
        return ServerError(code, message)
    return ClientError(code, message)
