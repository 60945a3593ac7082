"""
Exceptions raised by the kernel.

Only infrastructure and configuration problems are exceptions. Gate
rejections and tool failures are ordinary return values.
"""

from typing import Optional


class KernelError(Exception):
    """Base class for kernel exceptions."""
    pass


class ConfigurationError(KernelError):
    """Missing credentials or an invalid tool schema. Never retried."""
    pass


class ServiceError(KernelError):
    """An outbound call failed. 5xx (or no status) counts against the circuit."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_client_error(self) -> bool:
        return self.status_code is not None and 400 <= self.status_code < 500


class RequestTimeoutError(KernelError):
    """A wrapped call exceeded the breaker's request timeout."""
    pass


class CircuitOpenError(KernelError):
    """The circuit is OPEN; the wrapped function was not invoked."""

    def __init__(self, circuit_name: str):
        super().__init__(f"Circuit {circuit_name} is OPEN - request rejected")
        self.circuit_name = circuit_name
