"""
Custom exceptions for the Oracle database operator.

Remote failures are classified at the actuator boundary so the reconciler can
decide between a requeue and a terminal status condition without inspecting
SDK or HTTP specifics.
"""
from typing import Optional, Dict, Any


class OperatorException(Exception):
    """
    Base exception for all operator errors.

    All custom exceptions should inherit from this base class.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(OperatorException):
    """Raised when operator or per-resource configuration is unusable."""


class ResourceStoreError(OperatorException):
    """
    Raised when the Kubernetes API rejects or fails a read/write.
    """

    def __init__(self, message: str, status: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        self.status = status
        super().__init__(message=f"Resource store error: {message}", details=details)


class StaleResourceError(ResourceStoreError):
    """
    Raised when a write loses an optimistic-concurrency race (HTTP 409).

    The caller re-reads and derives its next action from fresh state.
    """

    def __init__(self, name: str, resource_version: Optional[str] = None):
        super().__init__(
            message=f"stale write for '{name}'",
            status=409,
            details={"name": name, "resource_version": resource_version},
        )


class ActuatorError(OperatorException):
    """
    Base class for classified remote-call failures.

    Attributes:
        operation: Remote operation name (e.g. "update", "unplug_pdb")
        status: Remote HTTP status when one was returned
        code: Remote error code when one was returned
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        status: Optional[int] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.operation = operation
        self.status = status
        self.code = code
        super().__init__(
            message=message,
            details=details or {"operation": operation, "status": status, "code": code},
        )

    @property
    def classification(self) -> str:
        return type(self).__name__


class TransientError(ActuatorError):
    """
    Network failure, timeout, throttling, 5xx or lock contention.

    Safe to retry with backoff.
    """

    retryable = True


class EventualConsistencyMismatch(TransientError):
    """
    A direct read disagrees with a list read shortly after a write.
    """


class ConflictError(ActuatorError):
    """
    The remote object is in a state incompatible with the request.

    Retry after re-observing the remote state.
    """

    retryable = True


class PermanentError(ActuatorError):
    """
    Validation, authorization or not-found failure.

    Never retried automatically; surfaced on the resource status.
    """


class WalletError(OperatorException):
    """Raised when a wallet bundle cannot be unpacked or stored."""
