"""
Client-side failures.

Local authentication gate failures are reduced to a closed set of reasons
(:class:`GateFailure`) so the orchestrator can drive its cascade without
knowing which platform produced them.
"""

from enum import Enum
from typing import Optional


class GateFailure(str, Enum):
    """Why a local authentication gate or key store operation failed."""

    DECLINED = "declined"               # user cancelled the prompt
    UNAVAILABLE = "unavailable"         # biometrics disabled or not enrolled
    NOT_CONFIGURED = "not_configured"   # no passcode set at all
    LOCKED_OUT = "locked_out"           # too many failed attempts
    OTHER = "other"                     # hardware or software store failure


class ClientError(Exception):
    """Base class for client errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class KeyStoreError(ClientError):
    """A gate evaluation or key store operation failed."""

    def __init__(self, failure: GateFailure, message: str):
        super().__init__(message)
        self.failure = failure

    @classmethod
    def store_failure(cls, message: str) -> "KeyStoreError":
        return cls(GateFailure.OTHER, message)


class NoLocalAuthGate(KeyStoreError):
    """The device has neither biometrics nor a passcode."""

    def __init__(self, message: str):
        super().__init__(GateFailure.NOT_CONFIGURED, message)


class NotEnrolled(ClientError):
    """The operation needs a local enrollment that does not exist."""


class InvalidTransition(ClientError):
    """An orchestrator operation was called in a state that does not allow it."""


class ServerRejected(ClientError):
    """
    The server answered with a failure.

    ``error`` is the server's machine-readable code (``not_found``,
    ``already_used``, ``expired``, ...) when it sent one; ``status_code`` is
    None when the server could not be reached.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, error: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.error = error

    @property
    def retryable(self) -> bool:
        return self.error != "validation_error"
