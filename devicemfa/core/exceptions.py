"""
Typed failures raised by the credential authority.

Every failure carries a stable machine-readable ``code`` and the HTTP status
the API layer answers with. None of them escape the API boundary: the
exception handler in :mod:`devicemfa.main` turns them into
``{"success": false, "message": ...}`` bodies.
"""


class CredentialError(Exception):
    """Base class for client-visible credential failures."""

    code = "error"
    status_code = 400
    retryable = True

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"success": False, "error": self.code, "message": self.message}


class ValidationError(CredentialError):
    """Missing or malformed input. Not retryable without fixing the request."""

    code = "validation_error"
    status_code = 400
    retryable = False


class NotFound(CredentialError):
    """Device, challenge or code does not exist."""

    code = "not_found"
    status_code = 404


class AlreadyUsed(CredentialError):
    """Single-use credential was already consumed."""

    code = "already_used"
    status_code = 409


class Expired(CredentialError):
    """Single-use credential is past its expiry."""

    code = "expired"
    status_code = 410


class InvalidSignature(CredentialError):
    """Signature did not verify against the device's public key."""

    code = "invalid_signature"
    status_code = 401
