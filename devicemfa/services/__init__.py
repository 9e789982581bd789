"""Service layer for business logic."""

from devicemfa.services.credential_authority import (
    CredentialAuthority,
    IssuedChallenge,
    OutOfBandRedirect,
    VerificationResult,
)
from devicemfa.services.crypto_service import CryptoService
from devicemfa.services.delivery import CodeDelivery, LoggingCodeDelivery

__all__ = [
    "CodeDelivery",
    "CredentialAuthority",
    "CryptoService",
    "IssuedChallenge",
    "LoggingCodeDelivery",
    "OutOfBandRedirect",
    "VerificationResult",
]
