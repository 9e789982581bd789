"""Authentication-related Pydantic schemas."""

from typing import Optional

from pydantic import Field

from devicemfa.models.device import AuthMethod
from devicemfa.schemas.base import WireModel


class AuthInitiateRequest(WireModel):
    """Request a fresh challenge for a device."""

    username: str = Field(..., min_length=1, max_length=100, description="Username")
    device_id: str = Field(..., min_length=1, max_length=128, description="Device ID")


class ChallengeResponse(WireModel):
    """
    Challenge for the asymmetric method, or a redirect to the code flow.

    ``challenge`` and ``challenge_id`` are absent when ``method`` is
    ``OUT_OF_BAND_CODE``.
    """

    method: AuthMethod = Field(..., description="Method the device must use")
    challenge: Optional[str] = Field(None, description="Nonce (base64)")
    challenge_id: Optional[str] = Field(None, description="Challenge identifier")
    expires_in: int = Field(..., description="Seconds until expiry")


class VerifySignatureRequest(WireModel):
    """Signature over a previously issued nonce."""

    username: str = Field(..., min_length=1, max_length=100, description="Username")
    device_id: str = Field(..., min_length=1, max_length=128, description="Device ID")
    challenge_id: str = Field(..., min_length=1, description="Challenge identifier")
    signature: str = Field(..., min_length=1, description="DER ECDSA signature (base64)")


class CodeRequest(WireModel):
    """Ask for an out-of-band code to be delivered."""

    username: str = Field(..., min_length=1, max_length=100, description="Username")
    address: str = Field(..., min_length=1, max_length=32, description="Delivery address")


class VerifyCodeRequest(WireModel):
    """User-entered out-of-band code."""

    username: str = Field(..., min_length=1, max_length=100, description="Username")
    code: str = Field(..., pattern=r"^\d{6}$", description="6-digit code")


class AuthResponse(WireModel):
    """Outcome of a verification or delivery request."""

    success: bool = Field(..., description="Whether the operation succeeded")
    token: Optional[str] = Field(None, description="Opaque success token")
    message: str = Field(..., description="Human-readable outcome")

