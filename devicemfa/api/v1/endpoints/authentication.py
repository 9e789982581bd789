"""Authentication endpoints: signature challenges and out-of-band codes."""

import base64
from typing import Any

from fastapi import APIRouter, Depends

from devicemfa.api.deps import get_authority
from devicemfa.schemas.auth import (
    AuthInitiateRequest,
    AuthResponse,
    ChallengeResponse,
    CodeRequest,
    VerifyCodeRequest,
    VerifySignatureRequest,
)
from devicemfa.services.credential_authority import CredentialAuthority, IssuedChallenge
from devicemfa.services.delivery import mask_address

router = APIRouter()


@router.post("/initiate", response_model=ChallengeResponse, response_model_exclude_none=True)
async def initiate_authentication(
    request: AuthInitiateRequest,
    authority: CredentialAuthority = Depends(get_authority),
) -> Any:
    """
    Start authentication for a device.

    Asymmetric-key devices receive a fresh nonce to sign. Devices on
    out-of-band codes receive only ``method`` and should continue with
    ``/auth/request-otp``.
    """
    grant = await authority.initiate_challenge(request.username, request.device_id)

    if isinstance(grant, IssuedChallenge):
        return ChallengeResponse(
            method=grant.method,
            challenge=base64.b64encode(grant.nonce).decode(),
            challenge_id=grant.challenge_id,
            expires_in=grant.expires_in,
        )
    return ChallengeResponse(method=grant.method, expires_in=grant.expires_in)


@router.post("/verify-signature", response_model=AuthResponse)
async def verify_signature(
    request: VerifySignatureRequest,
    authority: CredentialAuthority = Depends(get_authority),
) -> Any:
    """Verify a signature over an issued nonce; the challenge is consumed on success."""
    result = await authority.verify_signature(
        challenge_id=request.challenge_id,
        username=request.username,
        device_id=request.device_id,
        signature=request.signature,
    )
    return AuthResponse(success=True, token=result.token, message="Authentication successful")


@router.post("/request-otp", response_model=AuthResponse)
async def request_code(
    request: CodeRequest,
    authority: CredentialAuthority = Depends(get_authority),
) -> Any:
    """Deliver a one-time code to the given address."""
    await authority.request_code(request.username, request.address)
    return AuthResponse(success=True, message=f"Code sent to {mask_address(request.address)}")


@router.post("/verify-otp", response_model=AuthResponse)
async def verify_code(
    request: VerifyCodeRequest,
    authority: CredentialAuthority = Depends(get_authority),
) -> Any:
    """Verify a user-entered code; the code is consumed on success."""
    result = await authority.verify_code(request.username, request.code)
    return AuthResponse(success=True, token=result.token, message="Authentication successful")
