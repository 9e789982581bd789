"""Device enrollment endpoints."""

from typing import Any

from fastapi import APIRouter, Depends

from devicemfa.api.deps import get_authority
from devicemfa.schemas.enrollment import (
    DeviceRequest,
    EnrollmentRequest,
    EnrollmentResponse,
    UpgradeRequest,
)
from devicemfa.services.credential_authority import CredentialAuthority

router = APIRouter()


@router.post("/enroll", response_model=EnrollmentResponse)
async def enroll_device(
    request: EnrollmentRequest,
    authority: CredentialAuthority = Depends(get_authority),
) -> Any:
    """
    Enroll a device for MFA.

    Enrolling an already-known device ID replaces its method, key and
    address instead of creating a second record.
    """
    device = await authority.enroll(
        username=request.username,
        device_id=request.device_id,
        method=request.method,
        public_key=request.public_key,
        address=request.address,
        device_model=request.device_model,
    )
    return EnrollmentResponse(
        success=True,
        device_id=device.device_id,
        method=device.auth_method,
        message="Device enrolled successfully",
    )


@router.post("/unenroll", response_model=EnrollmentResponse)
async def unenroll_device(
    request: DeviceRequest,
    authority: CredentialAuthority = Depends(get_authority),
) -> Any:
    """Remove a device record entirely."""
    await authority.unenroll(request.username, request.device_id)
    return EnrollmentResponse(
        success=True,
        device_id=request.device_id,
        message="Device unenrolled successfully",
    )


@router.post("/upgrade", response_model=EnrollmentResponse)
async def upgrade_device(
    request: UpgradeRequest,
    authority: CredentialAuthority = Depends(get_authority),
) -> Any:
    """Switch a device to the asymmetric-key method with a new public key."""
    device = await authority.upgrade(request.username, request.device_id, request.public_key)
    return EnrollmentResponse(
        success=True,
        device_id=device.device_id,
        method=device.auth_method,
        message="Upgraded to asymmetric key",
    )


@router.post("/downgrade", response_model=EnrollmentResponse)
async def downgrade_device(
    request: DeviceRequest,
    authority: CredentialAuthority = Depends(get_authority),
) -> Any:
    """Switch a device to out-of-band codes; its public key is discarded."""
    device = await authority.downgrade(request.username, request.device_id)
    return EnrollmentResponse(
        success=True,
        device_id=device.device_id,
        method=device.auth_method,
        message="Downgraded to out-of-band codes",
    )
