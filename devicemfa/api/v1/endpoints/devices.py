"""Device status endpoints."""

from typing import Any, List

from fastapi import APIRouter, Depends

from devicemfa.api.deps import get_authority
from devicemfa.models.device import Device
from devicemfa.schemas.device import DeviceStatusResponse
from devicemfa.services.credential_authority import CredentialAuthority

router = APIRouter()


def _status(device: Device) -> DeviceStatusResponse:
    return DeviceStatusResponse(
        device_id=device.device_id,
        enrolled=True,
        method=device.auth_method,
        has_key=device.has_key,
        address=device.address,
        enrolled_at=device.enrolled_at,
        last_used_at=device.last_used_at,
    )


@router.get("/device/{device_id}/status", response_model=DeviceStatusResponse)
async def get_device_status(
    device_id: str,
    authority: CredentialAuthority = Depends(get_authority),
) -> Any:
    """Get enrollment status of a device; unknown devices report ``enrolled: false``."""
    device = await authority.device_status(device_id)
    if device is None:
        return DeviceStatusResponse(device_id=device_id, enrolled=False)
    return _status(device)


@router.get("/devices/{username}", response_model=List[DeviceStatusResponse])
async def list_user_devices(
    username: str,
    authority: CredentialAuthority = Depends(get_authority),
) -> Any:
    """List all devices enrolled for a user."""
    devices = await authority.list_user_devices(username)
    return [_status(device) for device in devices]
