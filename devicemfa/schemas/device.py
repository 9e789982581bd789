"""Device status schemas."""

from datetime import datetime
from typing import Optional

from pydantic import Field

from devicemfa.models.device import AuthMethod
from devicemfa.schemas.base import WireModel


class DeviceStatusResponse(WireModel):
    """Enrollment status of a single device."""

    device_id: str = Field(..., description="Device ID")
    enrolled: bool = Field(..., description="Whether the device is enrolled")
    method: Optional[AuthMethod] = Field(None, description="Active method")
    has_key: bool = Field(False, description="Whether a public key is on record")
    address: Optional[str] = Field(None, description="Delivery address on record")
    enrolled_at: Optional[datetime] = Field(None, description="Enrollment time (UTC)")
    last_used_at: Optional[datetime] = Field(None, description="Last successful authentication (UTC)")
