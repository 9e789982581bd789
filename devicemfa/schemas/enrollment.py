"""Enrollment-related Pydantic schemas."""

from typing import Optional

from pydantic import Field

from devicemfa.models.device import AuthMethod
from devicemfa.schemas.base import WireModel


class EnrollmentRequest(WireModel):
    """Schema for enrolling (or re-enrolling) a device."""

    username: str = Field(..., min_length=1, max_length=100, description="Username")
    device_id: str = Field(..., min_length=1, max_length=128, description="Client-generated device ID")
    method: AuthMethod = Field(..., description="Authentication method to activate")
    public_key: Optional[str] = Field(
        None, description="Public key (base64 SubjectPublicKeyInfo DER), required for ASYMMETRIC_KEY"
    )
    address: Optional[str] = Field(
        None, max_length=32, description="Out-of-band delivery address (phone number)"
    )
    device_model: Optional[str] = Field(None, max_length=100, description="Device model")


class DeviceRequest(WireModel):
    """Schema addressing an existing device (unenroll, downgrade)."""

    username: str = Field(..., min_length=1, max_length=100, description="Username")
    device_id: str = Field(..., min_length=1, max_length=128, description="Device ID")


class UpgradeRequest(DeviceRequest):
    """Schema for switching a device to the asymmetric-key method."""

    public_key: str = Field(..., min_length=1, description="Public key (base64)")


class EnrollmentResponse(WireModel):
    """Response for enrollment operations."""

    success: bool = Field(..., description="Whether the operation succeeded")
    device_id: Optional[str] = Field(None, description="Device ID")
    method: Optional[AuthMethod] = Field(None, description="Active method after the operation")
    message: str = Field(..., description="Human-readable outcome")
