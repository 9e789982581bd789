"""Pydantic schemas for API request/response models."""

from devicemfa.schemas.auth import *
from devicemfa.schemas.device import *
from devicemfa.schemas.enrollment import *

__all__ = [
    # Enrollment schemas
    "EnrollmentRequest",
    "DeviceRequest",
    "UpgradeRequest",
    "EnrollmentResponse",

    # Authentication schemas
    "AuthInitiateRequest",
    "ChallengeResponse",
    "VerifySignatureRequest",
    "CodeRequest",
    "VerifyCodeRequest",
    "AuthResponse",

    # Device schemas
    "DeviceStatusResponse",
]
