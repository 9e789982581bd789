"""Database models for device enrollment and single-use credentials."""

from devicemfa.models.challenge import Challenge
from devicemfa.models.device import AuthMethod, Device
from devicemfa.models.one_time_code import OneTimeCode
from devicemfa.models.security_log import SecurityEventType, SecurityLog
from devicemfa.models.user import User

__all__ = [
    "AuthMethod",
    "Challenge",
    "Device",
    "OneTimeCode",
    "SecurityEventType",
    "SecurityLog",
    "User",
]
