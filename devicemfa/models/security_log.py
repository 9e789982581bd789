"""Security log model for the enrollment and authentication audit trail."""

import uuid
from enum import Enum
from typing import Dict, Optional

from sqlalchemy import JSON, Column, DateTime, String, Text

from devicemfa.core.clock import utcnow
from devicemfa.database import Base


class SecurityEventType(str, Enum):
    """Types of security events to log."""

    # Enrollment events
    DEVICE_ENROLLED = "device_enrolled"
    DEVICE_UPDATED = "device_updated"
    DEVICE_UNENROLLED = "device_unenrolled"
    METHOD_UPGRADED = "method_upgraded"
    METHOD_DOWNGRADED = "method_downgraded"
    USER_CREATED = "user_created"

    # Asymmetric-key authentication
    CHALLENGE_ISSUED = "challenge_issued"
    SIGNATURE_VERIFIED = "signature_verified"
    SIGNATURE_REJECTED = "signature_rejected"

    # Out-of-band codes
    CODE_ISSUED = "code_issued"
    CODE_VERIFIED = "code_verified"
    CODE_REJECTED = "code_rejected"

    # Replay of a consumed credential
    REPLAY_ATTEMPT = "replay_attempt"


class SecurityLog(Base):
    """
    Security log entry.

    Entries never carry secrets: no nonces, codes, signatures or tokens.
    """

    __tablename__ = "security_logs"

    id = Column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        doc="Unique log entry identifier"
    )

    event_type = Column(
        String(50),
        nullable=False,
        index=True,
        doc="Type of security event"
    )

    event_description = Column(
        Text,
        nullable=False,
        doc="Human-readable description of the event"
    )

    username = Column(
        String(100),
        nullable=True,
        index=True,
        doc="Username involved (if known)"
    )

    device_id = Column(
        String(128),
        nullable=True,
        index=True,
        doc="Device involved (if known)"
    )

    event_metadata = Column(
        JSON,
        nullable=True,
        doc="Additional event metadata (JSON)"
    )

    risk_level = Column(
        String(20),
        nullable=False,
        default="low",
        doc="Risk level: low, medium, high"
    )

    created_at = Column(
        DateTime,
        default=utcnow,
        nullable=False,
        index=True,
        doc="Event timestamp (UTC)"
    )

    def __repr__(self) -> str:
        """String representation of security log."""
        return f"<SecurityLog(id={self.id}, event_type='{self.event_type}')>"

    @classmethod
    def create_log(
        cls,
        event_type: SecurityEventType,
        description: str,
        username: Optional[str] = None,
        device_id: Optional[str] = None,
        metadata: Optional[Dict] = None,
        risk_level: str = "low",
    ) -> "SecurityLog":
        """
        Create a new security log entry.

        Args:
            event_type: Type of security event
            description: Detailed description
            username: Username (if applicable)
            device_id: Device identifier (if applicable)
            metadata: Additional metadata
            risk_level: Risk level assessment

        Returns:
            SecurityLog: New log entry instance
        """
        return cls(
            event_type=event_type.value,
            event_description=description,
            username=username,
            device_id=device_id,
            event_metadata=metadata or {},
            risk_level=risk_level,
        )

    def is_high_risk(self) -> bool:
        """Check if this is a high-risk event."""
        return self.risk_level == "high"
