"""Challenge model for asymmetric-key authentication attempts."""

import uuid
from datetime import datetime, timedelta

from sqlalchemy import Boolean, Column, DateTime, LargeBinary, String

from devicemfa.core.clock import utcnow
from devicemfa.database import Base


class Challenge(Base):
    """
    A single signature challenge.

    ``used`` flips from false to true at most once, and only before
    ``expires_at``. Stale rows are harmless: expiry is enforced by
    timestamp comparison at verification time.
    """

    __tablename__ = "challenges"

    id = Column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        doc="Unique challenge identifier"
    )

    username = Column(String(100), nullable=False, index=True)

    device_id = Column(String(128), nullable=False, index=True)

    nonce = Column(
        LargeBinary,
        nullable=False,
        doc="Random bytes the device must sign"
    )

    created_at = Column(DateTime, nullable=False, default=utcnow)

    expires_at = Column(DateTime, nullable=False, index=True)

    used = Column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        """String representation of challenge."""
        return f"<Challenge(id={self.id}, username='{self.username}', device_id='{self.device_id}')>"

    def is_expired(self, now: datetime) -> bool:
        """Check if challenge has expired."""
        return now >= self.expires_at

    @classmethod
    def issue(
        cls,
        username: str,
        device_id: str,
        nonce: bytes,
        now: datetime,
        ttl_seconds: int = 300,
    ) -> "Challenge":
        """
        Create a new unused challenge.

        Args:
            username: Owning username
            device_id: Owning device
            nonce: Random bytes to be signed
            now: Creation time (UTC)
            ttl_seconds: Lifetime in seconds

        Returns:
            Challenge: New challenge instance
        """
        return cls(
            id=str(uuid.uuid4()),
            username=username,
            device_id=device_id,
            nonce=nonce,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            used=False,
        )
