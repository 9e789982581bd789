"""One-time code model for out-of-band authentication attempts."""

from datetime import datetime, timedelta

from sqlalchemy import Boolean, Column, DateTime, Integer, String

from devicemfa.core.clock import utcnow
from devicemfa.database import Base


class OneTimeCode(Base):
    """A 6-digit code delivered to an address; same single-use rule as Challenge."""

    __tablename__ = "one_time_codes"

    id = Column(Integer, primary_key=True, autoincrement=True)

    username = Column(String(100), nullable=False, index=True)

    address = Column(String(32), nullable=False)

    code = Column(String(6), nullable=False)

    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    expires_at = Column(DateTime, nullable=False, index=True)

    used = Column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        """String representation of code (never includes the code itself)."""
        return f"<OneTimeCode(id={self.id}, username='{self.username}')>"

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    @classmethod
    def issue(
        cls,
        username: str,
        address: str,
        code: str,
        now: datetime,
        ttl_seconds: int = 300,
    ) -> "OneTimeCode":
        return cls(
            username=username,
            address=address,
            code=code,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            used=False,
        )
