"""Device model: one physical client registration and its active method."""

from enum import Enum
from typing import Optional

from sqlalchemy import Column, DateTime, ForeignKey, LargeBinary, String
from sqlalchemy.orm import relationship

from devicemfa.core.clock import utcnow
from devicemfa.database import Base


class AuthMethod(str, Enum):
    """Authentication method a device currently uses."""

    ASYMMETRIC_KEY = "ASYMMETRIC_KEY"
    OUT_OF_BAND_CODE = "OUT_OF_BAND_CODE"


class Device(Base):
    """
    Enrolled device.

    Exactly one method is active at a time. ``public_key`` is present iff
    ``method`` is ``ASYMMETRIC_KEY``; use :meth:`use_key` and
    :meth:`use_out_of_band` so both change together.
    """

    __tablename__ = "devices"

    device_id = Column(
        String(128),
        primary_key=True,
        doc="Stable, client-generated device identifier"
    )

    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        doc="Owning user"
    )

    device_model = Column(
        String(100),
        nullable=False,
        default="Unknown",
        doc="Free-form device model reported at enrollment"
    )

    method = Column(
        String(32),
        nullable=False,
        doc="Active authentication method"
    )

    public_key = Column(
        LargeBinary,
        nullable=True,
        doc="SubjectPublicKeyInfo DER, only for ASYMMETRIC_KEY"
    )

    address = Column(
        String(32),
        nullable=True,
        doc="Out-of-band delivery address (phone number)"
    )

    enrolled_at = Column(
        DateTime,
        default=utcnow,
        nullable=False,
        doc="Enrollment timestamp (UTC)"
    )

    last_used_at = Column(
        DateTime,
        nullable=True,
        doc="Last successful authentication (UTC)"
    )

    user = relationship("User", back_populates="devices", lazy="joined")

    def __repr__(self) -> str:
        """String representation of device."""
        return f"<Device(device_id={self.device_id}, method='{self.method}')>"

    @property
    def auth_method(self) -> AuthMethod:
        return AuthMethod(self.method)

    @property
    def has_key(self) -> bool:
        return self.public_key is not None

    def use_key(self, public_key: bytes) -> None:
        """Switch to the asymmetric method with a new authoritative key."""
        self.method = AuthMethod.ASYMMETRIC_KEY.value
        self.public_key = public_key

    def use_out_of_band(self, address: Optional[str] = None) -> None:
        """Switch to out-of-band codes; the stored key stops being authoritative."""
        self.method = AuthMethod.OUT_OF_BAND_CODE.value
        self.public_key = None
        if address:
            self.address = address
