"""User model: an identity owning zero or more enrolled devices."""

import uuid

from sqlalchemy import Column, DateTime, String
from sqlalchemy.orm import relationship

from devicemfa.core.clock import utcnow
from devicemfa.database import Base


class User(Base):
    """
    User model.

    Created on first enrollment of any device for a username. Only the
    device list grows afterwards; deleting users is not handled here.
    """

    __tablename__ = "users"

    id = Column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        doc="Unique user identifier"
    )

    username = Column(
        String(100),
        unique=True,
        nullable=False,
        index=True,
        doc="Unique username"
    )

    created_at = Column(
        DateTime,
        default=utcnow,
        nullable=False,
        doc="Creation timestamp (UTC)"
    )

    devices = relationship(
        "Device",
        back_populates="user",
        cascade="all, delete-orphan",
        doc="Devices enrolled for this user"
    )

    def __repr__(self) -> str:
        """String representation of user."""
        return f"<User(id={self.id}, username='{self.username}')>"
