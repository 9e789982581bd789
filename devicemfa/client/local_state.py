"""Persisted enrollment state of this device."""

import logging
import os
import uuid
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from devicemfa.client.keystore import KeyTag
from devicemfa.core.clock import utcnow

logger = logging.getLogger(__name__)


class LocalAuthMethod(str, Enum):
    """How this device authenticates, as last enrolled."""

    BIOMETRIC = "biometric"
    PASSCODE = "passcode"
    OUT_OF_BAND = "out_of_band"


class EnrollmentRecord(BaseModel):
    device_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    username: Optional[str] = None
    method: Optional[LocalAuthMethod] = None
    key_tag: Optional[KeyTag] = None
    address: Optional[str] = None
    enrolled_at: Optional[datetime] = None

    @property
    def is_enrolled(self) -> bool:
        return self.username is not None and self.method is not None

    @property
    def uses_key(self) -> bool:
        return self.method in (LocalAuthMethod.BIOMETRIC, LocalAuthMethod.PASSCODE)


class LocalEnrollmentState:
    """
    Explicit holder of the device's enrollment record.

    The device id is generated once and survives :meth:`clear`; only
    :meth:`clear_all` forgets it. Without a ``path`` the state is kept in
    memory.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path).expanduser() if path else None
        self._record: Optional[EnrollmentRecord] = None

    @property
    def record(self) -> EnrollmentRecord:
        if self._record is None:
            self.load()
        return self._record

    def load(self) -> EnrollmentRecord:
        """Read the record from disk, creating (and saving) a new one if absent."""
        if self.path is not None and self.path.exists():
            try:
                self._record = EnrollmentRecord.model_validate_json(self.path.read_text())
                return self._record
            except PydanticValidationError as e:
                logger.warning(f"Discarding unreadable enrollment state {self.path}: {e}")

        self._record = EnrollmentRecord()
        self.save()
        return self._record

    def save(self, record: Optional[EnrollmentRecord] = None) -> None:
        if record is not None:
            self._record = record
        if self.path is None or self._record is None:
            return

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(self._record.model_dump_json(indent=2))
        os.replace(tmp, self.path)

    def mark_enrolled(
        self,
        username: str,
        method: LocalAuthMethod,
        key_tag: Optional[KeyTag] = None,
        address: Optional[str] = None,
    ) -> EnrollmentRecord:
        record = self.record.model_copy(update={
            "username": username,
            "method": method,
            "key_tag": key_tag,
            "address": address or self.record.address,
            "enrolled_at": utcnow(),
        })
        self.save(record)
        return record

    def clear(self) -> None:
        """Forget the enrollment but keep the device id."""
        self.save(EnrollmentRecord(device_id=self.record.device_id))

    def clear_all(self) -> None:
        """Forget everything, including the device id."""
        if self.path is not None:
            self.path.unlink(missing_ok=True)
        self._record = None
