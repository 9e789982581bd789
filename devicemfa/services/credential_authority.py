"""
Credential authority: device enrollment and single-use credential lifecycle.

The authority is the only component allowed to decide whether a device has
proven its identity. Challenges and one-time codes are consumed with a
single conditional ``UPDATE ... WHERE used = false AND expires_at > now``
whose row count decides the winner, so two concurrent verifications of the
same credential can never both succeed.
"""

import base64
import binascii
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Union

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from devicemfa.config import settings
from devicemfa.core.clock import Clock, utcnow
from devicemfa.core.exceptions import (
    AlreadyUsed,
    Expired,
    InvalidSignature,
    NotFound,
    ValidationError,
)
from devicemfa.models.challenge import Challenge
from devicemfa.models.device import AuthMethod, Device
from devicemfa.models.one_time_code import OneTimeCode
from devicemfa.models.security_log import SecurityEventType, SecurityLog
from devicemfa.models.user import User
from devicemfa.security.tokens import issue_success_token
from devicemfa.services.crypto_service import CryptoService
from devicemfa.services.delivery import (
    CodeDelivery,
    LoggingCodeDelivery,
    is_valid_address,
    mask_address,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedChallenge:
    """A persisted challenge, as handed to the device."""

    challenge_id: str
    nonce: bytes
    expires_in: int

    @property
    def method(self) -> AuthMethod:
        return AuthMethod.ASYMMETRIC_KEY


@dataclass(frozen=True)
class OutOfBandRedirect:
    """The device uses out-of-band codes; no challenge was created."""

    expires_in: int

    @property
    def method(self) -> AuthMethod:
        return AuthMethod.OUT_OF_BAND_CODE


@dataclass(frozen=True)
class VerificationResult:
    """Successful verification and the token issued for it."""

    token: str
    username: str
    method: AuthMethod
    device_id: Optional[str] = None


def _decode_b64(value: str, field: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError(f"Invalid base64 encoding for {field}")


class CredentialAuthority:
    """Service class for enrollment and verification operations."""

    def __init__(
        self,
        db: AsyncSession,
        delivery: Optional[CodeDelivery] = None,
        crypto: Optional[CryptoService] = None,
        clock: Clock = utcnow,
        challenge_ttl_seconds: Optional[int] = None,
        code_ttl_seconds: Optional[int] = None,
        restrict_code_addresses: Optional[bool] = None,
    ):
        """
        Initialize the authority with a database session.

        Args:
            db: Database session
            delivery: Sink for out-of-band codes
            crypto: Crypto primitives
            clock: Source of the current UTC time
            challenge_ttl_seconds: Challenge lifetime (defaults to settings)
            code_ttl_seconds: Code lifetime (defaults to settings)
            restrict_code_addresses: Only deliver codes to addresses
                registered for the username (defaults to settings)
        """
        self.db = db
        self.delivery = delivery or LoggingCodeDelivery()
        self.crypto = crypto or CryptoService()
        self.clock = clock
        self.challenge_ttl = settings.challenge_ttl_seconds if challenge_ttl_seconds is None else challenge_ttl_seconds
        self.code_ttl = settings.code_ttl_seconds if code_ttl_seconds is None else code_ttl_seconds
        if restrict_code_addresses is None:
            restrict_code_addresses = settings.restrict_code_addresses
        self.restrict_code_addresses = restrict_code_addresses

    # ------------------------------------------------------------------
    # Enrollment
    # ------------------------------------------------------------------

    async def enroll(
        self,
        username: str,
        device_id: str,
        method: AuthMethod,
        public_key: Optional[str] = None,
        address: Optional[str] = None,
        device_model: Optional[str] = None,
    ) -> Device:
        """
        Enroll a device, or overwrite the active record of an existing one.

        Args:
            username: Owning username (created if absent)
            device_id: Client-generated device identifier
            method: Method to activate
            public_key: Base64 public key, required for ASYMMETRIC_KEY
            address: Delivery address for out-of-band codes
            device_model: Optional device description

        Returns:
            Device: The enrolled device

        Raises:
            ValidationError: Missing key, bad encoding, bad address, or the
                device is registered to another user
        """
        key_bytes = None
        if method == AuthMethod.ASYMMETRIC_KEY:
            if not public_key:
                raise ValidationError("Public key is required for ASYMMETRIC_KEY method")
            key_bytes = self._parse_public_key(public_key)

        if address is not None and not is_valid_address(address):
            raise ValidationError("Address must be a phone number like +15551234567")

        user = await self._get_or_create_user(username)
        device = await self.db.get(Device, device_id)

        if device is not None and device.user_id != user.id:
            raise ValidationError("Device is registered to another user")

        if method == AuthMethod.OUT_OF_BAND_CODE and not (address or (device and device.address)):
            raise ValidationError("Address is required for OUT_OF_BAND_CODE method")

        if device is None:
            device = Device(
                device_id=device_id,
                user_id=user.id,
                device_model=device_model or "Unknown",
                enrolled_at=self.clock(),
            )
            self.db.add(device)
            event = SecurityEventType.DEVICE_ENROLLED
            description = f"Device enrolled: {device_id} ({method.value})"
        else:
            if device_model:
                device.device_model = device_model
            event = SecurityEventType.DEVICE_UPDATED
            description = f"Device record replaced: {device_id} ({method.value})"

        if address:
            device.address = address
        if method == AuthMethod.ASYMMETRIC_KEY:
            device.use_key(key_bytes)
        else:
            device.use_out_of_band()

        self._audit(
            event,
            description,
            username=username,
            device_id=device_id,
            metadata={"method": method.value},
        )
        await self.db.commit()
        await self.db.refresh(device)

        logger.info(f"Enrollment for user {username}, device {device_id}: {method.value}")
        return device

    async def upgrade(self, username: str, device_id: str, public_key: str) -> Device:
        """
        Switch a device to the asymmetric-key method.

        Raises:
            NotFound: Device not enrolled for this username
            ValidationError: Missing or unusable public key
        """
        if not public_key:
            raise ValidationError("Public key is required for upgrade")
        key_bytes = self._parse_public_key(public_key)

        device = await self._get_owned_device(username, device_id)
        device.use_key(key_bytes)

        self._audit(
            SecurityEventType.METHOD_UPGRADED,
            f"Device upgraded to asymmetric key: {device_id}",
            username=username,
            device_id=device_id,
        )
        await self.db.commit()
        await self.db.refresh(device)

        logger.info(f"Device upgraded to asymmetric key: {device_id}")
        return device

    async def downgrade(self, username: str, device_id: str) -> Device:
        """
        Switch a device to out-of-band codes and drop its public key.

        Raises:
            NotFound: Device not enrolled for this username
        """
        device = await self._get_owned_device(username, device_id)
        device.use_out_of_band()

        self._audit(
            SecurityEventType.METHOD_DOWNGRADED,
            f"Device downgraded to out-of-band codes: {device_id}",
            username=username,
            device_id=device_id,
        )
        await self.db.commit()
        await self.db.refresh(device)

        logger.info(f"Device downgraded to out-of-band codes: {device_id}")
        return device

    async def unenroll(self, username: str, device_id: str) -> None:
        """
        Delete a device record.

        Raises:
            NotFound: Device not enrolled for this username
        """
        device = await self._get_owned_device(username, device_id)
        await self.db.delete(device)

        self._audit(
            SecurityEventType.DEVICE_UNENROLLED,
            f"Device unenrolled: {device_id}",
            username=username,
            device_id=device_id,
        )
        await self.db.commit()

        logger.info(f"Device unenrolled: {device_id}")

    # ------------------------------------------------------------------
    # Asymmetric-key authentication
    # ------------------------------------------------------------------

    async def initiate_challenge(
        self, username: str, device_id: str
    ) -> Union[IssuedChallenge, OutOfBandRedirect]:
        """
        Start an authentication attempt for a device.

        Returns:
            IssuedChallenge for asymmetric-key devices, OutOfBandRedirect
            for out-of-band devices (nothing is persisted in that case)

        Raises:
            NotFound: Device not enrolled for this username
        """
        device = await self._get_owned_device(username, device_id)

        if device.auth_method == AuthMethod.OUT_OF_BAND_CODE:
            logger.info(f"Device {device_id} uses out-of-band codes, no challenge issued")
            return OutOfBandRedirect(expires_in=self.code_ttl)

        if not device.has_key:
            raise NotFound("Device has no public key on record")

        challenge = Challenge.issue(
            username=username,
            device_id=device_id,
            nonce=self.crypto.generate_nonce(),
            now=self.clock(),
            ttl_seconds=self.challenge_ttl,
        )
        self.db.add(challenge)

        self._audit(
            SecurityEventType.CHALLENGE_ISSUED,
            f"Challenge issued for device {device_id}",
            username=username,
            device_id=device_id,
            metadata={"challenge_id": challenge.id},
        )
        await self.db.commit()

        logger.info(f"Challenge generated: {challenge.id}")
        return IssuedChallenge(
            challenge_id=challenge.id,
            nonce=challenge.nonce,
            expires_in=self.challenge_ttl,
        )

    async def verify_signature(
        self,
        challenge_id: str,
        username: str,
        device_id: str,
        signature: str,
    ) -> VerificationResult:
        """
        Verify a signature over a challenge nonce and consume the challenge.

        Checks run before any state change, in this order: challenge exists,
        not expired, not used, device key exists, signature valid. A bad
        signature leaves the challenge usable until it expires.

        Raises:
            ValidationError: Signature is not valid base64
            NotFound: Challenge or device key absent
            Expired: Challenge past its expiry
            AlreadyUsed: Challenge already consumed
            InvalidSignature: Signature does not verify
        """
        signature_bytes = _decode_b64(signature, "signature")
        now = self.clock()

        stmt = select(Challenge).where(
            Challenge.id == challenge_id,
            Challenge.username == username,
            Challenge.device_id == device_id,
        ).execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        challenge = result.scalar_one_or_none()

        if challenge is None:
            logger.warning(f"Challenge not found: {challenge_id}")
            raise NotFound("Challenge not found")

        await self._check_usable(challenge, now, "Challenge", username, device_id)

        device = await self._find_device(username, device_id)
        if device is None or not device.has_key:
            logger.warning(f"Device not found or no public key: {device_id}")
            raise NotFound("Device not found or not enrolled")

        if not self.crypto.verify_signature(device.public_key, challenge.nonce, signature_bytes):
            logger.warning(f"Invalid signature for device: {device_id}")
            self._audit(
                SecurityEventType.SIGNATURE_REJECTED,
                f"Invalid signature for device {device_id}",
                username=username,
                device_id=device_id,
                metadata={"challenge_id": challenge_id},
                risk_level="medium",
            )
            await self.db.commit()
            raise InvalidSignature("Invalid signature")

        if not await self._consume(Challenge, challenge.id, now):
            await self.db.refresh(challenge)
            await self._check_usable(challenge, now, "Challenge", username, device_id)
            raise AlreadyUsed("Challenge already used")

        device.last_used_at = now
        self._audit(
            SecurityEventType.SIGNATURE_VERIFIED,
            f"Signature verified for device {device_id}",
            username=username,
            device_id=device_id,
            metadata={"challenge_id": challenge_id},
        )
        await self.db.commit()

        logger.info(f"Authentication successful for device: {device_id}")
        return VerificationResult(
            token=issue_success_token(username, device_id, AuthMethod.ASYMMETRIC_KEY.value),
            username=username,
            method=AuthMethod.ASYMMETRIC_KEY,
            device_id=device_id,
        )

    # ------------------------------------------------------------------
    # Out-of-band codes
    # ------------------------------------------------------------------

    async def request_code(self, username: str, address: str) -> OneTimeCode:
        """
        Issue a one-time code and hand it to the delivery sink.

        Raises:
            ValidationError: Malformed address
            NotFound: Address not registered for this username (when
                addresses are restricted)
        """
        if not is_valid_address(address):
            raise ValidationError("Valid phone number is required")

        if self.restrict_code_addresses:
            stmt = select(Device.device_id).join(User).where(
                User.username == username,
                Device.address == address,
            )
            result = await self.db.execute(stmt)
            if result.first() is None:
                logger.warning(f"Code requested for unregistered address {mask_address(address)}")
                raise NotFound("No device registered with this address")

        otp = OneTimeCode.issue(
            username=username,
            address=address,
            code=self.crypto.generate_code(),
            now=self.clock(),
            ttl_seconds=self.code_ttl,
        )
        self.db.add(otp)
        self._audit(
            SecurityEventType.CODE_ISSUED,
            f"One-time code issued to {mask_address(address)}",
            username=username,
        )
        await self.db.commit()

        await self.delivery.deliver(address, otp.code)
        logger.info(f"One-time code sent for user {username} to {mask_address(address)}")
        return otp

    async def verify_code(self, username: str, code: str) -> VerificationResult:
        """
        Verify and consume the newest matching unused, unexpired code.

        A mismatched code consumes nothing.

        Raises:
            ValidationError: Code is not six digits
            NotFound: No such code for this username, or a stale code
                while another code is still outstanding
            Expired: The matching code is past its expiry
            AlreadyUsed: The matching code was already consumed
        """
        if not code or len(code) != 6 or not code.isdigit():
            raise ValidationError("Code must be 6 digits")
        now = self.clock()

        stmt = (
            select(OneTimeCode)
            .where(
                OneTimeCode.username == username,
                OneTimeCode.code == code,
            )
            .order_by(OneTimeCode.created_at.desc(), OneTimeCode.id.desc())
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        candidates = list(result.scalars().all())

        live = [c for c in candidates if not c.used and not c.is_expired(now)]
        if not live:
            self._audit(
                SecurityEventType.CODE_REJECTED,
                "Invalid, expired or used one-time code",
                username=username,
                risk_level="medium",
            )
            await self.db.commit()
            if not candidates or await self._has_live_code(username, now):
                # A stale code typed while a newer one is outstanding is a plain mismatch
                logger.warning(f"Code not found for user: {username}")
                raise NotFound("Invalid code")
            if any(not c.used for c in candidates):
                raise Expired("Code expired")
            raise AlreadyUsed("Code already used")

        otp = live[0]
        if not await self._consume(OneTimeCode, otp.id, now):
            await self.db.refresh(otp)
            await self._check_usable(otp, now, "Code", username, None)
            raise AlreadyUsed("Code already used")

        self._audit(
            SecurityEventType.CODE_VERIFIED,
            "One-time code verified",
            username=username,
        )
        await self.db.commit()

        logger.info(f"Code verification successful for user: {username}")
        return VerificationResult(
            token=issue_success_token(username, None, AuthMethod.OUT_OF_BAND_CODE.value),
            username=username,
            method=AuthMethod.OUT_OF_BAND_CODE,
        )

    # ------------------------------------------------------------------
    # Queries and maintenance
    # ------------------------------------------------------------------

    async def device_status(self, device_id: str) -> Optional[Device]:
        """Get a device by ID, or None if not enrolled."""
        return await self.db.get(Device, device_id)

    async def list_user_devices(self, username: str) -> List[Device]:
        """Get all devices enrolled for a username."""
        stmt = (
            select(Device)
            .join(User)
            .where(User.username == username)
            .order_by(Device.enrolled_at)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().unique().all())

    async def purge_expired(self, before: Optional[datetime] = None) -> Dict[str, int]:
        """
        Delete challenges and codes that expired before ``before``.

        Correctness never depends on this: expiry is enforced at
        verification time whether or not stale rows exist.
        """
        cutoff = before or self.clock()
        challenges = await self.db.execute(
            delete(Challenge).where(Challenge.expires_at <= cutoff)
        )
        codes = await self.db.execute(
            delete(OneTimeCode).where(OneTimeCode.expires_at <= cutoff)
        )
        await self.db.commit()

        counts = {"challenges": challenges.rowcount or 0, "codes": codes.rowcount or 0}
        if counts["challenges"] or counts["codes"]:
            logger.info(f"Purged expired credentials: {counts}")
        return counts

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _consume(self, model, record_id, now: datetime) -> bool:
        """Atomically flip ``used`` if still unused and unexpired."""
        stmt = (
            update(model)
            .where(
                model.id == record_id,
                model.used.is_(False),
                model.expires_at > now,
            )
            .values(used=True)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def _has_live_code(self, username: str, now: datetime) -> bool:
        stmt = (
            select(OneTimeCode.id)
            .where(
                OneTimeCode.username == username,
                OneTimeCode.used.is_(False),
                OneTimeCode.expires_at > now,
            )
            .limit(1)
        )
        return (await self.db.execute(stmt)).first() is not None

    async def _check_usable(
        self, record, now: datetime, label: str, username: str, device_id: Optional[str]
    ) -> None:
        if record.is_expired(now):
            logger.warning(f"{label} expired: {record.id}")
            raise Expired(f"{label} expired")
        if record.used:
            logger.warning(f"{label} already used: {record.id}")
            self._audit(
                SecurityEventType.REPLAY_ATTEMPT,
                f"{label} replayed: {record.id}",
                username=username,
                device_id=device_id,
                risk_level="high",
            )
            await self.db.commit()
            raise AlreadyUsed(f"{label} already used")

    def _parse_public_key(self, public_key: str) -> bytes:
        key_bytes = _decode_b64(public_key, "public key")
        try:
            return self.crypto.normalize_public_key(key_bytes)
        except ValueError as e:
            raise ValidationError(f"Unsupported public key: {e}")

    async def _get_or_create_user(self, username: str) -> User:
        result = await self.db.execute(select(User).where(User.username == username))
        user = result.scalar_one_or_none()
        if user is not None:
            return user

        user = User(username=username, created_at=self.clock())
        self.db.add(user)
        await self.db.flush()
        self._audit(
            SecurityEventType.USER_CREATED,
            f"User created: {username}",
            username=username,
        )
        return user

    async def _find_device(self, username: str, device_id: str) -> Optional[Device]:
        stmt = select(Device).join(User).where(
            Device.device_id == device_id,
            User.username == username,
        )
        result = await self.db.execute(stmt)
        return result.scalars().unique().one_or_none()

    async def _get_owned_device(self, username: str, device_id: str) -> Device:
        device = await self._find_device(username, device_id)
        if device is None:
            raise NotFound("Device not found")
        return device

    def _audit(
        self,
        event_type: SecurityEventType,
        description: str,
        username: Optional[str] = None,
        device_id: Optional[str] = None,
        metadata: Optional[Dict] = None,
        risk_level: str = "low",
    ) -> None:
        self.db.add(
            SecurityLog.create_log(
                event_type=event_type,
                description=description,
                username=username,
                device_id=device_id,
                metadata=metadata,
                risk_level=risk_level,
            )
        )
