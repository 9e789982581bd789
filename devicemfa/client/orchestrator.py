"""
Enrollment and sign-in state machine.

Every step of a flow is an event fired against :data:`TRANSITIONS`, a
table keyed by ``(state, event)``. The biometric -> passcode ->
out-of-band cascade is therefore a set of table entries rather than a
chain of exception handlers, and an event the table does not list for the
current state raises :class:`~devicemfa.client.errors.InvalidTransition`.

Gate prompts run in a worker thread so they suspend only the calling
flow; one lock serializes all flows of an orchestrator.
"""

import asyncio
import base64
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

from devicemfa.client.capability import Capability, CapabilityClassifier
from devicemfa.client.errors import (
    GateFailure,
    InvalidTransition,
    KeyStoreError,
    NotEnrolled,
    ServerRejected,
)
from devicemfa.client.key_manager import KeyManager
from devicemfa.client.keystore import KeyHandle, KeyTag
from devicemfa.client.local_state import EnrollmentRecord, LocalAuthMethod, LocalEnrollmentState
from devicemfa.client.network import MFAApiClient
from devicemfa.models.device import AuthMethod

logger = logging.getLogger(__name__)


class FlowState(str, Enum):
    IDLE = "idle"
    CREATING_KEY = "creating_key"
    TESTING_KEY = "testing_key"
    REGISTERING = "registering"
    SUCCESS = "success"
    FAILED = "failed"
    OFFER_FALLBACK = "offer_fallback"
    REQUESTING_CHALLENGE = "requesting_challenge"
    SIGNING = "signing"
    VERIFYING = "verifying"
    REQUESTING_CODE = "requesting_code"
    AWAITING_CODE = "awaiting_code"


class FlowEvent(str, Enum):
    RESET = "reset"
    # enrollment
    BEGIN_ENROLL = "begin_enroll"
    NO_LOCAL_GATE = "no_local_gate"
    KEY_CREATED = "key_created"
    KEY_TESTED = "key_tested"
    BIOMETRIC_DECLINED = "biometric_declined"
    BIOMETRIC_UNAVAILABLE = "biometric_unavailable"
    FALLBACK_ACCEPTED = "fallback_accepted"
    FALLBACK_DECLINED = "fallback_declined"
    REGISTER_OUT_OF_BAND = "register_out_of_band"
    REGISTERED = "registered"
    # sign-in
    BEGIN_SIGN_IN = "begin_sign_in"
    CHALLENGE_RECEIVED = "challenge_received"
    OUT_OF_BAND_REQUIRED = "out_of_band_required"
    SIGNED = "signed"
    VERIFIED = "verified"
    BEGIN_CODE_REQUEST = "begin_code_request"
    CODE_SENT = "code_sent"
    CODE_MISMATCH = "code_mismatch"
    CODE_DEAD = "code_dead"
    # failures
    GATE_DECLINED = "gate_declined"
    GATE_FAILED = "gate_failed"
    NOT_ENROLLED = "not_enrolled"
    SERVER_REJECTED = "server_rejected"


class Fallback(str, Enum):
    """What an OFFER_FALLBACK state is offering."""

    PASSCODE = "passcode"
    OUT_OF_BAND = "out_of_band"


S, E = FlowState, FlowEvent

TRANSITIONS: Dict[Tuple[FlowState, FlowEvent], FlowState] = {
    # Enrollment
    (S.IDLE, E.BEGIN_ENROLL): S.CREATING_KEY,
    (S.IDLE, E.NO_LOCAL_GATE): S.OFFER_FALLBACK,
    (S.IDLE, E.REGISTER_OUT_OF_BAND): S.REGISTERING,
    (S.CREATING_KEY, E.KEY_CREATED): S.TESTING_KEY,
    (S.CREATING_KEY, E.BIOMETRIC_DECLINED): S.OFFER_FALLBACK,
    (S.CREATING_KEY, E.BIOMETRIC_UNAVAILABLE): S.CREATING_KEY,
    (S.CREATING_KEY, E.GATE_DECLINED): S.FAILED,
    (S.CREATING_KEY, E.GATE_FAILED): S.FAILED,
    (S.TESTING_KEY, E.KEY_TESTED): S.REGISTERING,
    (S.TESTING_KEY, E.BIOMETRIC_DECLINED): S.OFFER_FALLBACK,
    (S.TESTING_KEY, E.BIOMETRIC_UNAVAILABLE): S.CREATING_KEY,
    (S.TESTING_KEY, E.GATE_DECLINED): S.FAILED,
    (S.TESTING_KEY, E.GATE_FAILED): S.FAILED,
    (S.OFFER_FALLBACK, E.FALLBACK_ACCEPTED): S.CREATING_KEY,
    (S.OFFER_FALLBACK, E.FALLBACK_DECLINED): S.IDLE,
    (S.OFFER_FALLBACK, E.REGISTER_OUT_OF_BAND): S.REGISTERING,
    (S.REGISTERING, E.REGISTERED): S.SUCCESS,
    (S.REGISTERING, E.SERVER_REJECTED): S.FAILED,
    # Sign-in with a key
    (S.IDLE, E.BEGIN_SIGN_IN): S.REQUESTING_CHALLENGE,
    (S.REQUESTING_CHALLENGE, E.CHALLENGE_RECEIVED): S.SIGNING,
    (S.REQUESTING_CHALLENGE, E.OUT_OF_BAND_REQUIRED): S.REQUESTING_CODE,
    (S.REQUESTING_CHALLENGE, E.SERVER_REJECTED): S.FAILED,
    (S.SIGNING, E.SIGNED): S.VERIFYING,
    (S.SIGNING, E.GATE_DECLINED): S.IDLE,
    (S.SIGNING, E.GATE_FAILED): S.FAILED,
    (S.SIGNING, E.NOT_ENROLLED): S.FAILED,
    (S.VERIFYING, E.VERIFIED): S.SUCCESS,
    (S.VERIFYING, E.SERVER_REJECTED): S.FAILED,
    # Out-of-band codes
    (S.IDLE, E.BEGIN_CODE_REQUEST): S.REQUESTING_CODE,
    (S.AWAITING_CODE, E.BEGIN_CODE_REQUEST): S.REQUESTING_CODE,
    (S.REQUESTING_CODE, E.CODE_SENT): S.AWAITING_CODE,
    (S.REQUESTING_CODE, E.NOT_ENROLLED): S.FAILED,
    (S.REQUESTING_CODE, E.SERVER_REJECTED): S.FAILED,
    (S.AWAITING_CODE, E.VERIFIED): S.SUCCESS,
    (S.AWAITING_CODE, E.CODE_MISMATCH): S.AWAITING_CODE,
    (S.AWAITING_CODE, E.CODE_DEAD): S.FAILED,
}
TRANSITIONS.update({(state, E.RESET): S.IDLE for state in FlowState})

# Server verdicts that end an out-of-band attempt; others allow retrying the same code
DEAD_CODE_ERRORS = {"expired", "already_used"}


@dataclass
class FlowResult:
    """Where a flow stopped and why."""

    state: FlowState
    message: str = ""
    token: Optional[str] = None
    fallback: Optional[Fallback] = None
    failure: Optional[GateFailure] = None

    @property
    def succeeded(self) -> bool:
        return self.state == FlowState.SUCCESS


@dataclass
class _PendingEnrollment:
    username: str
    address: Optional[str]
    device_model: Optional[str]
    upgrade: bool = False


class AuthenticationOrchestrator:
    """Drives enrollment and sign-in for one device."""

    def __init__(
        self,
        api: MFAApiClient,
        keys: KeyManager,
        classifier: CapabilityClassifier,
        local_state: LocalEnrollmentState,
    ):
        self.api = api
        self.keys = keys
        self.classifier = classifier
        self.local_state = local_state
        self.state = FlowState.IDLE
        self.history: List[Tuple[FlowState, FlowEvent, FlowState]] = []
        self._lock = asyncio.Lock()
        self._pending: Optional[_PendingEnrollment] = None
        self._offer: Optional[Fallback] = None

    @property
    def device_id(self) -> str:
        return self.local_state.record.device_id

    def _fire(self, event: FlowEvent) -> FlowState:
        try:
            next_state = TRANSITIONS[(self.state, event)]
        except KeyError:
            raise InvalidTransition(f"Event {event.value} not allowed in state {self.state.value}")
        logger.debug(f"{self.state.value} --{event.value}--> {next_state.value}")
        self.history.append((self.state, event, next_state))
        self.state = next_state
        return next_state

    def _result(self, message: str = "", **kwargs) -> FlowResult:
        return FlowResult(state=self.state, message=message, **kwargs)

    def _reset(self) -> None:
        if self.state != FlowState.IDLE:
            self._fire(FlowEvent.RESET)
        self._pending = None
        self._offer = None

    def _require_enrolled(self) -> EnrollmentRecord:
        record = self.local_state.record
        if not record.is_enrolled:
            raise NotEnrolled("This device is not enrolled")
        return record

    # ------------------------------------------------------------------
    # Enrollment
    # ------------------------------------------------------------------

    async def enroll(self, username: str, address: Optional[str] = None, device_model: Optional[str] = None) -> FlowResult:
        """
        Enroll this device with the strongest local gate available.

        Returns:
            FlowResult: SUCCESS, FAILED, or OFFER_FALLBACK with the
            fallback on offer (PASSCODE after a declined biometric prompt,
            OUT_OF_BAND when the device has no local gate)
        """
        async with self._lock:
            self._reset()
            self._pending = _PendingEnrollment(username, address, device_model)
            return await self._start_key_enrollment()

    async def accept_passcode_fallback(self) -> FlowResult:
        """Continue a declined biometric enrollment with a passcode-only key."""
        async with self._lock:
            if self.state != FlowState.OFFER_FALLBACK or self._offer != Fallback.PASSCODE:
                raise InvalidTransition("No passcode fallback on offer")
            self._fire(FlowEvent.FALLBACK_ACCEPTED)
            self._offer = None
            return await self._enroll_with_key(KeyTag.PASSCODE_ONLY)

    async def decline_fallback(self) -> FlowResult:
        async with self._lock:
            self._fire(FlowEvent.FALLBACK_DECLINED)
            self._pending = None
            self._offer = None
            return self._result("Enrollment cancelled")

    async def enroll_out_of_band(self, username: str, address: str, device_model: Optional[str] = None) -> FlowResult:
        """Register this device for out-of-band codes only; no key is created."""
        async with self._lock:
            if self.state != FlowState.OFFER_FALLBACK:
                self._reset()
            self._fire(FlowEvent.REGISTER_OUT_OF_BAND)
            self._offer = None

            try:
                await self.api.enroll(
                    username,
                    self.device_id,
                    AuthMethod.OUT_OF_BAND_CODE,
                    address=address,
                    device_model=device_model,
                )
            except ServerRejected as e:
                self._fire(FlowEvent.SERVER_REJECTED)
                return self._result(e.message)

            await asyncio.to_thread(self.keys.delete_all)
            self.local_state.mark_enrolled(username, LocalAuthMethod.OUT_OF_BAND, address=address)
            self._fire(FlowEvent.REGISTERED)
            logger.info(f"Enrolled {username} for out-of-band codes")
            return self._result("Enrolled for out-of-band codes")

    async def upgrade(self) -> FlowResult:
        """Move an out-of-band enrollment to a device key (same cascade as enroll)."""
        async with self._lock:
            record = self._require_enrolled()
            self._reset()
            if record.uses_key:
                return self._result("Device already uses a local key")
            self._pending = _PendingEnrollment(record.username, record.address, None, upgrade=True)
            return await self._start_key_enrollment()

    async def downgrade(self) -> FlowResult:
        """Switch to out-of-band codes and delete local keys."""
        async with self._lock:
            record = self._require_enrolled()
            self._reset()
            try:
                await self.api.downgrade(record.username, record.device_id)
            except ServerRejected as e:
                return self._result(e.message)
            await asyncio.to_thread(self.keys.delete_all)
            self.local_state.mark_enrolled(record.username, LocalAuthMethod.OUT_OF_BAND, address=record.address)
            return self._result("Switched to out-of-band codes")

    async def unenroll(self) -> FlowResult:
        """Remove the server record, local keys and local enrollment (the device id is kept)."""
        async with self._lock:
            record = self._require_enrolled()
            self._reset()
            try:
                await self.api.unenroll(record.username, record.device_id)
            except ServerRejected as e:
                if e.status_code != 404:
                    return self._result(e.message)
                logger.info("Server had no record of this device; clearing local state")
            await asyncio.to_thread(self.keys.delete_all)
            self.local_state.clear()
            return self._result("Device unenrolled")

    async def _start_key_enrollment(self) -> FlowResult:
        capability = self.classifier.classify()
        logger.info(f"Local capability: {capability.value}")

        if capability == Capability.NONE:
            self._fire(FlowEvent.NO_LOCAL_GATE)
            self._offer = Fallback.OUT_OF_BAND
            return self._result(
                "No biometric or passcode is set up; only out-of-band codes are available",
                fallback=Fallback.OUT_OF_BAND,
            )

        self._fire(FlowEvent.BEGIN_ENROLL)
        tag = KeyTag.BIOMETRIC_PREFERRED if capability == Capability.STRONG else KeyTag.PASSCODE_ONLY
        return await self._enroll_with_key(tag)

    async def _enroll_with_key(self, tag: KeyTag) -> FlowResult:
        try:
            handle = await asyncio.to_thread(self.keys.create_key, tag)
            self._fire(FlowEvent.KEY_CREATED)
            await asyncio.to_thread(self.keys.test_key, handle, "Confirm enrollment of this device")
            public_key = await asyncio.to_thread(self.keys.export_public_key, handle)
        except KeyStoreError as e:
            return await self._enrollment_gate_failure(tag, e)

        self._fire(FlowEvent.KEY_TESTED)
        try:
            await self._register_key(handle, public_key)
        except ServerRejected as e:
            await asyncio.to_thread(self.keys.delete_key, tag)
            self._fire(FlowEvent.SERVER_REJECTED)
            return self._result(e.message)

        self._fire(FlowEvent.REGISTERED)
        pending = self._pending
        self._pending = None
        logger.info(f"Enrolled {pending.username} with key {tag.value}")
        return self._result("Device enrolled")

    async def _register_key(self, handle: KeyHandle, public_key: bytes) -> None:
        pending = self._pending
        record = self.local_state.record
        if pending.upgrade:
            await self.api.upgrade(pending.username, record.device_id, public_key)
        else:
            await self.api.enroll(
                pending.username,
                record.device_id,
                AuthMethod.ASYMMETRIC_KEY,
                public_key=public_key,
                address=pending.address,
                device_model=pending.device_model,
            )

        for other in KeyTag:
            if other != handle.tag:
                await asyncio.to_thread(self.keys.delete_key, other)

        method = LocalAuthMethod.BIOMETRIC if handle.tag == KeyTag.BIOMETRIC_PREFERRED else LocalAuthMethod.PASSCODE
        self.local_state.mark_enrolled(pending.username, method, key_tag=handle.tag, address=pending.address)

    async def _enrollment_gate_failure(self, tag: KeyTag, error: KeyStoreError) -> FlowResult:
        await asyncio.to_thread(self.keys.delete_key, tag)

        if tag == KeyTag.BIOMETRIC_PREFERRED and error.failure == GateFailure.DECLINED:
            event = FlowEvent.BIOMETRIC_DECLINED
        elif tag == KeyTag.BIOMETRIC_PREFERRED and error.failure == GateFailure.UNAVAILABLE:
            event = FlowEvent.BIOMETRIC_UNAVAILABLE
        elif error.failure == GateFailure.DECLINED:
            event = FlowEvent.GATE_DECLINED
        else:
            event = FlowEvent.GATE_FAILED
        self._fire(event)

        if event == FlowEvent.BIOMETRIC_UNAVAILABLE:
            logger.info("Biometrics became unavailable; continuing with passcode-only key")
            return await self._enroll_with_key(KeyTag.PASSCODE_ONLY)
        if event == FlowEvent.BIOMETRIC_DECLINED:
            self._offer = Fallback.PASSCODE
            return self._result(
                "Biometric authentication was declined; a passcode-only key can be used instead",
                fallback=Fallback.PASSCODE,
                failure=error.failure,
            )

        logger.warning(f"Enrollment failed at {tag.value}: {error.failure.value}")
        return self._result(error.message, failure=error.failure)

    # ------------------------------------------------------------------
    # Sign-in
    # ------------------------------------------------------------------

    async def authenticate(self, username: str) -> FlowResult:
        """
        Sign in with this device.

        A declined prompt returns to IDLE with ``failure=DECLINED``; the
        caller may retry or call :meth:`request_code`. When the server
        says the device uses out-of-band codes, a code is requested and
        the flow stops in AWAITING_CODE.
        """
        async with self._lock:
            record = self._require_enrolled()
            self._reset()
            self._fire(FlowEvent.BEGIN_SIGN_IN)

            try:
                grant = await self.api.initiate(username, record.device_id)
            except ServerRejected as e:
                self._fire(FlowEvent.SERVER_REJECTED)
                return self._result(e.message)

            if grant.method == AuthMethod.OUT_OF_BAND_CODE:
                self._fire(FlowEvent.OUT_OF_BAND_REQUIRED)
                return await self._send_code(username)

            self._fire(FlowEvent.CHALLENGE_RECEIVED)
            handle = await asyncio.to_thread(self.keys.active_key, record.key_tag)
            if handle is None:
                self._fire(FlowEvent.NOT_ENROLLED)
                return self._result("No local key for this device; enroll again")

            nonce = base64.b64decode(grant.challenge)
            try:
                signature = await asyncio.to_thread(self.keys.sign, handle, nonce, f"Sign in as {username}")
            except KeyStoreError as e:
                if e.failure == GateFailure.DECLINED:
                    self._fire(FlowEvent.GATE_DECLINED)
                    return self._result("Sign-in cancelled", failure=e.failure)
                self._fire(FlowEvent.GATE_FAILED)
                return self._result(e.message, failure=e.failure)

            self._fire(FlowEvent.SIGNED)
            try:
                response = await self.api.verify_signature(username, record.device_id, grant.challenge_id, signature)
            except ServerRejected as e:
                self._fire(FlowEvent.SERVER_REJECTED)
                return self._result(e.message)

            self._fire(FlowEvent.VERIFIED)
            return self._result(response.message, token=response.token)

    async def request_code(self, username: str) -> FlowResult:
        """Have a one-time code sent to the address registered for this device."""
        async with self._lock:
            if self.state != FlowState.AWAITING_CODE:
                self._reset()
            self._fire(FlowEvent.BEGIN_CODE_REQUEST)
            return await self._send_code(username)

    async def submit_code(self, username: str, code: str) -> FlowResult:
        """
        Submit a user-entered code.

        A wrong code leaves the flow in AWAITING_CODE so the same code can
        be retried; an expired or consumed code ends it in FAILED.
        """
        async with self._lock:
            if self.state != FlowState.AWAITING_CODE:
                raise InvalidTransition("No code has been requested")
            try:
                response = await self.api.verify_code(username, code)
            except ServerRejected as e:
                if e.error in DEAD_CODE_ERRORS:
                    self._fire(FlowEvent.CODE_DEAD)
                else:
                    self._fire(FlowEvent.CODE_MISMATCH)
                return self._result(e.message)

            self._fire(FlowEvent.VERIFIED)
            return self._result(response.message, token=response.token)

    async def _send_code(self, username: str) -> FlowResult:
        address = self.local_state.record.address
        if not address:
            self._fire(FlowEvent.NOT_ENROLLED)
            return self._result("No delivery address is registered for this device")

        try:
            response = await self.api.request_code(username, address)
        except ServerRejected as e:
            self._fire(FlowEvent.SERVER_REJECTED)
            return self._result(e.message)

        self._fire(FlowEvent.CODE_SENT)
        return self._result(response.message)
