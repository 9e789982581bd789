"""
Local authentication gates.

A gate answers two cheap questions (are biometrics usable, is a passcode
set) and evaluates a prompt under a policy. Gates raise
:class:`~devicemfa.client.errors.KeyStoreError` with a
:class:`~devicemfa.client.errors.GateFailure` reason; they never return a
boolean failure.
"""

import hashlib
import hmac
import logging
import secrets
import threading
from abc import ABC, abstractmethod
from collections import deque
from enum import Enum
from typing import Iterable, List, Optional, Tuple

import click

from devicemfa.client.errors import GateFailure, KeyStoreError

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 200_000


class GatePolicy(str, Enum):
    """Which factors may satisfy a prompt."""

    BIOMETRIC_OR_PASSCODE = "biometric_or_passcode"
    PASSCODE_ONLY = "passcode_only"


class BiometryType(str, Enum):
    NONE = "None"
    FINGERPRINT = "Fingerprint"
    FACE = "Face"
    PRESENCE = "Presence confirmation"


class LocalAuthenticator(ABC):
    """Platform authentication gate."""

    @property
    def biometry_type(self) -> BiometryType:
        return BiometryType.NONE

    @abstractmethod
    def biometrics_available(self) -> bool:
        """Biometric verification is enrolled and usable right now."""

    @abstractmethod
    def passcode_set(self) -> bool:
        """A passcode/PIN gate is configured."""

    @abstractmethod
    def authenticate(self, policy: GatePolicy, reason: str) -> None:
        """
        Present a prompt and block until the user answers.

        Raises:
            KeyStoreError: With the reason the gate was not satisfied
        """


class SimulatedAuthenticator(LocalAuthenticator):
    """
    Scriptable gate for tests and demos.

    Each call to :meth:`authenticate` consumes the next scripted outcome
    (a :class:`GateFailure` to raise, or ``None`` to succeed). With an
    empty script the gate follows the configured capabilities: a
    biometric prompt needs biometrics, a passcode prompt needs a passcode.
    """

    def __init__(
        self,
        biometrics: bool = True,
        passcode: bool = True,
        biometry: BiometryType = BiometryType.FINGERPRINT,
        outcomes: Iterable[Optional[GateFailure]] = (),
    ):
        self.biometrics = biometrics
        self.passcode = passcode
        self._biometry = biometry
        self._outcomes = deque(outcomes)
        self._lock = threading.Lock()
        self.prompts: List[Tuple[GatePolicy, str]] = []

    @property
    def biometry_type(self) -> BiometryType:
        return self._biometry if self.biometrics else BiometryType.NONE

    def biometrics_available(self) -> bool:
        return self.biometrics

    def passcode_set(self) -> bool:
        return self.passcode

    def script(self, *outcomes: Optional[GateFailure]) -> None:
        """Queue outcomes for upcoming prompts."""
        with self._lock:
            self._outcomes.extend(outcomes)

    def authenticate(self, policy: GatePolicy, reason: str) -> None:
        with self._lock:
            self.prompts.append((policy, reason))
            outcome = self._outcomes.popleft() if self._outcomes else None

        if outcome is not None:
            raise KeyStoreError(outcome, f"Simulated gate failure: {outcome.value}")

        if policy == GatePolicy.BIOMETRIC_OR_PASSCODE and not self.biometrics:
            raise KeyStoreError(GateFailure.UNAVAILABLE, "Biometric authentication not available")
        if policy == GatePolicy.PASSCODE_ONLY and not self.passcode:
            raise KeyStoreError(GateFailure.NOT_CONFIGURED, "Device passcode not set")


def hash_passcode(passcode: str, salt: Optional[bytes] = None, iterations: int = PBKDF2_ITERATIONS) -> str:
    """
    Hash a passcode for :class:`ConsoleAuthenticator`.

    Returns:
        str: ``pbkdf2_sha256$<iterations>$<salt hex>$<digest hex>``
    """
    salt = salt or secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", passcode.encode(), salt, iterations)
    return f"pbkdf2_sha256${iterations}${salt.hex()}${digest.hex()}"


def check_passcode(passcode: str, encoded: str) -> bool:
    """Compare a passcode against a :func:`hash_passcode` value."""
    try:
        scheme, iterations, salt_hex, digest_hex = encoded.split("$")
        if scheme != "pbkdf2_sha256":
            return False
        digest = hashlib.pbkdf2_hmac("sha256", passcode.encode(), bytes.fromhex(salt_hex), int(iterations))
    except ValueError:
        logger.error("Malformed passcode hash in configuration")
        return False
    return hmac.compare_digest(digest.hex(), digest_hex)


class ConsoleAuthenticator(LocalAuthenticator):
    """
    Terminal gate.

    The "biometric" factor is an explicit presence confirmation (enabled
    with ``presence_consent``); the passcode factor is a hidden prompt
    checked against a PBKDF2 hash. Aborting a prompt (Ctrl-C, EOF) counts
    as a decline. After ``max_attempts`` wrong passcodes the gate stays
    locked out for the life of the process.
    """

    def __init__(self, passcode_hash: Optional[str] = None, presence_consent: bool = False, max_attempts: int = 3):
        self.passcode_hash = passcode_hash
        self.presence_consent = presence_consent
        self.max_attempts = max_attempts
        self._failed_attempts = 0

    @property
    def biometry_type(self) -> BiometryType:
        return BiometryType.PRESENCE if self.presence_consent else BiometryType.NONE

    def biometrics_available(self) -> bool:
        return self.presence_consent

    def passcode_set(self) -> bool:
        return bool(self.passcode_hash)

    def authenticate(self, policy: GatePolicy, reason: str) -> None:
        if self._failed_attempts >= self.max_attempts:
            raise KeyStoreError(GateFailure.LOCKED_OUT, "Locked out after too many failed passcode attempts")

        if policy == GatePolicy.BIOMETRIC_OR_PASSCODE:
            if not self.presence_consent:
                raise KeyStoreError(GateFailure.UNAVAILABLE, "Presence confirmation not enabled")
            try:
                confirmed = click.confirm(f"{reason}. Confirm it is you", default=False)
            except click.Abort:
                confirmed = False
            if not confirmed:
                raise KeyStoreError(GateFailure.DECLINED, "Authentication cancelled by user")
            return

        if not self.passcode_hash:
            raise KeyStoreError(GateFailure.NOT_CONFIGURED, "Device passcode not set")

        while self._failed_attempts < self.max_attempts:
            try:
                entered = click.prompt(f"{reason}. Passcode", hide_input=True)
            except click.Abort:
                raise KeyStoreError(GateFailure.DECLINED, "Authentication cancelled by user")
            if check_passcode(entered, self.passcode_hash):
                self._failed_attempts = 0
                return
            self._failed_attempts += 1
            click.echo("Incorrect passcode")

        logger.warning("Passcode gate locked out")
        raise KeyStoreError(GateFailure.LOCKED_OUT, "Locked out after too many failed passcode attempts")
