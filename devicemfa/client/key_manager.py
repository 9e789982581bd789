"""
Key lifecycle on top of a :class:`~devicemfa.client.keystore.SecureKeyStore`.

Every use of a private key is preceded by one evaluation of the local gate
under the policy of the key's tag. Operations on the same tag are
serialized, so replacing a key (delete then generate) is never observed
half-done.
"""

import logging
import threading
from typing import Dict, Optional

from devicemfa.client.authenticators import LocalAuthenticator
from devicemfa.client.errors import NoLocalAuthGate
from devicemfa.client.keystore import KeyHandle, KeyTag, SecureKeyStore

logger = logging.getLogger(__name__)

TEST_PAYLOAD = b"enrollment_test"


class KeyManager:
    """Creates, uses and deletes tagged device keys."""

    def __init__(self, store: SecureKeyStore, authenticator: LocalAuthenticator):
        self.store = store
        self.authenticator = authenticator
        self._locks: Dict[KeyTag, threading.RLock] = {tag: threading.RLock() for tag in KeyTag}

    def create_key(self, tag: KeyTag) -> KeyHandle:
        """
        Generate a key pair under ``tag``, superseding any existing one.

        Raises:
            NoLocalAuthGate: The device has neither biometrics nor a passcode
            KeyStoreError: The store failed (``GateFailure.OTHER``)
        """
        if not (self.authenticator.biometrics_available() or self.authenticator.passcode_set()):
            raise NoLocalAuthGate("No local authentication gate to protect a key")

        with self._locks[tag]:
            self.store.delete(tag)
            handle = self.store.generate(tag)
        logger.info(f"Created key {tag.value} (hardware_backed={handle.hardware_backed})")
        return handle

    def test_key(self, handle: KeyHandle, reason: str = "Confirm enrollment") -> None:
        """
        Exercise the key's gate once with a throwaway signature.

        Surfaces declines, missing biometrics and lockouts at enrollment
        time instead of at first sign-in.

        Raises:
            KeyStoreError: Gate or store failure
        """
        self.sign(handle, TEST_PAYLOAD, reason)

    def sign(self, handle: KeyHandle, data: bytes, reason: str = "Sign in") -> bytes:
        """
        Authenticate locally, then sign ``data``.

        Blocks while the gate prompt is shown.

        Returns:
            bytes: DER ECDSA-SHA256 signature

        Raises:
            KeyStoreError: Gate or store failure
        """
        with self._locks[handle.tag]:
            self.authenticator.authenticate(handle.tag.policy, reason)
            return self.store.sign(handle, data)

    def export_public_key(self, handle: KeyHandle) -> bytes:
        """SubjectPublicKeyInfo DER bytes of the handle's public key."""
        with self._locks[handle.tag]:
            return self.store.public_key(handle)

    def get_key(self, tag: KeyTag) -> Optional[KeyHandle]:
        with self._locks[tag]:
            return self.store.find(tag)

    def active_key(self, preferred: Optional[KeyTag] = None) -> Optional[KeyHandle]:
        """The preferred tag's key, else the strongest key present."""
        order = [KeyTag.BIOMETRIC_PREFERRED, KeyTag.PASSCODE_ONLY]
        if preferred is not None:
            order.remove(preferred)
            order.insert(0, preferred)
        for tag in order:
            handle = self.get_key(tag)
            if handle is not None:
                return handle
        return None

    def delete_key(self, tag: KeyTag) -> None:
        with self._locks[tag]:
            self.store.delete(tag)

    def delete_all(self) -> None:
        for tag in KeyTag:
            self.delete_key(tag)
        logger.info("Deleted all device keys")
