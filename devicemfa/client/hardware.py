"""
PKCS#11 token key store (optional ``hardware`` extra, PyKCS11).

Private keys are generated on the token as non-extractable, sensitive
objects labelled ``devicemfa-<tag>``; only the EC point of the public half
ever leaves the token. Token PIN entry happens once when the store is
opened; per-use consent is still enforced by the local gate.
"""

import hashlib
import logging
import threading
from typing import List, Optional

import PyKCS11
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature
from PyKCS11 import Mechanism, PyKCS11Error, PyKCS11Lib
from PyKCS11.LowLevel import (
    CKA_CLASS,
    CKA_EC_PARAMS,
    CKA_EC_POINT,
    CKA_KEY_TYPE,
    CKA_LABEL,
    CKA_PRIVATE,
    CKA_SENSITIVE,
    CKA_SIGN,
    CKA_TOKEN,
    CKA_VERIFY,
    CKF_RW_SESSION,
    CKF_SERIAL_SESSION,
    CKK_EC,
    CKM_ECDSA,
    CKO_PRIVATE_KEY,
    CKO_PUBLIC_KEY,
    CKR_FUNCTION_CANCELED,
    CKR_PIN_LOCKED,
    CKU_USER,
)

from devicemfa.client.errors import GateFailure, KeyStoreError
from devicemfa.client.keystore import KeyHandle, KeyTag, SecureKeyStore, encode_public_key

logger = logging.getLogger(__name__)

LABEL_PREFIX = "devicemfa-"

# DER OID 1.2.840.10045.3.1.7 (prime256v1)
P256_EC_PARAMS = bytes.fromhex("06082a8648ce3d030107")


def _failure(e: PyKCS11Error, action: str) -> KeyStoreError:
    if e.value == CKR_PIN_LOCKED:
        return KeyStoreError(GateFailure.LOCKED_OUT, f"Token PIN locked during {action}")
    if e.value == CKR_FUNCTION_CANCELED:
        return KeyStoreError(GateFailure.DECLINED, f"Token operation cancelled during {action}")
    return KeyStoreError.store_failure(f"PKCS#11 {action} failed: {e}")


def _decode_ec_point(value: bytes) -> bytes:
    """Unwrap the DER OCTET STRING around an uncompressed point, if present."""
    if len(value) == 67 and value[0] == 0x04 and value[1] == 0x41:
        return value[2:]
    return value


class Pkcs11KeyStore(SecureKeyStore):
    """Key pairs held on a PKCS#11 token."""

    hardware_backed = True

    def __init__(self, library_path: str, pin: Optional[str] = None, slot_index: int = 0):
        """
        Load the PKCS#11 library and open a logged-in session.

        Args:
            library_path: Path to the token's PKCS#11 module
            pin: User PIN; the session is left unauthenticated when None
            slot_index: Index into the slots with a token present

        Raises:
            KeyStoreError: The library, slot or login is unavailable
        """
        self._lock = threading.Lock()
        self._pkcs11 = PyKCS11Lib()
        try:
            self._pkcs11.load(library_path)
            slots = self._pkcs11.getSlotList(tokenPresent=True)
            if len(slots) <= slot_index:
                raise KeyStoreError.store_failure(f"No token present in slot {slot_index}")
            self._slot = slots[slot_index]
            self._session = self._pkcs11.openSession(self._slot, CKF_SERIAL_SESSION | CKF_RW_SESSION)
            if pin:
                self._session.login(pin, CKU_USER)
        except PyKCS11Error as e:
            raise _failure(e, "open")

        token_info = self._pkcs11.getTokenInfo(self._slot)
        logger.info(f"Opened PKCS#11 token: {token_info.label.strip()}")

    def _objects(self, tag: KeyTag, object_class) -> List:
        return self._session.findObjects([
            (CKA_CLASS, object_class),
            (CKA_LABEL, LABEL_PREFIX + tag.value),
        ])

    def generate(self, tag: KeyTag) -> KeyHandle:
        label = LABEL_PREFIX + tag.value
        public_template = [
            (CKA_CLASS, CKO_PUBLIC_KEY),
            (CKA_KEY_TYPE, CKK_EC),
            (CKA_TOKEN, PyKCS11.CK_TRUE),
            (CKA_PRIVATE, PyKCS11.CK_FALSE),
            (CKA_VERIFY, PyKCS11.CK_TRUE),
            (CKA_EC_PARAMS, P256_EC_PARAMS),
            (CKA_LABEL, label),
        ]
        private_template = [
            (CKA_CLASS, CKO_PRIVATE_KEY),
            (CKA_KEY_TYPE, CKK_EC),
            (CKA_TOKEN, PyKCS11.CK_TRUE),
            (CKA_PRIVATE, PyKCS11.CK_TRUE),
            (CKA_SENSITIVE, PyKCS11.CK_TRUE),
            (CKA_SIGN, PyKCS11.CK_TRUE),
            (CKA_LABEL, label),
        ]
        with self._lock:
            try:
                self._session.generateKeyPair(
                    public_template, private_template, mecha=PyKCS11.MechanismECGENERATEKEYPAIR
                )
            except PyKCS11Error as e:
                raise _failure(e, "key generation")
        logger.info(f"Generated token key: {tag.value}")
        return KeyHandle(tag=tag, reference=label, hardware_backed=True)

    def find(self, tag: KeyTag) -> Optional[KeyHandle]:
        with self._lock:
            try:
                found = self._objects(tag, CKO_PRIVATE_KEY)
            except PyKCS11Error as e:
                raise _failure(e, "lookup")
        if not found:
            return None
        return KeyHandle(tag=tag, reference=LABEL_PREFIX + tag.value, hardware_backed=True)

    def sign(self, handle: KeyHandle, data: bytes) -> bytes:
        digest = hashlib.sha256(data).digest()
        with self._lock:
            try:
                keys = self._objects(handle.tag, CKO_PRIVATE_KEY)
                if not keys:
                    raise KeyStoreError.store_failure(f"Key {handle.tag.value} not found on token")
                raw = bytes(self._session.sign(keys[0], digest, Mechanism(CKM_ECDSA, None)))
            except PyKCS11Error as e:
                raise _failure(e, "signing")

        # Tokens return r || s; verifiers expect DER
        half = len(raw) // 2
        return encode_dss_signature(int.from_bytes(raw[:half], "big"), int.from_bytes(raw[half:], "big"))

    def public_key(self, handle: KeyHandle) -> bytes:
        with self._lock:
            try:
                keys = self._objects(handle.tag, CKO_PUBLIC_KEY)
                if not keys:
                    raise KeyStoreError.store_failure(f"Public key {handle.tag.value} not found on token")
                (point,) = self._session.getAttributeValue(keys[0], [CKA_EC_POINT], allAsBinary=True)
            except PyKCS11Error as e:
                raise _failure(e, "public key export")

        try:
            public_key = ec.EllipticCurvePublicKey.from_encoded_point(
                ec.SECP256R1(), _decode_ec_point(bytes(point))
            )
        except ValueError as e:
            raise KeyStoreError.store_failure(f"Token returned an invalid EC point: {e}")
        return encode_public_key(public_key)

    def delete(self, tag: KeyTag) -> None:
        with self._lock:
            try:
                for object_class in (CKO_PRIVATE_KEY, CKO_PUBLIC_KEY):
                    for obj in self._objects(tag, object_class):
                        self._session.destroyObject(obj)
            except PyKCS11Error as e:
                raise _failure(e, "delete")

    def close(self) -> None:
        with self._lock:
            try:
                self._session.logout()
            except PyKCS11Error as e:
                logger.debug(f"Token logout: {e}")
            self._session.closeSession()
