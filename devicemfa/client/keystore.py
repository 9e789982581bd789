"""
Secure key storage for device private keys.

A :class:`SecureKeyStore` holds at most one EC P-256 key pair per
:class:`KeyTag`. The software store keeps keys in memory or in
owner-only PEM files; the PKCS#11 store in :mod:`devicemfa.client.hardware`
keeps them on a token. Callers pick one with :func:`build_key_store` and
never branch on which they got.
"""

import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from devicemfa.client.authenticators import GatePolicy
from devicemfa.client.errors import KeyStoreError

logger = logging.getLogger(__name__)


class KeyTag(str, Enum):
    """Gate a key was created under."""

    BIOMETRIC_PREFERRED = "biometric_preferred"
    PASSCODE_ONLY = "passcode_only"

    @property
    def policy(self) -> GatePolicy:
        if self is KeyTag.BIOMETRIC_PREFERRED:
            return GatePolicy.BIOMETRIC_OR_PASSCODE
        return GatePolicy.PASSCODE_ONLY


@dataclass(frozen=True)
class KeyHandle:
    """Opaque reference to a private key held by a store."""

    tag: KeyTag
    reference: str
    hardware_backed: bool = False


class SecureKeyStore(ABC):
    """Storage for tagged EC P-256 key pairs."""

    hardware_backed = False

    @abstractmethod
    def generate(self, tag: KeyTag) -> KeyHandle:
        """Generate a new key pair under ``tag``; the tag must be free."""

    @abstractmethod
    def find(self, tag: KeyTag) -> Optional[KeyHandle]:
        """Handle for ``tag`` or None."""

    @abstractmethod
    def sign(self, handle: KeyHandle, data: bytes) -> bytes:
        """DER-encoded ECDSA-SHA256 signature over ``data``."""

    @abstractmethod
    def public_key(self, handle: KeyHandle) -> bytes:
        """SubjectPublicKeyInfo DER encoding of the public half."""

    @abstractmethod
    def delete(self, tag: KeyTag) -> None:
        """Remove the key under ``tag``; absent keys are not an error."""

    def close(self) -> None:
        """Release store resources."""


def encode_public_key(public_key: ec.EllipticCurvePublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


class SoftwareKeyStore(SecureKeyStore):
    """
    Keys generated and held by ``cryptography``.

    With ``directory`` set, each key is a PKCS#8 PEM file readable only by
    the owner; without it keys live in memory for the life of the store.
    """

    def __init__(self, directory: Optional[Path] = None):
        self.directory = Path(directory).expanduser() if directory else None
        self._keys: Dict[KeyTag, ec.EllipticCurvePrivateKey] = {}
        self._lock = threading.Lock()
        if self.directory is not None:
            try:
                self.directory.mkdir(parents=True, exist_ok=True, mode=0o700)
            except OSError as e:
                raise KeyStoreError.store_failure(f"Cannot create key directory {self.directory}: {e}")

    def _path(self, tag: KeyTag) -> Path:
        return self.directory / f"{tag.value}.pem"

    def _reference(self, tag: KeyTag) -> str:
        return str(self._path(tag)) if self.directory else f"memory:{tag.value}"

    def _load(self, tag: KeyTag) -> Optional[ec.EllipticCurvePrivateKey]:
        key = self._keys.get(tag)
        if key is not None or self.directory is None:
            return key

        path = self._path(tag)
        if not path.exists():
            return None
        try:
            key = serialization.load_pem_private_key(path.read_bytes(), password=None)
        except (OSError, ValueError, UnsupportedAlgorithm) as e:
            raise KeyStoreError.store_failure(f"Cannot read key {tag.value}: {e}")
        if not isinstance(key, ec.EllipticCurvePrivateKey):
            raise KeyStoreError.store_failure(f"Key {tag.value} is not an EC key")
        self._keys[tag] = key
        return key

    def generate(self, tag: KeyTag) -> KeyHandle:
        with self._lock:
            key = ec.generate_private_key(ec.SECP256R1())
            if self.directory is not None:
                pem = key.private_bytes(
                    encoding=serialization.Encoding.PEM,
                    format=serialization.PrivateFormat.PKCS8,
                    encryption_algorithm=serialization.NoEncryption(),
                )
                try:
                    fd = os.open(self._path(tag), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
                    with os.fdopen(fd, "wb") as f:
                        f.write(pem)
                except OSError as e:
                    raise KeyStoreError.store_failure(f"Cannot write key {tag.value}: {e}")
            self._keys[tag] = key
            logger.info(f"Generated software key: {tag.value}")
            return KeyHandle(tag=tag, reference=self._reference(tag))

    def find(self, tag: KeyTag) -> Optional[KeyHandle]:
        with self._lock:
            if self._load(tag) is None:
                return None
            return KeyHandle(tag=tag, reference=self._reference(tag))

    def _require(self, handle: KeyHandle) -> ec.EllipticCurvePrivateKey:
        key = self._load(handle.tag)
        if key is None:
            raise KeyStoreError.store_failure(f"Key {handle.tag.value} not found")
        return key

    def sign(self, handle: KeyHandle, data: bytes) -> bytes:
        with self._lock:
            key = self._require(handle)
        return key.sign(data, ec.ECDSA(hashes.SHA256()))

    def public_key(self, handle: KeyHandle) -> bytes:
        with self._lock:
            key = self._require(handle)
        return encode_public_key(key.public_key())

    def delete(self, tag: KeyTag) -> None:
        with self._lock:
            self._keys.pop(tag, None)
            if self.directory is not None:
                try:
                    self._path(tag).unlink(missing_ok=True)
                except OSError as e:
                    raise KeyStoreError.store_failure(f"Cannot delete key {tag.value}: {e}")


def build_key_store(settings) -> SecureKeyStore:
    """
    Open the most secure store the configuration allows.

    A PKCS#11 token is used when ``pkcs11_library`` is configured; if it
    cannot be opened the software store is used instead, with a warning.

    Args:
        settings: :class:`~devicemfa.client.settings.ClientSettings`
    """
    if settings.pkcs11_library:
        try:
            from devicemfa.client.hardware import Pkcs11KeyStore

            return Pkcs11KeyStore(
                library_path=settings.pkcs11_library,
                pin=settings.pkcs11_pin,
                slot_index=settings.pkcs11_slot,
            )
        except ImportError:
            logger.warning("PyKCS11 not installed (pip install devicemfa[hardware]); using software key store")
        except KeyStoreError as e:
            logger.warning(f"Hardware key store unavailable ({e}); using software key store")

    return SoftwareKeyStore(settings.key_dir)
