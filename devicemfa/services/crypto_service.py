"""Cryptographic primitives: nonces, one-time codes and ECDSA verification."""

import logging
import secrets

from cryptography.exceptions import InvalidSignature as _CryptoInvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

logger = logging.getLogger(__name__)

NONCE_BYTES = 32
CODE_MIN = 100000
CODE_MAX = 999999

CURVE = ec.SECP256R1()
SIGNATURE_ALGORITHM = ec.ECDSA(hashes.SHA256())


class CryptoService:
    """
    Stateless crypto helpers for the credential authority.

    Signatures are DER-encoded ECDSA over P-256 with SHA-256, the pairing
    used by hardware key stores. Public keys are SubjectPublicKeyInfo DER;
    raw uncompressed X9.62 points (65 bytes) are accepted too since that is
    what several mobile key stores export.
    """

    def generate_nonce(self) -> bytes:
        """Generate a cryptographically secure random challenge."""
        return secrets.token_bytes(NONCE_BYTES)

    def generate_code(self) -> str:
        """Generate a 6-digit code uniformly over [100000, 999999]."""
        return str(CODE_MIN + secrets.randbelow(CODE_MAX - CODE_MIN + 1))

    def load_public_key(self, public_key: bytes) -> ec.EllipticCurvePublicKey:
        """
        Parse a P-256 public key.

        Raises:
            ValueError: If the bytes are not a P-256 public key
        """
        if len(public_key) == 65 and public_key[0] == 0x04:
            return ec.EllipticCurvePublicKey.from_encoded_point(CURVE, public_key)

        key = serialization.load_der_public_key(public_key)
        if not isinstance(key, ec.EllipticCurvePublicKey) or key.curve.name != CURVE.name:
            raise ValueError("Public key must be an EC P-256 key")
        return key

    def normalize_public_key(self, public_key: bytes) -> bytes:
        """Return the SubjectPublicKeyInfo DER form of a supported public key."""
        key = self.load_public_key(public_key)
        return key.public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )

    def verify_signature(self, public_key: bytes, data: bytes, signature: bytes) -> bool:
        """
        Verify an ECDSA-SHA256 signature.

        Args:
            public_key: Stored public key bytes
            data: Signed bytes (the raw nonce)
            signature: DER signature

        Returns:
            bool: True if the signature is valid
        """
        try:
            key = self.load_public_key(public_key)
            key.verify(signature, data, SIGNATURE_ALGORITHM)
        except _CryptoInvalidSignature:
            logger.debug("Signature did not verify")
            return False
        except ValueError as e:
            logger.warning(f"Unusable key or signature encoding: {e}")
            return False
        return True
