"""Classification of the local authentication strength a device offers."""

from enum import Enum
from typing import Any, Dict, Optional

from devicemfa.client.authenticators import LocalAuthenticator
from devicemfa.client.keystore import SecureKeyStore


class Capability(str, Enum):
    """Strongest local gate currently usable."""

    STRONG = "strong"   # biometrics enrolled and usable
    BASIC = "basic"     # passcode only
    NONE = "none"       # no local gate


class CapabilityClassifier:
    """Pure query over a gate; safe to call as often as needed."""

    def __init__(self, authenticator: LocalAuthenticator, key_store: Optional[SecureKeyStore] = None):
        self.authenticator = authenticator
        self.key_store = key_store

    def classify(self) -> Capability:
        if self.authenticator.biometrics_available():
            return Capability.STRONG
        if self.authenticator.passcode_set():
            return Capability.BASIC
        return Capability.NONE

    def describe(self) -> Dict[str, Any]:
        """Snapshot used by status displays."""
        return {
            "capability": self.classify().value,
            "biometry_type": self.authenticator.biometry_type.value,
            "biometrics_available": self.authenticator.biometrics_available(),
            "passcode_set": self.authenticator.passcode_set(),
            "hardware_backed": bool(self.key_store and self.key_store.hardware_backed),
        }
