"""Device side: capability classification, key management and the authentication flow."""

from devicemfa.client.authenticators import (
    ConsoleAuthenticator,
    GatePolicy,
    LocalAuthenticator,
    SimulatedAuthenticator,
)
from devicemfa.client.capability import Capability, CapabilityClassifier
from devicemfa.client.errors import (
    GateFailure,
    InvalidTransition,
    KeyStoreError,
    NoLocalAuthGate,
    NotEnrolled,
    ServerRejected,
)
from devicemfa.client.key_manager import KeyManager
from devicemfa.client.keystore import KeyHandle, KeyTag, SecureKeyStore, SoftwareKeyStore, build_key_store
from devicemfa.client.local_state import LocalAuthMethod, LocalEnrollmentState
from devicemfa.client.network import MFAApiClient
from devicemfa.client.orchestrator import AuthenticationOrchestrator, Fallback, FlowResult, FlowState
from devicemfa.client.settings import ClientSettings

__all__ = [
    "AuthenticationOrchestrator",
    "Capability",
    "CapabilityClassifier",
    "ClientSettings",
    "ConsoleAuthenticator",
    "Fallback",
    "FlowResult",
    "FlowState",
    "GateFailure",
    "GatePolicy",
    "InvalidTransition",
    "KeyHandle",
    "KeyManager",
    "KeyStoreError",
    "KeyTag",
    "LocalAuthenticator",
    "LocalAuthMethod",
    "LocalEnrollmentState",
    "MFAApiClient",
    "NoLocalAuthGate",
    "NotEnrolled",
    "SecureKeyStore",
    "ServerRejected",
    "SimulatedAuthenticator",
    "SoftwareKeyStore",
    "build_key_store",
]
