import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from devicemfa.client.authenticators import GatePolicy, SimulatedAuthenticator
from devicemfa.client.errors import GateFailure, KeyStoreError, NoLocalAuthGate
from devicemfa.client.key_manager import TEST_PAYLOAD, KeyManager
from devicemfa.client.keystore import KeyTag, SoftwareKeyStore, build_key_store
from devicemfa.client.settings import ClientSettings
from devicemfa.services.crypto_service import CryptoService


@pytest.fixture
def gate():
    return SimulatedAuthenticator()


@pytest.fixture
def keys(gate):
    return KeyManager(SoftwareKeyStore(), gate)


def _verify(public_der: bytes, data: bytes, signature: bytes) -> bool:
    return CryptoService().verify_signature(public_der, data, signature)


def test_sign_produces_verifiable_signature(keys):
    handle = keys.create_key(KeyTag.BIOMETRIC_PREFERRED)

    signature = keys.sign(handle, b"nonce")

    assert _verify(keys.export_public_key(handle), b"nonce", signature)


def test_exported_key_is_p256_spki(keys):
    handle = keys.create_key(KeyTag.PASSCODE_ONLY)

    public_key = serialization.load_der_public_key(keys.export_public_key(handle))

    assert isinstance(public_key, ec.EllipticCurvePublicKey)
    assert public_key.curve.name == "secp256r1"


def test_create_supersedes_existing_key(keys):
    first = keys.export_public_key(keys.create_key(KeyTag.BIOMETRIC_PREFERRED))
    second_handle = keys.create_key(KeyTag.BIOMETRIC_PREFERRED)

    assert keys.export_public_key(second_handle) != first
    assert keys.get_key(KeyTag.BIOMETRIC_PREFERRED) == second_handle


def test_delete_is_idempotent(keys):
    keys.create_key(KeyTag.PASSCODE_ONLY)

    keys.delete_key(KeyTag.PASSCODE_ONLY)
    keys.delete_key(KeyTag.PASSCODE_ONLY)
    keys.delete_all()

    assert keys.get_key(KeyTag.PASSCODE_ONLY) is None


def test_gate_policy_follows_tag(keys, gate):
    bio = keys.create_key(KeyTag.BIOMETRIC_PREFERRED)
    pin = keys.create_key(KeyTag.PASSCODE_ONLY)

    keys.sign(bio, b"a")
    keys.sign(pin, b"b")

    assert [policy for policy, _ in gate.prompts] == [GatePolicy.BIOMETRIC_OR_PASSCODE, GatePolicy.PASSCODE_ONLY]


def test_test_key_prompts_once_and_signs_throwaway_payload(keys, gate, monkeypatch):
    handle = keys.create_key(KeyTag.BIOMETRIC_PREFERRED)
    signed = []
    original = keys.store.sign
    monkeypatch.setattr(keys.store, "sign", lambda h, data: signed.append(data) or original(h, data))

    keys.test_key(handle, "Confirm")

    assert len(gate.prompts) == 1
    assert signed == [TEST_PAYLOAD]


@pytest.mark.parametrize("failure", list(GateFailure))
def test_gate_failures_are_reported_not_swallowed(keys, gate, failure):
    handle = keys.create_key(KeyTag.BIOMETRIC_PREFERRED)
    gate.script(failure)

    with pytest.raises(KeyStoreError) as exc:
        keys.sign(handle, b"nonce")
    assert exc.value.failure == failure


def test_create_refused_without_local_gate():
    keys = KeyManager(SoftwareKeyStore(), SimulatedAuthenticator(biometrics=False, passcode=False))

    with pytest.raises(NoLocalAuthGate) as exc:
        keys.create_key(KeyTag.PASSCODE_ONLY)
    assert exc.value.failure == GateFailure.NOT_CONFIGURED
    assert keys.get_key(KeyTag.PASSCODE_ONLY) is None


def test_active_key_prefers_requested_tag(keys):
    keys.create_key(KeyTag.BIOMETRIC_PREFERRED)
    keys.create_key(KeyTag.PASSCODE_ONLY)

    assert keys.active_key().tag == KeyTag.BIOMETRIC_PREFERRED
    assert keys.active_key(KeyTag.PASSCODE_ONLY).tag == KeyTag.PASSCODE_ONLY

    keys.delete_all()
    assert keys.active_key() is None


def test_file_store_persists_keys_owner_only(tmp_path, gate):
    keys = KeyManager(SoftwareKeyStore(tmp_path / "keys"), gate)
    handle = keys.create_key(KeyTag.PASSCODE_ONLY)
    public_key = keys.export_public_key(handle)

    path = tmp_path / "keys" / "passcode_only.pem"
    assert path.exists()
    assert path.stat().st_mode & 0o777 == 0o600

    reopened = KeyManager(SoftwareKeyStore(tmp_path / "keys"), gate)
    found = reopened.get_key(KeyTag.PASSCODE_ONLY)
    assert reopened.export_public_key(found) == public_key

    reopened.delete_key(KeyTag.PASSCODE_ONLY)
    assert not path.exists()


def test_corrupt_key_file_is_store_failure(tmp_path, gate):
    (tmp_path / "passcode_only.pem").write_text("not a key")
    keys = KeyManager(SoftwareKeyStore(tmp_path), gate)

    with pytest.raises(KeyStoreError) as exc:
        keys.get_key(KeyTag.PASSCODE_ONLY)
    assert exc.value.failure == GateFailure.OTHER


def test_build_key_store_falls_back_to_software(tmp_path):
    settings = ClientSettings(pkcs11_library=str(tmp_path / "missing-pkcs11.so"), key_dir=None)

    store = build_key_store(settings)

    assert isinstance(store, SoftwareKeyStore)
    assert store.hardware_backed is False


def test_build_key_store_defaults_to_software(tmp_path):
    store = build_key_store(ClientSettings(key_dir=tmp_path / "keys"))

    assert isinstance(store, SoftwareKeyStore)
    assert store.directory == tmp_path / "keys"
