import pytest

from devicemfa.client.authenticators import GatePolicy, SimulatedAuthenticator
from devicemfa.client.capability import CapabilityClassifier
from devicemfa.client.errors import GateFailure, InvalidTransition, NotEnrolled
from devicemfa.client.key_manager import KeyManager
from devicemfa.client.keystore import KeyTag, SoftwareKeyStore
from devicemfa.client.local_state import LocalAuthMethod, LocalEnrollmentState
from devicemfa.client.orchestrator import (
    TRANSITIONS,
    AuthenticationOrchestrator,
    Fallback,
    FlowEvent,
    FlowState,
)
from devicemfa.models.device import AuthMethod

ADDRESS = "+15551234567"


@pytest.fixture
def gate():
    return SimulatedAuthenticator()


@pytest.fixture
def store():
    return SoftwareKeyStore()


@pytest.fixture
def keys(store, gate):
    return KeyManager(store, gate)


@pytest.fixture
def orchestrator(api_client, keys, gate, store):
    return AuthenticationOrchestrator(
        api=api_client,
        keys=keys,
        classifier=CapabilityClassifier(gate, store),
        local_state=LocalEnrollmentState(),
    )


def _events(orchestrator):
    return [event for _, event, _ in orchestrator.history]


async def test_strong_device_enrolls_with_biometric_key_and_signs_in(orchestrator, api_client, gate, keys):
    result = await orchestrator.enroll("alice", ADDRESS, "Pixel 8")

    assert result.succeeded
    record = orchestrator.local_state.record
    assert record.method == LocalAuthMethod.BIOMETRIC
    assert record.key_tag == KeyTag.BIOMETRIC_PREFERRED
    assert gate.prompts[0][0] == GatePolicy.BIOMETRIC_OR_PASSCODE

    status = await api_client.device_status(orchestrator.device_id)
    assert status.method == AuthMethod.ASYMMETRIC_KEY
    assert status.has_key

    result = await orchestrator.authenticate("alice")
    assert result.succeeded
    assert result.token
    assert _events(orchestrator)[-4:] == [
        FlowEvent.BEGIN_SIGN_IN,
        FlowEvent.CHALLENGE_RECEIVED,
        FlowEvent.SIGNED,
        FlowEvent.VERIFIED,
    ]


async def test_no_local_gate_never_creates_a_key(orchestrator, gate, keys, monkeypatch):
    gate.biometrics = False
    gate.passcode = False
    created = []
    monkeypatch.setattr(keys, "create_key", lambda tag: created.append(tag))

    result = await orchestrator.enroll("alice", ADDRESS)

    assert result.state == FlowState.OFFER_FALLBACK
    assert result.fallback == Fallback.OUT_OF_BAND
    assert created == []
    assert gate.prompts == []


async def test_out_of_band_enrollment_and_code_retry(orchestrator, gate, delivery):
    gate.biometrics = False
    gate.passcode = False
    await orchestrator.enroll("alice", ADDRESS)

    result = await orchestrator.enroll_out_of_band("alice", ADDRESS)
    assert result.succeeded
    assert orchestrator.local_state.record.method == LocalAuthMethod.OUT_OF_BAND

    result = await orchestrator.authenticate("alice")
    assert result.state == FlowState.AWAITING_CODE
    assert delivery.sent[-1][0] == ADDRESS
    code = delivery.last_code

    wrong = "000000" if code != "000000" else "111111"
    result = await orchestrator.submit_code("alice", wrong)
    assert result.state == FlowState.AWAITING_CODE

    result = await orchestrator.submit_code("alice", code)
    assert result.succeeded
    assert result.token
    assert len(delivery.sent) == 1


async def test_declined_biometric_offers_passcode_without_retrying_biometric(orchestrator, gate, keys):
    gate.script(GateFailure.DECLINED)

    result = await orchestrator.enroll("alice", ADDRESS)

    assert result.state == FlowState.OFFER_FALLBACK
    assert result.fallback == Fallback.PASSCODE
    assert result.failure == GateFailure.DECLINED
    assert keys.get_key(KeyTag.BIOMETRIC_PREFERRED) is None

    result = await orchestrator.accept_passcode_fallback()

    assert result.succeeded
    assert orchestrator.local_state.record.key_tag == KeyTag.PASSCODE_ONLY
    assert [policy for policy, _ in gate.prompts] == [GatePolicy.BIOMETRIC_OR_PASSCODE, GatePolicy.PASSCODE_ONLY]


async def test_declining_the_fallback_returns_to_idle(orchestrator, gate, api_client):
    gate.script(GateFailure.DECLINED)
    await orchestrator.enroll("alice", ADDRESS)

    result = await orchestrator.decline_fallback()

    assert result.state == FlowState.IDLE
    assert not orchestrator.local_state.record.is_enrolled
    status = await api_client.device_status(orchestrator.device_id)
    assert status.enrolled is False


async def test_unavailable_biometric_cascades_to_passcode_automatically(orchestrator, gate):
    gate.script(GateFailure.UNAVAILABLE)

    result = await orchestrator.enroll("alice", ADDRESS)

    assert result.succeeded
    assert orchestrator.local_state.record.method == LocalAuthMethod.PASSCODE
    assert FlowEvent.BIOMETRIC_UNAVAILABLE in _events(orchestrator)
    assert FlowEvent.FALLBACK_ACCEPTED not in _events(orchestrator)


@pytest.mark.parametrize("failure", [GateFailure.LOCKED_OUT, GateFailure.NOT_CONFIGURED, GateFailure.OTHER])
async def test_other_gate_failures_fail_without_retry(orchestrator, gate, keys, failure):
    gate.script(failure)

    result = await orchestrator.enroll("alice", ADDRESS)

    assert result.state == FlowState.FAILED
    assert result.failure == failure
    assert result.message == f"Simulated gate failure: {failure.value}"
    assert len(gate.prompts) == 1
    assert keys.active_key() is None


async def test_basic_device_enrolls_passcode_only(orchestrator, gate):
    gate.biometrics = False

    result = await orchestrator.enroll("alice", ADDRESS)

    assert result.succeeded
    assert orchestrator.local_state.record.key_tag == KeyTag.PASSCODE_ONLY
    assert [policy for policy, _ in gate.prompts] == [GatePolicy.PASSCODE_ONLY]


async def test_server_rejection_fails_enrollment_and_discards_key(orchestrator, api_client, keys):
    await api_client.enroll("bob", orchestrator.device_id, AuthMethod.OUT_OF_BAND_CODE, address=ADDRESS)

    result = await orchestrator.enroll("alice", ADDRESS)

    assert result.state == FlowState.FAILED
    assert "another user" in result.message
    assert keys.active_key() is None
    assert not orchestrator.local_state.record.is_enrolled


async def test_declined_sign_in_returns_to_idle_then_code_fallback(orchestrator, gate, delivery):
    await orchestrator.enroll("alice", ADDRESS)
    gate.script(GateFailure.DECLINED)

    result = await orchestrator.authenticate("alice")

    assert result.state == FlowState.IDLE
    assert result.failure == GateFailure.DECLINED
    assert delivery.sent == []

    result = await orchestrator.request_code("alice")
    assert result.state == FlowState.AWAITING_CODE

    result = await orchestrator.submit_code("alice", delivery.last_code)
    assert result.succeeded


async def test_locked_out_sign_in_fails(orchestrator, gate):
    await orchestrator.enroll("alice", ADDRESS)
    gate.script(GateFailure.LOCKED_OUT)

    result = await orchestrator.authenticate("alice")

    assert result.state == FlowState.FAILED
    assert result.failure == GateFailure.LOCKED_OUT


async def test_downgraded_device_goes_straight_to_codes(orchestrator, gate, keys, api_client):
    await orchestrator.enroll("alice", ADDRESS)

    result = await orchestrator.downgrade()
    assert keys.active_key() is None
    assert orchestrator.local_state.record.method == LocalAuthMethod.OUT_OF_BAND
    status = await api_client.device_status(orchestrator.device_id)
    assert status.has_key is False
    assert result.state == FlowState.IDLE

    prompts_before = len(gate.prompts)
    result = await orchestrator.authenticate("alice")

    assert result.state == FlowState.AWAITING_CODE
    assert len(gate.prompts) == prompts_before
    assert FlowEvent.OUT_OF_BAND_REQUIRED in _events(orchestrator)


async def test_upgrade_from_codes_to_key(orchestrator, gate, api_client):
    gate.biometrics = False
    gate.passcode = False
    await orchestrator.enroll("alice", ADDRESS)
    await orchestrator.enroll_out_of_band("alice", ADDRESS)

    gate.passcode = True
    result = await orchestrator.upgrade()

    assert result.succeeded
    status = await api_client.device_status(orchestrator.device_id)
    assert status.method == AuthMethod.ASYMMETRIC_KEY
    assert orchestrator.local_state.record.method == LocalAuthMethod.PASSCODE

    result = await orchestrator.authenticate("alice")
    assert result.succeeded


async def test_consumed_code_ends_the_attempt(orchestrator, api_client, gate, delivery):
    gate.biometrics = False
    gate.passcode = False
    await orchestrator.enroll("alice", ADDRESS)
    await orchestrator.enroll_out_of_band("alice", ADDRESS)
    await orchestrator.request_code("alice")
    code = delivery.last_code

    await api_client.verify_code("alice", code)
    result = await orchestrator.submit_code("alice", code)

    assert result.state == FlowState.FAILED


async def test_stale_code_typo_keeps_waiting_for_outstanding_code(orchestrator, api_client, gate, delivery):
    gate.biometrics = False
    gate.passcode = False
    await orchestrator.enroll("alice", ADDRESS)
    await orchestrator.enroll_out_of_band("alice", ADDRESS)
    await orchestrator.request_code("alice")
    stale = delivery.last_code
    await api_client.verify_code("alice", stale)

    result = await orchestrator.request_code("alice")
    assert result.state == FlowState.AWAITING_CODE
    outstanding = delivery.last_code

    result = await orchestrator.submit_code("alice", stale)
    assert result.state == FlowState.AWAITING_CODE

    result = await orchestrator.submit_code("alice", outstanding)
    assert result.succeeded


async def test_unenroll_clears_everything_but_device_id(orchestrator, api_client, keys):
    await orchestrator.enroll("alice", ADDRESS)
    device_id = orchestrator.device_id

    result = await orchestrator.unenroll()

    assert result.message == "Device unenrolled"
    assert keys.active_key() is None
    assert not orchestrator.local_state.record.is_enrolled
    assert orchestrator.device_id == device_id
    status = await api_client.device_status(device_id)
    assert status.enrolled is False


async def test_sign_in_requires_enrollment(orchestrator):
    with pytest.raises(NotEnrolled):
        await orchestrator.authenticate("alice")


async def test_submit_code_without_request_is_invalid(orchestrator):
    with pytest.raises(InvalidTransition):
        await orchestrator.submit_code("alice", "123456")


async def test_accept_fallback_requires_passcode_offer(orchestrator, gate):
    gate.biometrics = False
    gate.passcode = False
    await orchestrator.enroll("alice", ADDRESS)

    with pytest.raises(InvalidTransition):
        await orchestrator.accept_passcode_fallback()


def test_every_state_can_reset():
    for state in FlowState:
        assert TRANSITIONS[(state, FlowEvent.RESET)] == FlowState.IDLE


def test_terminal_states_only_leave_by_reset():
    for state in (FlowState.SUCCESS, FlowState.FAILED):
        events = {event for (source, event) in TRANSITIONS if source == state}
        assert events == {FlowEvent.RESET}
