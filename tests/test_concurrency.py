import asyncio

import pytest

from conftest import public_key_b64, sign_b64
from devicemfa.core.exceptions import AlreadyUsed
from devicemfa.models import AuthMethod
from devicemfa.services.credential_authority import CredentialAuthority, VerificationResult

ADDRESS = "+15551234567"


def _authority(session, delivery, clock):
    return CredentialAuthority(session, delivery=delivery, clock=clock, restrict_code_addresses=True)


async def test_concurrent_signature_verification_succeeds_once(session_factory, delivery, clock, private_key):
    async with session_factory() as setup:
        authority = _authority(setup, delivery, clock)
        await authority.enroll("alice", "D1", AuthMethod.ASYMMETRIC_KEY, public_key=public_key_b64(private_key))
        grant = await authority.initiate_challenge("alice", "D1")
    signature = sign_b64(private_key, grant.nonce)

    async with session_factory() as first, session_factory() as second:
        outcomes = await asyncio.gather(
            _authority(first, delivery, clock).verify_signature(grant.challenge_id, "alice", "D1", signature),
            _authority(second, delivery, clock).verify_signature(grant.challenge_id, "alice", "D1", signature),
            return_exceptions=True,
        )

    successes = [o for o in outcomes if isinstance(o, VerificationResult)]
    failures = [o for o in outcomes if isinstance(o, AlreadyUsed)]
    assert len(successes) == 1
    assert len(failures) == 1


async def test_concurrent_code_verification_succeeds_once(session_factory, delivery, clock):
    async with session_factory() as setup:
        authority = _authority(setup, delivery, clock)
        await authority.enroll("alice", "D1", AuthMethod.OUT_OF_BAND_CODE, address=ADDRESS)
        await authority.request_code("alice", ADDRESS)
    code = delivery.last_code

    async with session_factory() as first, session_factory() as second:
        outcomes = await asyncio.gather(
            _authority(first, delivery, clock).verify_code("alice", code),
            _authority(second, delivery, clock).verify_code("alice", code),
            return_exceptions=True,
        )

    assert sum(isinstance(o, VerificationResult) for o in outcomes) == 1
    assert sum(isinstance(o, AlreadyUsed) for o in outcomes) == 1


async def test_consume_is_conditional_on_unused(session_factory, delivery, clock, private_key):
    from devicemfa.models import Challenge

    async with session_factory() as session:
        authority = _authority(session, delivery, clock)
        await authority.enroll("alice", "D1", AuthMethod.ASYMMETRIC_KEY, public_key=public_key_b64(private_key))
        grant = await authority.initiate_challenge("alice", "D1")

        assert await authority._consume(Challenge, grant.challenge_id, clock()) is True
        assert await authority._consume(Challenge, grant.challenge_id, clock()) is False
        await session.commit()

    clock.advance(1)
    async with session_factory() as session:
        authority = _authority(session, delivery, clock)
        with pytest.raises(AlreadyUsed):
            await authority.verify_signature(grant.challenge_id, "alice", "D1", sign_b64(private_key, grant.nonce))
