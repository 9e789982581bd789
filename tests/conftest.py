import base64
from datetime import datetime, timedelta
from typing import List, Tuple

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from httpx import ASGITransport, AsyncClient
from sqlalchemy.pool import NullPool

from devicemfa.api.deps import get_code_delivery
from devicemfa.client.network import MFAApiClient
from devicemfa.database import build_engine, build_session_factory, get_db, init_db
from devicemfa.main import app
from devicemfa.services.credential_authority import CredentialAuthority
from devicemfa.services.delivery import CodeDelivery


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingCodeDelivery(CodeDelivery):
    def __init__(self):
        self.sent: List[Tuple[str, str]] = []

    async def deliver(self, address: str, code: str) -> None:
        self.sent.append((address, code))

    @property
    def last_code(self) -> str:
        return self.sent[-1][1]


def make_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


def public_key_b64(key: ec.EllipticCurvePrivateKey) -> str:
    der = key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return base64.b64encode(der).decode()


def sign_b64(key: ec.EllipticCurvePrivateKey, data: bytes) -> str:
    return base64.b64encode(key.sign(data, ec.ECDSA(hashes.SHA256()))).decode()


@pytest.fixture
async def engine(tmp_path):
    # File database with one connection per session so concurrent sessions really race
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'mfa.db'}", poolclass=NullPool)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, 12, 0, 0))


@pytest.fixture
def delivery():
    return RecordingCodeDelivery()


@pytest.fixture
def authority(db, delivery, clock):
    return CredentialAuthority(
        db,
        delivery=delivery,
        clock=clock,
        challenge_ttl_seconds=300,
        code_ttl_seconds=300,
        restrict_code_addresses=True,
    )


@pytest.fixture
def private_key():
    return make_key()


@pytest.fixture
def app_under_test(session_factory, delivery):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_code_delivery] = lambda: delivery
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
async def http_client(app_under_test):
    async with AsyncClient(transport=ASGITransport(app=app_under_test), base_url="http://test") as client:
        yield client


@pytest.fixture
async def api_client(app_under_test):
    async with MFAApiClient("http://test", transport=ASGITransport(app=app_under_test)) as client:
        yield client
