"""
Shared fixtures: a manual clock and one store per backend.
"""

from datetime import timedelta

import pytest
import pytest_asyncio
from fakeredis import aioredis as fake_aioredis

from otp_core.clock import ManualClock
from otp_core.config import OTPConfig
from otp_core.crypto import generate_salt, hash_code
from otp_core.engine import OTPEngine
from otp_core.models import OtpRecord
from otp_core.storage import InMemoryOTPStore, RedisOTPStore, SQLAlchemyOTPStore

IDENTITY = "a@b.com"


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def make_record(clock):
    """Build an unsaved record for an identity, valid for ten minutes from now."""
    def _make(identity=IDENTITY, code="123456", **overrides):
        salt = generate_salt()
        now = clock.now()
        fields = dict(
            identity=identity,
            code_hash=hash_code(code, salt),
            salt=salt,
            created_at=now,
            expires_at=now + timedelta(minutes=10),
        )
        fields.update(overrides)
        return OtpRecord(**fields)
    return _make


@pytest_asyncio.fixture
async def memory_store(clock):
    return InMemoryOTPStore(clock=clock)


@pytest_asyncio.fixture
async def sql_store(clock, tmp_path):
    store = SQLAlchemyOTPStore.from_url(f"sqlite+aiosqlite:///{tmp_path / 'otp.db'}", clock=clock)
    await store.create_schema()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def fake_redis():
    redis = fake_aioredis.FakeRedis()
    await redis.flushall()
    yield redis
    await redis.aclose()


@pytest_asyncio.fixture
async def redis_store(clock, fake_redis):
    return RedisOTPStore(fake_redis, clock=clock)


@pytest_asyncio.fixture(params=["memory", "sql", "redis"])
async def store(request, clock, tmp_path):
    """Each test using this fixture runs once per backend."""
    if request.param == "memory":
        yield InMemoryOTPStore(clock=clock)
    elif request.param == "sql":
        store = SQLAlchemyOTPStore.from_url(f"sqlite+aiosqlite:///{tmp_path / 'otp.db'}", clock=clock)
        await store.create_schema()
        yield store
        await store.close()
    else:
        redis = fake_aioredis.FakeRedis()
        await redis.flushall()
        yield RedisOTPStore(redis, clock=clock)
        await redis.aclose()


@pytest.fixture
def engine(store, clock):
    return OTPEngine(store, config=OTPConfig(), clock=clock)
