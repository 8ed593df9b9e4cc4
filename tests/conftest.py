"""Pytest configuration and fixtures shared across all test modules.

Environment variables are set before any ``app`` import so the global
settings object is built for tests: no Redis, no durable store, a dummy
LLM key and known admin keys.
"""

import os

# CRITICAL: Set these before any imports that might load settings
os.environ["APP_ENV"] = "testing"
os.environ.pop("REDIS_URL", None)
os.environ.pop("USAGE_STORE_URL", None)

os.environ.setdefault("LLM_PROVIDER", "openai")
os.environ.setdefault("LLM_MODEL", "gpt-4o-mini")
os.environ.setdefault("LLM_API_KEY", "test-key-123")
os.environ.setdefault("APP_ADMIN_API_KEYS", "test-admin-key-123,test-admin-key-456")

from unittest.mock import AsyncMock

import fakeredis
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.adapters.cache import RedisCache
from app.adapters.llm.base import AbstractLLMClient
from app.api.routes.prompts import get_llm_client
from app.core.app_factory import create_app
from app.core.usage_limit import get_usage_limit_service
from app.services.usage_limit_service import UsageLimitService


class FakeClock:
    """Controllable replacement for ``time.time``."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def fake_redis():
    """In-memory Redis, flushed before and closed after every test."""
    r = fakeredis.FakeAsyncRedis(decode_responses=True)
    await r.flushall()
    yield r
    await r.aclose()


@pytest.fixture
def redis_cache(fake_redis) -> RedisCache:
    return RedisCache(fake_redis, default_ttl=3600)


@pytest.fixture
def usage_service(redis_cache: RedisCache, clock: FakeClock) -> UsageLimitService:
    return UsageLimitService(
        redis_cache,
        max_usage=3,
        window_seconds=24 * 3600,
        clock=clock,
    )


@pytest.fixture
def llm_client() -> AsyncMock:
    llm = AsyncMock(spec=AbstractLLMClient)
    llm.generate.return_value = "An improved, specific prompt."
    return llm


@pytest.fixture
def live_usage_service(redis_cache: RedisCache) -> UsageLimitService:
    """Service on wall-clock time, as the routes use it."""
    return UsageLimitService(redis_cache, max_usage=3, window_seconds=24 * 3600)


@pytest.fixture
def build_client(llm_client):
    """Factory for an HTTP client on a fresh app with the given usage service."""

    def _build(service: UsageLimitService) -> AsyncClient:
        app = create_app()
        app.dependency_overrides[get_usage_limit_service] = lambda: service
        app.dependency_overrides[get_llm_client] = lambda: llm_client
        return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")

    return _build


@pytest_asyncio.fixture
async def api_client(build_client, live_usage_service):
    async with build_client(live_usage_service) as client:
        yield client
