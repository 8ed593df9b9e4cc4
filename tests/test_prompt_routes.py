"""HTTP tests for the quota-gated generation endpoints."""

from unittest.mock import AsyncMock, patch

import pytest

from app.adapters.cache import NoOpCache
from app.adapters.usage_store import AbstractUsageStore
from app.core.config import settings
from app.core.errors import DurableStoreError, LLMAppError
from app.services.usage_limit_service import UsageLimitService

XFF = {"X-Forwarded-For": "203.0.113.5"}


async def _improve(client, prompt: str = "write a poem about the sea"):
    return await client.post("/v1/prompts/improve", json={"prompt": prompt}, headers=XFF)


class TestImprovePrompt:
    @pytest.mark.asyncio
    async def test_success_consumes_quota_and_sets_headers(self, api_client, llm_client) -> None:
        response = await _improve(api_client)

        assert response.status_code == 200
        data = response.json()
        assert data["improvedPrompt"] == "An improved, specific prompt."
        assert data["usageCount"] == 1
        assert data["remainingCount"] == 2
        assert response.headers["X-Usage-Limit"] == "3"
        assert response.headers["X-Usage-Remaining"] == "2"
        assert "X-Usage-Reset" in response.headers
        llm_client.generate.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_fourth_call_is_rejected_with_429(self, api_client, llm_client) -> None:
        for _ in range(3):
            assert (await _improve(api_client)).status_code == 200

        response = await _improve(api_client)

        assert response.status_code == 429
        error = response.json()["error"]
        assert error["code"] == "USAGE_LIMIT_EXCEEDED"
        assert error["details"]["reset_time"]
        assert error["details"]["max_usage"] == 3
        assert int(response.headers["Retry-After"]) > 0
        assert llm_client.generate.await_count == 3

    @pytest.mark.asyncio
    async def test_provider_failure_rolls_back(self, api_client, llm_client) -> None:
        llm_client.generate.side_effect = LLMAppError(
            code="llm_provider_error", message="The generation provider failed"
        )

        response = await _improve(api_client)
        check = (await api_client.get("/v1/usage-limit/check", headers=XFF)).json()

        assert response.status_code == 502
        assert response.json()["error"]["code"] == "llm_provider_error"
        assert check["usageCount"] == 0
        assert check["remainingCount"] == 3

    @pytest.mark.asyncio
    async def test_too_long_prompt_does_not_consume_quota(self, api_client, llm_client) -> None:
        response = await _improve(api_client, "x" * (settings.app.max_prompt_chars + 1))
        check = (await api_client.get("/v1/usage-limit/check", headers=XFF)).json()

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "prompt_too_long"
        assert check["usageCount"] == 0
        llm_client.generate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_prompt_is_rejected(self, api_client) -> None:
        response = await api_client.post("/v1/prompts/improve", json={"prompt": ""})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_quota_is_per_ip(self, api_client) -> None:
        for _ in range(3):
            await _improve(api_client)

        response = await api_client.post(
            "/v1/prompts/improve",
            json={"prompt": "hello"},
            headers={"X-Forwarded-For": "198.51.100.20"},
        )

        assert response.status_code == 200


class TestGenerateDraft:
    @pytest.mark.asyncio
    async def test_generate_with_persona(self, api_client, llm_client) -> None:
        llm_client.generate.return_value = "An introduction."

        response = await api_client.post(
            "/v1/prompts/generate",
            json={"idea": "soil microbes and drought", "persona": "student"},
            headers=XFF,
        )

        assert response.status_code == 200
        assert response.json()["content"] == "An introduction."
        sent_prompt = llm_client.generate.await_args.args[0]
        assert "introduction" in sent_prompt
        assert "soil microbes and drought" in sent_prompt

    @pytest.mark.asyncio
    async def test_unknown_persona_is_rejected(self, api_client) -> None:
        response = await api_client.post(
            "/v1/prompts/generate", json={"idea": "x", "persona": "pirate"}
        )

        assert response.status_code == 422


class TestLimiterFailures:
    @staticmethod
    def _broken_service() -> UsageLimitService:
        store = AsyncMock(spec=AbstractUsageStore)
        failure = DurableStoreError(code="DATABASE_ERROR", message="down")
        store.get.side_effect = failure
        store.increment.side_effect = failure
        return UsageLimitService(NoOpCache(), store)

    @pytest.mark.asyncio
    async def test_fail_open_allows_generation(self, build_client, llm_client) -> None:
        async with build_client(self._broken_service()) as client:
            response = await _improve(client)

        assert response.status_code == 200
        llm_client.generate.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_fail_closed_returns_503(self, build_client, llm_client) -> None:
        with patch.object(settings.usage, "fail_open", False):
            async with build_client(self._broken_service()) as client:
                response = await _improve(client)

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "DATABASE_ERROR"
        llm_client.generate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_backend_runs_degraded(self, build_client) -> None:
        async with build_client(UsageLimitService(NoOpCache())) as client:
            responses = [await _improve(client) for _ in range(5)]

        assert all(r.status_code == 200 for r in responses)
