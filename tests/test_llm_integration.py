"""Integration tests for LLM adapter layer."""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from openai import APIConnectionError

from app.adapters.llm import OpenAIClient, create_llm_client
from app.core.config import LLMSettings
from app.core.errors import LLMAppError, ValidationAppError


def _completion(content: str | None) -> MagicMock:
    response = MagicMock()
    response.choices = [MagicMock(message=MagicMock(content=content))]
    return response


class TestOpenAIClientIntegration:
    """Test OpenAI client integration with mocked API calls."""

    @pytest.mark.asyncio
    async def test_generate_returns_stripped_text(self) -> None:
        """Test successful text generation from OpenAI client."""
        client = OpenAIClient(api_key="test-key-123", model="gpt-4o-mini")

        with patch.object(
            client.client.chat.completions,
            "create",
            new_callable=AsyncMock,
            return_value=_completion("  A sharper prompt.\n"),
        ):
            result = await client.generate("make it better")

        assert result == "A sharper prompt."

    @pytest.mark.asyncio
    async def test_generate_builds_messages_and_params(self) -> None:
        """System instruction goes first; only known provider options pass through."""
        client = OpenAIClient(api_key="test-key", model="gpt-4o-mini")

        with patch.object(
            client.client.chat.completions,
            "create",
            new_callable=AsyncMock,
            return_value=_completion("ok"),
        ) as mock_create:
            await client.generate(
                "Test", system="Be terse.", temperature=0.2, max_tokens=50, bogus=1
            )

        call_kwargs = mock_create.call_args.kwargs
        assert call_kwargs["model"] == "gpt-4o-mini"
        assert call_kwargs["messages"] == [
            {"role": "system", "content": "Be terse."},
            {"role": "user", "content": "Test"},
        ]
        assert call_kwargs["temperature"] == 0.2
        assert call_kwargs["max_tokens"] == 50
        assert "bogus" not in call_kwargs

    @pytest.mark.asyncio
    async def test_provider_error_is_wrapped(self) -> None:
        client = OpenAIClient(api_key="test-key", model="gpt-4o")
        failure = APIConnectionError(request=httpx.Request("POST", "https://api.openai.com"))

        with patch.object(
            client.client.chat.completions,
            "create",
            new_callable=AsyncMock,
            side_effect=failure,
        ):
            with pytest.raises(LLMAppError) as exc_info:
                await client.generate("Test")

        assert exc_info.value.code == "llm_provider_error"
        assert exc_info.value.details["model"] == "gpt-4o"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", [None, "", "   "])
    async def test_empty_completion_raises(self, content) -> None:
        client = OpenAIClient(api_key="test-key", model="gpt-4o")

        with patch.object(
            client.client.chat.completions,
            "create",
            new_callable=AsyncMock,
            return_value=_completion(content),
        ):
            with pytest.raises(LLMAppError) as exc_info:
                await client.generate("Test")

        assert exc_info.value.code == "llm_empty_response"


class TestLLMFactory:
    """Test LLM client factory pattern."""

    def test_create_llm_client_with_settings(self) -> None:
        client = create_llm_client(
            LLMSettings(
                provider="openai",
                api_key="test-key",
                model="gpt-4o-mini",
                base_url=None,
                timeout_seconds=30.0,
            )
        )

        assert isinstance(client, OpenAIClient)
        assert client.model == "gpt-4o-mini"

    def test_create_llm_client_defaults_to_global_settings(self) -> None:
        """The test environment provides an OpenAI key."""
        client = create_llm_client()

        assert isinstance(client, OpenAIClient)

    def test_create_llm_client_missing_api_key_raises_error(self) -> None:
        llm_settings = LLMSettings(provider="openai", api_key=None, model="gpt-4o")

        with pytest.raises(ValidationAppError, match="requires LLM_API_KEY") as exc:
            create_llm_client(llm_settings)
        assert exc.value.code == "llm_missing_api_key"

    def test_create_llm_client_unknown_provider_raises_error(self) -> None:
        llm_settings = LLMSettings(provider="unknown-provider", api_key="k", model="gpt-4o")

        with pytest.raises(ValidationAppError, match="Unknown LLM provider") as exc:
            create_llm_client(llm_settings)
        assert exc.value.code == "llm_unknown_provider"
