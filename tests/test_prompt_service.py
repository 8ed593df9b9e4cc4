"""Unit tests for prompt validation and construction."""

import pytest

from app.core.config import settings
from app.core.errors import ValidationAppError
from app.services.prompt_service import (
    PromptService,
    build_draft_prompt,
    normalize_user_text,
)


def test_normalize_user_text() -> None:
    raw = "  hello\r\n\r\n\r\n\r\nworld\x00\t\t again  "

    assert normalize_user_text(raw) == "hello\n\nworld again"


@pytest.mark.parametrize(
    ("persona", "section"),
    [("researcher", "abstract"), ("student", "introduction")],
)
def test_draft_prompt_section_follows_persona(persona: str, section: str) -> None:
    prompt = build_draft_prompt("coral bleaching", persona)

    assert f"academic {section}" in prompt
    assert '"coral bleaching"' in prompt


class TestValidation:
    def test_whitespace_only_prompt_is_empty(self, llm_client) -> None:
        with pytest.raises(ValidationAppError) as exc_info:
            PromptService(llm_client).validate_prompt(" \n\t ")

        assert exc_info.value.code == "prompt_empty"

    def test_too_long_idea_reports_limit(self, llm_client) -> None:
        max_chars = settings.app.max_prompt_chars

        with pytest.raises(ValidationAppError) as exc_info:
            PromptService(llm_client).validate_idea("y" * (max_chars + 1))

        assert exc_info.value.code == "idea_too_long"
        assert exc_info.value.details["max_chars"] == max_chars


@pytest.mark.asyncio
async def test_improve_prompt_delegates_to_llm(llm_client) -> None:
    result = await PromptService(llm_client).improve_prompt("summarize this")

    assert result == "An improved, specific prompt."
    sent = llm_client.generate.await_args.args[0]
    assert 'Original prompt: "summarize this"' in sent
