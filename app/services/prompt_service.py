"""Prompt construction and generation for the demo endpoints.

The service validates and normalizes user text, builds the instruction
prompt and delegates to the LLM adapter. Quota accounting is not its
concern; the routes wrap these calls with the usage limiter.
"""

import re

from app.adapters.llm.base import AbstractLLMClient
from app.core.config import settings
from app.core.errors import ValidationAppError

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def normalize_user_text(text: str) -> str:
    """Normalize line breaks and whitespace, drop control characters."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _CONTROL_CHARS_RE.sub("", text)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def build_improve_prompt(original_prompt: str) -> str:
    """Instruction asking the model to rewrite ``original_prompt``."""
    return f"""
You are an expert prompt engineer specializing in optimizing AI prompts for better results.

Transform the following prompt into a more effective, clear, and specific version that will generate better AI responses.

Original prompt: "{original_prompt}"

Guidelines for improvement:
- Make the request more specific and detailed
- Add context and background information when needed
- Specify the desired format, style, or structure
- Include relevant constraints or requirements
- Clarify the target audience or purpose
- Break down complex requests into steps if needed

Improved prompt structure should include:
1. Clear objective/goal
2. Specific requirements or constraints
3. Desired output format
4. Context or background (if relevant)
5. Examples (if helpful)

Provide ONLY the improved prompt without any explanation or additional text.
""".strip()


def build_draft_prompt(idea: str, persona: str) -> str:
    """Instruction turning a research idea into an abstract or introduction."""
    section = "abstract" if persona == "researcher" else "introduction"
    return f"""
You are an expert academic writing assistant specialized in research paper abstracts and introductions.

Transform the following research idea into a professional academic {section}.

Research idea: "{idea}"

Guidelines:
- Use formal academic language
- Include clear research objectives
- Mention the methodology approach
- Highlight expected contributions
- Follow standard academic writing conventions

Generate a well-structured {section} (200-300 words).
""".strip()


class PromptService:
    """Generation use cases backed by an LLM client."""

    def __init__(self, llm: AbstractLLMClient) -> None:
        self.llm = llm

    def _validated(self, text: str, field: str) -> str:
        """Normalize ``text`` and enforce the length bounds.

        Raises:
            ValidationAppError: If the text is blank or too long.
        """
        text = normalize_user_text(text)
        if not text:
            raise ValidationAppError(
                code=f"{field}_empty",
                message=f"The {field} must not be empty.",
            )
        max_chars = settings.app.max_prompt_chars
        if len(text) > max_chars:
            raise ValidationAppError(
                code=f"{field}_too_long",
                message=f"The {field} is too long (maximum {max_chars} characters).",
                details={"max_chars": max_chars, "actual_value": len(text)},
            )
        return text

    def validate_prompt(self, prompt: str) -> str:
        return self._validated(prompt, "prompt")

    def validate_idea(self, idea: str) -> str:
        return self._validated(idea, "idea")

    async def improve_prompt(self, prompt: str) -> str:
        """Rewrite an already validated prompt.

        Raises:
            LLMAppError: If the provider fails.
        """
        return await self.llm.generate(build_improve_prompt(prompt), temperature=0.7)

    async def generate_draft(self, idea: str, persona: str = "researcher") -> str:
        """Expand an already validated idea into an abstract or introduction.

        Raises:
            LLMAppError: If the provider fails.
        """
        return await self.llm.generate(build_draft_prompt(idea, persona), temperature=0.7)
