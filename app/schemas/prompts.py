"""Pydantic schemas for the gated generation endpoints."""

from __future__ import annotations

from typing import Literal

from pydantic import Field

from app.schemas.usage import CamelModel

Persona = Literal["researcher", "student"]


class ImprovePromptRequest(CamelModel):
    prompt: str = Field(
        ...,
        min_length=1,
        description="Prompt to rewrite into a clearer, more specific version.",
    )


class ImprovePromptResponse(CamelModel):
    improved_prompt: str = Field(..., description="Rewritten prompt.")
    usage_count: int = Field(..., description="Uses consumed in the current window.")
    remaining_count: int = Field(..., description="Uses left in the current window.")


class GenerateDraftRequest(CamelModel):
    idea: str = Field(
        ...,
        min_length=1,
        description="Research idea to expand.",
    )
    persona: Persona = Field(
        "researcher",
        description="'researcher' produces an abstract, 'student' an introduction.",
    )


class GenerateDraftResponse(CamelModel):
    content: str = Field(..., description="Generated abstract or introduction.")
    usage_count: int
    remaining_count: int
