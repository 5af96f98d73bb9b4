"""
Input Validation
================

Pydantic models for API request bodies. FastAPI rejects invalid input with
a 422 before any handler runs.
"""

import re
import uuid
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

from genstack.generation.models import MAX_ITERATIONS, MIN_ITERATIONS, CapabilityConfig

MAX_PROMPT_LENGTH = 20000
VALID_SESSION_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_\-]{1,64}$")
VALID_TEMPLATE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_\-]+$")


class CapabilityConfigRequest(BaseModel):
    """Which pipeline stages to run."""
    input_mode: Literal["naive", "template"] = "naive"
    template_name: Optional[str] = Field(None, max_length=100)
    planning: bool = False
    compiler_checks: bool = False
    max_iterations: int = Field(3, ge=MIN_ITERATIONS, le=MAX_ITERATIONS)

    @field_validator("template_name")
    @classmethod
    def validate_template_name(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not VALID_TEMPLATE_NAME_PATTERN.match(v):
            raise ValueError("Template name may only contain letters, numbers, hyphens and underscores")
        return v

    def to_config(self, default_template: str) -> CapabilityConfig:
        return CapabilityConfig(
            input_mode=self.input_mode,
            template_name=self.template_name or default_template,
            planning=self.planning,
            compiler_checks=self.compiler_checks,
            max_iterations=self.max_iterations,
        )


class GenerationRequest(BaseModel):
    """Body of POST /api/sessions."""
    prompt: str = Field(..., min_length=1, max_length=MAX_PROMPT_LENGTH)
    session_id: Optional[str] = None
    config: CapabilityConfigRequest = Field(default_factory=CapabilityConfigRequest)

    @field_validator("prompt")
    @classmethod
    def validate_prompt(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Prompt must not be blank")
        return v.strip()

    @field_validator("session_id")
    @classmethod
    def validate_session_id(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not VALID_SESSION_ID_PATTERN.match(v):
            raise ValueError("Session id may only contain letters, numbers, hyphens and underscores")
        return v

    def resolved_session_id(self) -> str:
        return self.session_id or str(uuid.uuid4())


class SessionAccepted(BaseModel):
    session_id: str
    status: str
