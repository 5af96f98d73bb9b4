"""
Generation Models
=================

Session lifecycle, pipeline configuration, and the context/result types
exchanged between the orchestrator and its capabilities.
"""

import asyncio
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from genstack.generation.diagnostics import DiagnosticError
from genstack.utils.errors import InvalidConfigError

MIN_ITERATIONS = 1
MAX_ITERATIONS = 5


class SessionStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED)


class InputMode(str, Enum):
    NAIVE = "naive"
    TEMPLATE = "template"


@dataclass
class CapabilityConfig:
    """Which pipeline stages run for a session."""
    input_mode: InputMode = InputMode.NAIVE
    template_name: str = "vite-fullstack-base"
    planning: bool = False
    compiler_checks: bool = False
    max_iterations: int = 3

    def __post_init__(self):
        try:
            self.input_mode = InputMode(self.input_mode)
        except ValueError:
            raise InvalidConfigError(
                "input_mode", self.input_mode,
                f"must be one of {[mode.value for mode in InputMode]}"
            ) from None
        if not isinstance(self.max_iterations, int) or isinstance(self.max_iterations, bool):
            raise InvalidConfigError("max_iterations", self.max_iterations, "must be an integer")
        if not MIN_ITERATIONS <= self.max_iterations <= MAX_ITERATIONS:
            raise InvalidConfigError(
                "max_iterations", self.max_iterations,
                f"must be between {MIN_ITERATIONS} and {MAX_ITERATIONS}"
            )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CapabilityConfig":
        known = {key: data[key] for key in (
            "input_mode", "template_name", "planning", "compiler_checks", "max_iterations"
        ) if key in data}
        return cls(**known)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["input_mode"] = self.input_mode.value
        return data


@dataclass(frozen=True)
class CapabilityResult:
    """Outcome of one capability invocation."""
    success: bool
    error: Optional[str] = None
    tool_calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    context_updates: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "context_updates", MappingProxyType(dict(self.context_updates)))

    @classmethod
    def failure(cls, error: str, **kwargs) -> "CapabilityResult":
        return cls(success=False, error=error, **kwargs)


# Fields a capability may set through CapabilityResult.context_updates
CONTEXT_UPDATE_FIELDS = {"template_files", "plan", "iteration", "diagnostics", "remaining_errors"}


@dataclass
class CapabilityContext:
    """Mutable state threaded through the stages of one session run."""
    session_id: str
    prompt: str
    sandbox_path: Path
    config: CapabilityConfig
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    template_files: List[str] = field(default_factory=list)
    plan: Optional[str] = None
    iteration: int = 0
    diagnostics: List[DiagnosticError] = field(default_factory=list)
    remaining_errors: int = 0
    tool_calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    start_time: float = field(default_factory=time.monotonic)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def apply(self, result: CapabilityResult) -> None:
        """Accumulate usage from ``result`` and merge its context updates."""
        self.tool_calls += result.tool_calls
        self.input_tokens += result.input_tokens
        self.output_tokens += result.output_tokens
        self.cost += result.cost
        for key, value in result.context_updates.items():
            if key not in CONTEXT_UPDATE_FIELDS:
                raise ValueError(f"Unknown context update: {key}")
            setattr(self, key, value)


@dataclass
class GenerationMetrics:
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    duration_ms: int = 0
    steps: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @classmethod
    def from_context(cls, context: CapabilityContext) -> "GenerationMetrics":
        return cls(
            input_tokens=context.input_tokens,
            output_tokens=context.output_tokens,
            cost=context.cost,
            duration_ms=int((time.monotonic() - context.start_time) * 1000),
            steps=context.tool_calls,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["total_tokens"] = self.total_tokens
        return data


@dataclass
class Session:
    """A generation request and its outcome."""
    id: str
    prompt: str
    config: CapabilityConfig
    status: SessionStatus = SessionStatus.PENDING
    error_message: Optional[str] = None
    metrics: GenerationMetrics = field(default_factory=GenerationMetrics)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "prompt": self.prompt,
            "config": self.config.to_dict(),
            "status": self.status.value,
            "error_message": self.error_message,
            "metrics": self.metrics.to_dict(),
        }
