"""Generation pipeline: models, diagnostics, message tracking, capabilities, orchestrator."""

from genstack.generation.models import (
    CapabilityConfig,
    CapabilityContext,
    CapabilityResult,
    GenerationMetrics,
    InputMode,
    Session,
    SessionStatus,
)
from genstack.generation.orchestrator import Orchestrator

__all__ = [
    "CapabilityConfig",
    "CapabilityContext",
    "CapabilityResult",
    "GenerationMetrics",
    "InputMode",
    "Orchestrator",
    "Session",
    "SessionStatus",
]
