"""Model client and sandbox tools."""

from genstack.llm.client import LLMClient, LLMResponse, TokenUsage, ToolLoopResult
from genstack.llm.tools import TOOL_DEFINITIONS, SandboxTools

__all__ = [
    "LLMClient",
    "LLMResponse",
    "SandboxTools",
    "TOOL_DEFINITIONS",
    "TokenUsage",
    "ToolLoopResult",
]
