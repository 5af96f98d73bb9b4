"""
Capability Base
===============

A capability is one pipeline stage. Every capability receives the shared
``CapabilityContext`` and returns a ``CapabilityResult``; expected failures
are reported as ``success=False`` rather than raised.

Services are injected through ``CapabilityServices`` so capabilities never
reach for module-level singletons.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from genstack.database.store import SessionStore
from genstack.generation.messages import MessageTracker, Publisher
from genstack.generation.models import CapabilityContext, CapabilityResult
from genstack.llm.client import LLMClient, ToolLoopResult
from genstack.llm.tools import SandboxTools
from genstack.sandbox.commands import CommandExecutor
from genstack.sandbox.filesystem import SandboxFilesystem
from genstack.utils.config import GenerationConfig
from genstack.utils.errors import CapabilityFailure
from genstack.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class CapabilityServices:
    """Collaborators shared by every capability of an orchestrator."""
    llm: LLMClient
    filesystem: SandboxFilesystem
    executor: CommandExecutor
    messages: MessageTracker
    generation: GenerationConfig
    publisher: Optional[Publisher] = None
    store: Optional[SessionStore] = None


class Capability(ABC):
    """Base class for pipeline stages."""

    name = "Capability"

    def __init__(self, services: CapabilityServices):
        self.services = services

    def can_skip(self, context: CapabilityContext) -> bool:
        return False

    def validate_context(self, context: CapabilityContext) -> None:
        """
        Check the preconditions this stage relies on.

        Raises:
            CapabilityFailure: a required part of the context is missing
        """
        if not context.session_id:
            raise CapabilityFailure(self.name, "context is missing session_id")
        if not context.sandbox_path:
            raise CapabilityFailure(self.name, "context is missing sandbox_path")

    @abstractmethod
    async def execute(self, context: CapabilityContext) -> CapabilityResult:
        ...

    # =========================================================================
    # Event emission
    # =========================================================================

    async def emit_message(self, context: CapabilityContext, role: str, content: str) -> None:
        await self.services.messages.emit(context.session_id, role, content)

    async def emit_status(self, context: CapabilityContext, message: str) -> None:
        await self.emit_message(context, "system", message)

    async def emit_event(self, context: CapabilityContext, event: str, data: Dict[str, Any]) -> None:
        if self.services.publisher is not None:
            await self.services.publisher(context.session_id, event, data)

    async def publish_file(self, context: CapabilityContext, path: str, content: str) -> None:
        """Announce a written file and persist it; persistence failures only warn."""
        await self.emit_event(context, "file_updated", {"path": path, "content": content})
        if self.services.store is None:
            return
        try:
            await self.services.store.save_file(context.session_id, path, content)
        except Exception as e:
            logger.warning(
                f"Failed to persist file {path}: {e}",
                extra={"session_id": context.session_id},
            )

    # =========================================================================
    # Model tool loop
    # =========================================================================

    async def run_tool_loop(
        self,
        context: CapabilityContext,
        system_prompt: str,
        user_prompt: str,
        max_tool_calls: int,
    ) -> ToolLoopResult:
        """Run the model with sandbox tools, streaming every step to the timeline."""
        session_id = context.session_id

        async def on_file_written(path: str, content: str) -> None:
            await self.publish_file(context, path, content)

        async def on_warning(warning: str) -> None:
            await self.emit_status(context, warning)

        async def on_text(text: str) -> None:
            await self.emit_message(context, "assistant", text)

        async def on_tool_call(call_id: str, name: str, arguments: Dict[str, Any]) -> None:
            await self.emit_event(context, "tool_call", {"id": call_id, "name": name, "args": arguments})

        async def on_tool_result(call_id: str, name: str, result: str) -> None:
            await self.emit_event(context, "tool_result", {"id": call_id, "toolName": name, "result": result})
            self.services.messages.reset(session_id)

        tools = SandboxTools(
            session_id,
            self.services.filesystem,
            self.services.executor,
            on_file_written=on_file_written,
            on_warning=on_warning,
        )
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        return await self.services.llm.run_with_tools(
            messages,
            tools,
            max_tool_calls=max_tool_calls,
            on_text=on_text,
            on_tool_call=on_tool_call,
            on_tool_result=on_tool_result,
            cancel_event=context.cancel_event,
        )

    def loop_result(self, loop: ToolLoopResult, **kwargs) -> CapabilityResult:
        """Successful CapabilityResult carrying the loop's usage and cost."""
        return CapabilityResult(
            success=True,
            tool_calls=loop.tool_calls,
            input_tokens=loop.usage.input_tokens,
            output_tokens=loop.usage.output_tokens,
            cost=self.services.llm.calculate_cost(loop.usage),
            **kwargs,
        )
