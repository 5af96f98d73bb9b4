"""Main code generation stage: the model builds the app through sandbox tools."""

from genstack.generation.capabilities.base import Capability, CapabilityServices
from genstack.generation.models import CapabilityContext, CapabilityResult
from genstack.generation.prompts import get_code_generation_prompt, get_code_generation_user_prompt
from genstack.utils.errors import GenStackError
from genstack.utils.logging import get_logger

logger = get_logger(__name__)


class CodeGenerationCapability(Capability):
    name = "CodeGeneration"

    def __init__(self, services: CapabilityServices, max_tool_calls: int):
        super().__init__(services)
        self.max_tool_calls = max_tool_calls

    async def execute(self, context: CapabilityContext) -> CapabilityResult:
        self.validate_context(context)
        self.services.filesystem.initialize_sandbox(context.session_id)

        system_prompt = get_code_generation_prompt(context.config, has_plan=bool(context.plan))
        user_prompt = get_code_generation_user_prompt(context.prompt, context.plan)

        await self.emit_status(context, "Generating application code...")
        try:
            loop = await self.run_tool_loop(context, system_prompt, user_prompt, self.max_tool_calls)
        except GenStackError as e:
            logger.error(
                f"Code generation failed: {e.message}",
                extra={"session_id": context.session_id},
            )
            return CapabilityResult.failure(e.message)

        if loop.cancelled:
            return CapabilityResult.failure("Generation cancelled", tool_calls=loop.tool_calls)

        logger.info(
            "Code generation completed",
            extra={
                "session_id": context.session_id,
                "tool_calls": loop.tool_calls,
                "steps": loop.steps,
                "total_tokens": loop.usage.total_tokens,
            },
        )
        return self.loop_result(loop)
