"""Architectural planning stage: one model call, no tools."""

from genstack.generation.capabilities.base import Capability
from genstack.generation.models import CapabilityContext, CapabilityResult
from genstack.generation.prompts import get_planning_prompt
from genstack.utils.errors import LLMRequestError
from genstack.utils.logging import get_logger

logger = get_logger(__name__)


class PlanningCapability(Capability):
    name = "Planning"

    def can_skip(self, context: CapabilityContext) -> bool:
        return not context.config.planning

    async def execute(self, context: CapabilityContext) -> CapabilityResult:
        self.validate_context(context)
        await self.emit_status(context, "Generating architectural plan...")

        llm = self.services.llm
        try:
            response = await llm.complete(context.prompt, system_prompt=get_planning_prompt())
        except LLMRequestError as e:
            return CapabilityResult.failure(e.message)

        plan = response.content.strip()
        if not plan:
            return CapabilityResult.failure("Model returned an empty plan")

        await self.emit_message(context, "assistant", f"## Architectural Plan\n\n{plan}\n\n---\n\n")

        cost = llm.calculate_cost(response.usage)
        logger.info(
            "Planning phase completed",
            extra={
                "session_id": context.session_id,
                "input_tokens": response.usage.input_tokens,
                "output_tokens": response.usage.output_tokens,
                "plan_length": len(plan),
            },
        )
        return CapabilityResult(
            success=True,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            cost=cost,
            context_updates={"plan": plan},
        )
