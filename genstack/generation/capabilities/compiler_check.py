"""
Compiler Check
==============

Iterative self-correction stage. Each pass type-checks both workspaces (and
validates the Prisma schema), feeds the parsed diagnostics back to the model
for a focused fix run, and re-checks. The loop stops early once the project
is clean and never runs more than ``max_iterations`` fix passes.
"""

from typing import List, Tuple

from genstack.generation.capabilities.base import Capability, CapabilityServices
from genstack.generation.diagnostics import (
    DiagnosticError,
    format_for_model,
    format_prisma_errors_for_model,
    parse_prisma_errors,
    parse_typescript_errors,
)
from genstack.generation.models import CapabilityContext, CapabilityResult
from genstack.generation.prompts import get_error_fixing_prompt
from genstack.llm.client import TokenUsage
from genstack.utils.errors import GenStackError
from genstack.utils.logging import get_logger, log_duration

logger = get_logger(__name__)

WORKSPACES = ("server", "client")


class CompilerCheckCapability(Capability):
    name = "CompilerCheck"

    def __init__(
        self,
        services: CapabilityServices,
        fix_max_tool_calls: int = 5,
        install_timeout: float = 180.0,
    ):
        super().__init__(services)
        self.fix_max_tool_calls = fix_max_tool_calls
        self.install_timeout = install_timeout

    def can_skip(self, context: CapabilityContext) -> bool:
        return not context.config.compiler_checks

    async def execute(self, context: CapabilityContext) -> CapabilityResult:
        self.validate_context(context)
        max_iterations = context.config.max_iterations
        usage = TokenUsage()
        tool_calls = 0
        passes = 0

        try:
            await self._install(context)
            diagnostics, prisma_errors = await self._check(context)

            while (diagnostics or prisma_errors) and passes < max_iterations:
                if context.cancelled:
                    break
                passes += 1
                context.iteration += 1
                count = len(diagnostics) + len(prisma_errors)
                await self.emit_status(
                    context,
                    f"Found {count} error{'' if count == 1 else 's'}. "
                    f"Fixing (iteration {passes}/{max_iterations})...",
                )

                loop = await self.run_tool_loop(
                    context,
                    get_error_fixing_prompt(),
                    self._fix_prompt(diagnostics, prisma_errors, passes, max_iterations),
                    self.fix_max_tool_calls,
                )
                tool_calls += loop.tool_calls
                usage.input_tokens += loop.usage.input_tokens
                usage.output_tokens += loop.usage.output_tokens
                if loop.cancelled:
                    break

                diagnostics, prisma_errors = await self._check(context)

        except GenStackError as e:
            logger.error(
                f"Compiler check failed: {e.message}",
                extra={"session_id": context.session_id, "iteration": context.iteration},
            )
            return CapabilityResult.failure(
                e.message,
                tool_calls=tool_calls,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                cost=self.services.llm.calculate_cost(usage),
            )

        remaining = len(diagnostics) + len(prisma_errors)
        if remaining == 0:
            await self.emit_status(context, "Type check passed with no errors")
        else:
            await self.emit_status(
                context,
                f"{remaining} error{'' if remaining == 1 else 's'} remain after "
                f"{passes} iteration{'' if passes == 1 else 's'}",
            )

        logger.info(
            "Compiler check finished",
            extra={"session_id": context.session_id, "passes": passes, "remaining_errors": remaining},
        )
        return CapabilityResult(
            success=True,
            tool_calls=tool_calls,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cost=self.services.llm.calculate_cost(usage),
            context_updates={
                "iteration": context.iteration,
                "diagnostics": diagnostics,
                "remaining_errors": remaining,
            },
        )

    async def _install(self, context: CapabilityContext) -> None:
        await self.emit_status(context, "Installing dependencies for type checking...")
        result = await self.services.executor.execute(
            context.session_id, "npm install", timeout=self.install_timeout
        )
        if result.timed_out:
            result.raise_for_status(self.install_timeout)
        if not result.success:
            # Missing packages surface again as TS2307 diagnostics
            logger.warning(
                "npm install failed before type check",
                extra={"session_id": context.session_id, "exit_code": result.exit_code},
            )

    async def _check(self, context: CapabilityContext) -> Tuple[List[DiagnosticError], List[str]]:
        executor = self.services.executor
        sandbox = context.sandbox_path

        prisma_errors: List[str] = []
        if (sandbox / "prisma" / "schema.prisma").is_file():
            result = await executor.execute(context.session_id, "npx prisma validate")
            if result.timed_out:
                result.raise_for_status()
            if not result.success:
                prisma_errors = parse_prisma_errors(result.stderr or result.stdout)

        diagnostics: List[DiagnosticError] = []
        for workspace in WORKSPACES:
            if not (sandbox / workspace / "tsconfig.json").is_file():
                continue
            with log_duration(logger, f"tsc {workspace}", slow_threshold_ms=30_000, workspace=workspace):
                result = await executor.execute(
                    context.session_id, f"npx tsc --noEmit --project {workspace}/tsconfig.json"
                )
            if result.timed_out:
                result.raise_for_status()
            diagnostics.extend(parse_typescript_errors(f"{result.stdout}\n{result.stderr}", workspace))

        return diagnostics, prisma_errors

    @staticmethod
    def _fix_prompt(
        diagnostics: List[DiagnosticError],
        prisma_errors: List[str],
        iteration: int,
        max_iterations: int,
    ) -> str:
        sections = [f"Fix the following errors (iteration {iteration} of {max_iterations}):"]
        if prisma_errors:
            sections.append(format_prisma_errors_for_model(prisma_errors))
        if diagnostics:
            sections.append(format_for_model(diagnostics))
        return "\n\n".join(sections)
