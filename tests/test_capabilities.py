"""
Tests for the pipeline stages.

The model is scripted through httpx.MockTransport. The compiler check runs
against a mocked executor so no npm or tsc is needed.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from genstack.generation.capabilities import (
    CapabilityServices,
    CodeGenerationCapability,
    CompilerCheckCapability,
    PlanningCapability,
    TemplateCapability,
)
from genstack.generation.messages import MessageTracker
from genstack.generation.models import CapabilityConfig, CapabilityContext
from genstack.llm import LLMClient
from genstack.sandbox.commands import CommandResult
from genstack.utils.errors import LLMRequestError

from conftest import ScriptedLLM, chat_response, tool_call

TSC_ERROR = "src/index.ts(3,7): error TS2322: Type 'string' is not assignable to type 'number'."


def make_services(test_config, filesystem, executor, publisher, store, llm=None):
    llm = llm or ScriptedLLM([])
    return CapabilityServices(
        llm=LLMClient(test_config.llm, transport=llm.transport),
        filesystem=filesystem,
        executor=executor,
        messages=MessageTracker(publisher, store),
        generation=test_config.generation,
        publisher=publisher,
        store=store,
    )


def make_context(filesystem, **config):
    return CapabilityContext(
        session_id="s1",
        prompt="A todo app",
        sandbox_path=filesystem.initialize_sandbox("s1"),
        config=CapabilityConfig(**config),
    )


def result(command, stdout="", stderr="", exit_code=0, timed_out=False):
    return CommandResult(
        command=command,
        success=exit_code == 0 and not timed_out,
        stdout=stdout,
        stderr=stderr,
        exit_code=exit_code,
        execution_time_ms=5,
        timed_out=timed_out,
    )


class TestTemplateCapability:

    @pytest.mark.unit
    def test_skipped_in_naive_mode(self, test_config, filesystem, executor, publisher, store):
        capability = TemplateCapability(make_services(test_config, filesystem, executor, publisher, store), "base")
        assert capability.can_skip(make_context(filesystem)) is True
        assert capability.can_skip(make_context(filesystem, input_mode="template")) is False

    @pytest.mark.asyncio
    async def test_copies_publishes_and_persists(
        self, test_config, filesystem, executor, publisher, store, make_template
    ):
        make_template("base", {"package.json": "{}", "server/src/index.ts": "export {}"})
        services = make_services(test_config, filesystem, executor, publisher, store)
        context = make_context(filesystem, input_mode="template")

        outcome = await TemplateCapability(services, "base").execute(context)
        await services.messages.cleanup("s1")

        assert outcome.success
        assert list(outcome.context_updates["template_files"]) == ["package.json", "server/src/index.ts"]
        assert [e["path"] for e in publisher.of_type("file_updated")] == ["package.json", "server/src/index.ts"]
        assert store.files[("s1", "server/src/index.ts")] == "export {}"
        assert (context.sandbox_path / "package.json").is_file()

    @pytest.mark.asyncio
    async def test_missing_template_fails(self, test_config, filesystem, executor, publisher, store):
        services = make_services(test_config, filesystem, executor, publisher, store)
        outcome = await TemplateCapability(services, "absent").execute(make_context(filesystem, input_mode="template"))

        assert outcome.success is False
        assert "absent" in outcome.error


class TestPlanningCapability:

    @pytest.mark.asyncio
    async def test_plan_recorded(self, test_config, filesystem, executor, publisher, store):
        llm = ScriptedLLM([chat_response("  1. Models\n2. Routes  ", prompt_tokens=100, completion_tokens=50)])
        services = make_services(test_config, filesystem, executor, publisher, store, llm)

        outcome = await PlanningCapability(services).execute(make_context(filesystem, planning=True))

        assert outcome.success
        assert outcome.context_updates["plan"] == "1. Models\n2. Routes"
        assert outcome.cost == pytest.approx((100 * 1.0 + 50 * 2.0) / 1_000_000)
        assert "tools" not in llm.requests[0]
        assert llm.requests[0]["messages"][0]["role"] == "system"
        assert any("Architectural Plan" in m["content"] for m in publisher.of_type("llm_message"))

    @pytest.mark.asyncio
    async def test_empty_plan_fails(self, test_config, filesystem, executor, publisher, store):
        services = make_services(test_config, filesystem, executor, publisher, store, ScriptedLLM([chat_response("   ")]))
        outcome = await PlanningCapability(services).execute(make_context(filesystem, planning=True))
        assert outcome.success is False

    @pytest.mark.unit
    def test_skipped_without_planning(self, test_config, filesystem, executor, publisher, store):
        capability = PlanningCapability(make_services(test_config, filesystem, executor, publisher, store))
        assert capability.can_skip(make_context(filesystem)) is True


class TestCodeGenerationCapability:

    @pytest.mark.asyncio
    async def test_writes_files_and_streams_events(self, test_config, filesystem, executor, publisher, store):
        llm = ScriptedLLM([
            chat_response("Creating the server", tool_calls=[
                tool_call("c1", "writeFile", {"path": "server/src/index.ts", "content": "console.log(1)"}),
            ]),
            chat_response("Finished"),
        ])
        services = make_services(test_config, filesystem, executor, publisher, store, llm)
        context = make_context(filesystem)

        outcome = await CodeGenerationCapability(services, max_tool_calls=10).execute(context)
        await services.messages.cleanup("s1")

        assert outcome.success
        assert outcome.tool_calls == 1
        assert outcome.input_tokens == 20
        assert filesystem.read_file("s1", "server/src/index.ts") == "console.log(1)"
        assert publisher.of_type("tool_call")[0] == {
            "id": "c1",
            "name": "writeFile",
            "args": {"path": "server/src/index.ts", "content": "console.log(1)"},
        }
        assert publisher.of_type("tool_result")[0]["toolName"] == "writeFile"
        assert store.files[("s1", "server/src/index.ts")] == "console.log(1)"

        assistant = [m for m in publisher.of_type("llm_message") if m["role"] == "assistant"]
        assert [m["content"] for m in assistant] == ["Creating the server", "Finished"]
        assert assistant[0]["id"] != assistant[1]["id"]

    @pytest.mark.asyncio
    async def test_plan_included_in_user_prompt(self, test_config, filesystem, executor, publisher, store):
        llm = ScriptedLLM([chat_response("Done")])
        services = make_services(test_config, filesystem, executor, publisher, store, llm)
        context = make_context(filesystem, planning=True)
        context.plan = "Use Express"

        await CodeGenerationCapability(services, max_tool_calls=5).execute(context)

        user_prompt = llm.requests[0]["messages"][1]["content"]
        assert "Architectural Plan:\nUse Express" in user_prompt

    @pytest.mark.asyncio
    async def test_model_error_is_failure(self, test_config, filesystem, executor, publisher, store):
        services = make_services(test_config, filesystem, executor, publisher, store)
        services.llm.run_with_tools = AsyncMock(
            side_effect=LLMRequestError("Model API returned 503", status_code=503)
        )

        outcome = await CodeGenerationCapability(services, max_tool_calls=5).execute(make_context(filesystem))

        assert outcome.success is False
        assert "503" in outcome.error

    @pytest.mark.asyncio
    async def test_cancelled_is_failure(self, test_config, filesystem, executor, publisher, store):
        services = make_services(test_config, filesystem, executor, publisher, store)
        context = make_context(filesystem)
        context.cancel_event.set()

        outcome = await CodeGenerationCapability(services, max_tool_calls=5).execute(context)

        assert outcome.success is False
        assert outcome.error == "Generation cancelled"


class TestCompilerCheckCapability:
    """Test the check-fix loop"""

    def make_executor(self, tsc_outputs, install=None):
        executor = MagicMock()
        outputs = list(tsc_outputs)
        commands = []

        async def execute(session_id, command, timeout=None):
            commands.append(command)
            if command == "npm install":
                return install or result(command)
            stdout = outputs.pop(0) if outputs else ""
            return result(command, stdout=stdout, exit_code=2 if stdout else 0)

        executor.execute = AsyncMock(side_effect=execute)
        executor.commands = commands
        return executor

    @pytest.mark.unit
    def test_skipped_unless_enabled(self, test_config, filesystem, executor, publisher, store):
        capability = CompilerCheckCapability(make_services(test_config, filesystem, executor, publisher, store))
        assert capability.can_skip(make_context(filesystem)) is True
        assert capability.can_skip(make_context(filesystem, compiler_checks=True)) is False

    @pytest.mark.asyncio
    async def test_clean_project_needs_no_fix(self, test_config, filesystem, publisher, store):
        executor = self.make_executor([""])
        llm = ScriptedLLM([])
        services = make_services(test_config, filesystem, executor, publisher, store, llm)
        filesystem.write_file("s1", "server/tsconfig.json", "{}")
        context = make_context(filesystem, compiler_checks=True)

        outcome = await CompilerCheckCapability(services).execute(context)

        assert outcome.success
        assert outcome.context_updates["remaining_errors"] == 0
        assert outcome.context_updates["iteration"] == 0
        assert llm.requests == []
        assert executor.commands == ["npm install", "npx tsc --noEmit --project server/tsconfig.json"]

    @pytest.mark.asyncio
    async def test_fixes_errors_then_stops(self, test_config, filesystem, publisher, store):
        executor = self.make_executor([TSC_ERROR, ""])
        llm = ScriptedLLM([
            chat_response(None, tool_calls=[
                tool_call("f1", "writeFile", {"path": "server/src/index.ts", "content": "const n = 1"}),
            ]),
            chat_response("Fixed"),
        ])
        services = make_services(test_config, filesystem, executor, publisher, store, llm)
        filesystem.write_file("s1", "server/tsconfig.json", "{}")
        context = make_context(filesystem, compiler_checks=True)

        outcome = await CompilerCheckCapability(services).execute(context)

        assert outcome.success
        assert outcome.tool_calls == 1
        assert outcome.context_updates["iteration"] == 1
        assert outcome.context_updates["remaining_errors"] == 0
        fix_prompt = llm.requests[0]["messages"][1]["content"]
        assert "iteration 1 of 3" in fix_prompt
        assert "server/src/index.ts:3:7 - TS2322" in fix_prompt

    @pytest.mark.asyncio
    async def test_stops_at_max_iterations(self, test_config, filesystem, publisher, store):
        executor = self.make_executor([TSC_ERROR] * 5)
        llm = ScriptedLLM([chat_response("Tried"), chat_response("Tried again")])
        services = make_services(test_config, filesystem, executor, publisher, store, llm)
        filesystem.write_file("s1", "server/tsconfig.json", "{}")
        context = make_context(filesystem, compiler_checks=True, max_iterations=2)

        outcome = await CompilerCheckCapability(services).execute(context)

        assert outcome.success
        assert outcome.context_updates["iteration"] == 2
        assert outcome.context_updates["remaining_errors"] == 1
        assert len(llm.requests) == 2
        statuses = [m["content"] for m in publisher.of_type("llm_message") if m["role"] == "system"]
        assert statuses[-1] == "1 error remain after 2 iterations"

    @pytest.mark.asyncio
    async def test_prisma_errors_reported(self, test_config, filesystem, publisher, store):
        executor = MagicMock()

        async def execute(session_id, command, timeout=None):
            if command == "npx prisma validate":
                return result(command, stderr="Error: Unknown type Strin", exit_code=1)
            return result(command)

        executor.execute = AsyncMock(side_effect=execute)
        llm = ScriptedLLM([chat_response("Fixed schema")])
        services = make_services(test_config, filesystem, executor, publisher, store, llm)
        filesystem.write_file("s1", "prisma/schema.prisma", "model Item { id Strin }")
        context = make_context(filesystem, compiler_checks=True, max_iterations=1)

        outcome = await CompilerCheckCapability(services).execute(context)

        assert outcome.context_updates["remaining_errors"] == 1
        assert "Prisma schema validation found 1 error" in llm.requests[0]["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_install_timeout_fails(self, test_config, filesystem, publisher, store):
        executor = self.make_executor([], install=result("npm install", exit_code=-1, timed_out=True))
        services = make_services(test_config, filesystem, executor, publisher, store)

        outcome = await CompilerCheckCapability(services, install_timeout=1.0).execute(
            make_context(filesystem, compiler_checks=True)
        )

        assert outcome.success is False
        assert "npm install" in outcome.error
