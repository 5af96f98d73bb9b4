"""
Generation Orchestrator
=======================

Runs the capability pipeline for a session.

- Stages run strictly in order: template seed, planning, code generation,
  compiler check. Stages disabled by the session's CapabilityConfig are
  skipped.
- The first stage that reports ``success=False`` aborts the run; the error
  is sent to live subscribers and persisted before the session becomes
  ``failed``.
- At most one run per session is in flight. A second request while one is
  active raises SessionBusy immediately.
- ``cancel`` sets the run's cancellation event. Stages observe it at their
  suspension points and the session finalizes as ``cancelled``.
- A run that outlives ``generation.timeout_seconds`` is cancelled and the
  session becomes ``failed``.
"""

import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional

from genstack.generation.capabilities import (
    Capability,
    CapabilityServices,
    CodeGenerationCapability,
    CompilerCheckCapability,
    PlanningCapability,
    TemplateCapability,
)
from genstack.generation.models import (
    CapabilityConfig,
    CapabilityContext,
    CapabilityResult,
    GenerationMetrics,
    InputMode,
    Session,
    SessionStatus,
)
from genstack.utils.errors import CapabilityFailure, SessionBusy
from genstack.utils.logging import clear_context, get_logger, set_session_id, set_stage

logger = get_logger(__name__)


class Orchestrator:
    """
    Sequences capabilities per session.

    All collaborators arrive through ``services``; the orchestrator owns only
    the registry of active runs.
    """

    def __init__(self, services: CapabilityServices, install_timeout: float = 180.0):
        self.services = services
        self.install_timeout = install_timeout
        self._active: Dict[str, asyncio.Event] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()

    def build_pipeline(self, config: CapabilityConfig) -> List[Capability]:
        generation = self.services.generation
        stages: List[Capability] = []
        if config.input_mode == InputMode.TEMPLATE:
            stages.append(TemplateCapability(self.services, config.template_name))
        if config.planning:
            stages.append(PlanningCapability(self.services))
        stages.append(CodeGenerationCapability(self.services, self.services.llm.config.max_tool_calls))
        if config.compiler_checks:
            stages.append(CompilerCheckCapability(
                self.services,
                fix_max_tool_calls=generation.fix_max_tool_calls,
                install_timeout=self.install_timeout,
            ))
        return stages

    # =========================================================================
    # Run control
    # =========================================================================

    async def start(self, session_id: str, prompt: str, config: CapabilityConfig) -> asyncio.Task:
        """
        Reserve the session and launch its run in the background.

        Raises:
            SessionBusy: a run for this session is already active
        """
        async with self._lock:
            if session_id in self._active:
                raise SessionBusy(session_id)
            cancel_event = asyncio.Event()
            self._active[session_id] = cancel_event
            task = asyncio.create_task(self._run_reserved(session_id, prompt, config, cancel_event))
            self._tasks[session_id] = task
        return task

    async def run(self, session_id: str, prompt: str, config: CapabilityConfig) -> SessionStatus:
        """Run the pipeline for a session and return its final status."""
        task = await self.start(session_id, prompt, config)
        return await task

    def cancel(self, session_id: str) -> bool:
        event = self._active.get(session_id)
        if event is None:
            return False
        event.set()
        logger.info("Cancellation requested", extra={"session_id": session_id})
        return True

    def is_running(self, session_id: str) -> bool:
        return session_id in self._active

    async def shutdown(self) -> None:
        """Cancel every active run and wait for them to finalize."""
        for event in list(self._active.values()):
            event.set()
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run_reserved(
        self,
        session_id: str,
        prompt: str,
        config: CapabilityConfig,
        cancel_event: asyncio.Event,
    ) -> SessionStatus:
        set_session_id(session_id)
        try:
            return await self._execute(Session(session_id, prompt, config), cancel_event)
        finally:
            # Flush persistence before the session can be reserved again
            await self.services.messages.cleanup(session_id)
            async with self._lock:
                self._active.pop(session_id, None)
                self._tasks.pop(session_id, None)
            clear_context()

    # =========================================================================
    # Pipeline
    # =========================================================================

    async def _execute(self, session: Session, cancel_event: asyncio.Event) -> SessionStatus:
        sandbox = self.services.filesystem.initialize_sandbox(session.id)
        context = CapabilityContext(
            session_id=session.id,
            prompt=session.prompt,
            sandbox_path=sandbox,
            config=session.config,
            cancel_event=cancel_event,
        )

        session.status = SessionStatus.GENERATING
        await self._persist_created(session)
        await self.services.messages.emit(session.id, "user", session.prompt)

        logger.info(
            "Generation started",
            extra={"session_id": session.id, "config": session.config.to_dict()},
        )

        try:
            timeout = self.services.generation.timeout_seconds
            if timeout > 0:
                await asyncio.wait_for(self._run_pipeline(session, context), timeout)
            else:
                await self._run_pipeline(session, context)

        except asyncio.TimeoutError:
            logger.warning(
                "Generation timeout reached, aborting",
                extra={"session_id": session.id, "timeout_seconds": timeout},
            )
            await self._fail(session, f"Generation timed out after {timeout:g} seconds", None)
        except asyncio.CancelledError:
            session.status = SessionStatus.CANCELLED
            await self._finalize(session, context)
            raise
        except Exception as e:
            logger.error(
                f"Unexpected error during generation: {e}",
                exc_info=True,
                extra={"session_id": session.id},
            )
            await self._fail(session, "Generation failed: internal error", None)
        finally:
            set_stage(None)

        if session.status == SessionStatus.GENERATING:
            session.status = SessionStatus.CANCELLED if context.cancelled else SessionStatus.COMPLETED

        await self._finalize(session, context)
        return session.status

    async def _run_pipeline(self, session: Session, context: CapabilityContext) -> None:
        for capability in self.build_pipeline(session.config):
            if context.cancelled:
                break
            if capability.can_skip(context):
                continue

            result = await self._run_stage(capability, context)
            context.apply(result)

            if context.cancelled:
                break
            if not result.success:
                failure = CapabilityFailure(capability.name, result.error or "unknown error")
                await self._fail(session, failure.message, capability.name)
                break

    async def _run_stage(self, capability: Capability, context: CapabilityContext) -> CapabilityResult:
        set_stage(capability.name)
        logger.info(
            f"Stage {capability.name} started",
            extra={"session_id": context.session_id, "stage": capability.name},
        )
        try:
            result = await capability.execute(context)
        except CapabilityFailure as e:
            return CapabilityResult.failure(e.reason)

        logger.info(
            f"Stage {capability.name} finished",
            extra={
                "session_id": context.session_id,
                "stage": capability.name,
                "success": result.success,
                "tool_calls": result.tool_calls,
            },
        )
        return result

    async def _fail(self, session: Session, message: str, stage: Optional[str]) -> None:
        session.status = SessionStatus.FAILED
        session.error_message = message
        logger.warning(message, extra={"session_id": session.id, "stage": stage})
        await self._publish(session.id, "error", {"message": message, "stage": stage})
        await self.services.messages.emit(session.id, "system", message)

    async def _finalize(self, session: Session, context: CapabilityContext) -> None:
        session.metrics = GenerationMetrics.from_context(context)
        metrics = session.metrics

        logger.info(
            "Generation finished",
            extra={
                "session_id": session.id,
                "status": session.status.value,
                "total_tokens": metrics.total_tokens,
                "cost": metrics.cost,
                "duration_ms": metrics.duration_ms,
                "steps": metrics.steps,
            },
        )

        store = self.services.store
        if store is not None:
            try:
                await store.update_session(
                    session.id,
                    status=session.status.value,
                    error_message=session.error_message,
                    input_tokens=metrics.input_tokens,
                    output_tokens=metrics.output_tokens,
                    total_tokens=metrics.total_tokens,
                    cost=metrics.cost,
                    duration_ms=metrics.duration_ms,
                    steps=metrics.steps,
                    completed_at=datetime.now(timezone.utc),
                )
            except Exception as e:
                logger.error(
                    f"Failed to persist session result: {e}",
                    extra={"session_id": session.id},
                )

        await self._publish(session.id, "generation_complete", {
            "status": session.status.value,
            "error": session.error_message,
            "metrics": metrics.to_dict(),
        })

    async def _persist_created(self, session: Session) -> None:
        store = self.services.store
        if store is None:
            return
        try:
            await store.create_session(
                session.id, session.prompt, session.config.to_dict(), session.status.value
            )
        except Exception as e:
            logger.error(
                f"Failed to persist new session: {e}",
                extra={"session_id": session.id},
            )

    async def _publish(self, session_id: str, event: str, data: Dict[str, object]) -> None:
        publisher = self.services.publisher
        if publisher is None:
            return
        try:
            await publisher(session_id, event, data)
        except Exception as e:
            logger.warning(f"Failed to publish {event}: {e}", extra={"session_id": session_id})
