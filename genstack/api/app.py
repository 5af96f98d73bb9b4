"""
GenStack API
============

REST and WebSocket interface for app generation sessions.

This API provides:
- Session control (start generation, cancel, list, inspect, delete)
- Preview app control (start, stop, status, logs)
- Real-time generation and container events via WebSocket

Services are built once in the lifespan handler and stored on
``app.state.services``; route handlers read them from the request.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from genstack import __version__
from genstack.api.events import LiveChannel
from genstack.api.validation import GenerationRequest, SessionAccepted
from genstack.containers import CircuitBreaker, ContainerService, HttpReadinessPoller
from genstack.database.store import PostgresSessionStore, SessionStore
from genstack.generation.capabilities import CapabilityServices
from genstack.generation.messages import MessageTracker
from genstack.generation.orchestrator import Orchestrator
from genstack.llm.client import LLMClient
from genstack.sandbox import CommandExecutor, SandboxFilesystem
from genstack.utils.config import Config
from genstack.utils.errors import GenStackError, SessionBusy, SessionNotFound
from genstack.utils.logging import get_logger, set_request_id, setup_structured_logging

logger = get_logger(__name__)


# =============================================================================
# Service container
# =============================================================================

@dataclass
class AppServices:
    """Everything the routes need, constructed once per process."""
    config: Config
    channel: LiveChannel
    filesystem: SandboxFilesystem
    executor: CommandExecutor
    llm: LLMClient
    messages: MessageTracker
    containers: ContainerService
    orchestrator: Orchestrator
    store: Optional[PostgresSessionStore] = None
    app_tasks: Dict[str, asyncio.Task] = field(default_factory=dict)


def build_services(
    config: Config,
    store: Optional[PostgresSessionStore] = None,
    docker_client: Any = None,
) -> AppServices:
    channel = LiveChannel()
    filesystem = SandboxFilesystem(
        Path(config.generation.generated_dir),
        Path(config.generation.templates_dir),
    )
    executor = CommandExecutor(filesystem, config.commands)
    llm = LLMClient(config.llm)
    messages = MessageTracker(channel.publish, store)
    containers = ContainerService(
        config.containers,
        breaker=CircuitBreaker(config.circuit_breaker),
        retry_config=config.conflict_retry,
        readiness=HttpReadinessPoller(config.readiness),
        client=docker_client,
        event_callback=channel.publish,
    )
    orchestrator = Orchestrator(
        CapabilityServices(
            llm=llm,
            filesystem=filesystem,
            executor=executor,
            messages=messages,
            generation=config.generation,
            publisher=channel.publish,
            store=store,
        ),
        install_timeout=config.commands.install_timeout_seconds,
    )
    return AppServices(
        config=config,
        channel=channel,
        filesystem=filesystem,
        executor=executor,
        llm=llm,
        messages=messages,
        containers=containers,
        orchestrator=orchestrator,
        store=store,
    )


async def _connect_store(config: Config) -> Optional[PostgresSessionStore]:
    store = PostgresSessionStore(
        config.database.database_url,
        min_size=config.database.min_pool_size,
        max_size=config.database.max_pool_size,
    )
    try:
        await store.connect()
        await store.init_schema()
    except Exception as e:
        logger.error(f"Failed to connect to PostgreSQL: {e}")
        logger.warning("Running without persistence - session history is unavailable")
        return None
    return store


async def _recover_stuck_sessions(store: SessionStore, older_than_seconds: float) -> int:
    """Fail sessions a previous process left in ``generating``."""
    stuck = await store.find_stuck_sessions(older_than_seconds)
    now = datetime.now(timezone.utc)
    for session in stuck:
        created_at = session.get("created_at")
        age_minutes = int((now - created_at).total_seconds() // 60) if created_at else 0
        await store.update_session(
            session["id"],
            status="failed",
            error_message=(
                f"Generation interrupted by server restart "
                f"(session was {age_minutes} minutes old)"
            ),
            completed_at=now,
        )
        logger.warning(
            "Marked stuck session as failed",
            extra={"session_id": session["id"], "age_minutes": age_minutes},
        )
    if stuck:
        logger.info(f"Recovered {len(stuck)} stuck session(s)")
    return len(stuck)


def _services(request: Request) -> AppServices:
    return request.app.state.services


def _require_store(services: AppServices) -> PostgresSessionStore:
    if services.store is None:
        raise HTTPException(status_code=503, detail="Session persistence is not available")
    return services.store


# =============================================================================
# FastAPI Application
# =============================================================================

def create_app(config: Optional[Config] = None, services: Optional[AppServices] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Configuration (loaded from .genstack.yaml/environment if omitted)
        services: Prebuilt services; when given, the lifespan handler uses
            them instead of connecting to PostgreSQL and Docker itself
    """
    if config is None:
        config = services.config if services is not None else Config.load_default()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager - runs on startup and shutdown."""
        app_services = services
        if app_services is None:
            logs_dir = Path("logs")
            logs_dir.mkdir(exist_ok=True)
            setup_structured_logging(
                level=config.server.log_level.upper(),
                format_type=config.server.log_format,
                log_file=logs_dir / "genstack.log",
            )
            app_services = build_services(config, store=await _connect_store(config))

        app.state.services = app_services
        logger.info("API starting up...")

        # Containers from a previous process must be gone before new sessions start
        try:
            removed = await app_services.containers.cleanup_orphaned_containers()
            if removed:
                logger.info(f"Cleaned up {removed} orphaned container(s) from previous run")
        except Exception as e:
            logger.error(f"Failed to clean up orphaned containers on startup: {e}")

        if app_services.store is not None:
            try:
                await _recover_stuck_sessions(
                    app_services.store, app_services.config.generation.stuck_after_seconds
                )
            except GenStackError as e:
                logger.error(f"Failed to recover stuck sessions on startup: {e}")

        yield

        logger.info("API shutting down...")
        await app_services.orchestrator.shutdown()
        for task in list(app_services.app_tasks.values()):
            task.cancel()
        await app_services.containers.shutdown()
        if app_services.store is not None:
            await app_services.store.disconnect()
        logger.info("API shutdown complete")

    app = FastAPI(
        title="GenStack API",
        description="Generate full-stack apps from natural language and preview them in sandboxed containers",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        set_request_id(request.headers.get("x-request-id") or f"req-{id(request):x}")
        return await call_next(request)

    @app.exception_handler(GenStackError)
    async def genstack_error_handler(request: Request, exc: GenStackError):
        """Structured JSON for every domain error; stack traces stay in the logs."""
        if isinstance(exc, SessionNotFound):
            status_code = 404
        elif isinstance(exc, SessionBusy):
            status_code = 409
        else:
            status_code = 503 if exc.recoverable else 500
        logger.error(
            f"GenStack error: {exc.error_code}",
            exc_info=status_code >= 500,
            extra={
                "error_code": exc.error_code,
                "category": exc.category.value,
                "recoverable": exc.recoverable,
                "context": exc.context,
            },
        )
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:

    # =========================================================================
    # Health
    # =========================================================================

    @app.get("/api/health")
    async def health_check(request: Request):
        """Database connectivity, circuit breaker state and active work."""
        services = _services(request)
        checks: Dict[str, Any] = {}
        overall_status = "healthy"

        if services.store is None:
            checks["database"] = {"status": "unavailable", "message": "Persistence disabled"}
            overall_status = "degraded"
        else:
            try:
                async with services.store.acquire() as conn:
                    await conn.fetchval("SELECT 1")
                checks["database"] = {"status": "healthy", "message": "Connected and responding"}
            except Exception as e:
                checks["database"] = {"status": "unhealthy", "message": f"Connection failed: {str(e)[:100]}"}
                overall_status = "unhealthy"

        if await services.llm.health_check():
            checks["llm"] = {"status": "healthy", "model": services.llm.model}
        else:
            checks["llm"] = {"status": "unreachable", "base_url": services.llm.base_url}
            if overall_status == "healthy":
                overall_status = "degraded"

        breaker = services.containers.breaker
        checks["container_runtime"] = {
            "status": "unhealthy" if breaker.is_open else "healthy",
            "circuit_open": breaker.is_open,
            "consecutive_failures": breaker.failure_count,
        }
        if breaker.is_open and overall_status == "healthy":
            overall_status = "degraded"

        return {
            "status": overall_status,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": checks,
            "active_containers": len(services.containers.list_containers()),
        }

    # =========================================================================
    # Generation sessions
    # =========================================================================

    @app.post("/api/sessions", status_code=202, response_model=SessionAccepted)
    async def start_generation(body: GenerationRequest, request: Request):
        """Start generating an app. Returns immediately; progress arrives over the WebSocket."""
        services = _services(request)
        session_id = body.resolved_session_id()
        config = body.config.to_config(services.config.generation.default_template)
        await services.orchestrator.start(session_id, body.prompt, config)
        logger.info("Generation accepted", extra={"session_id": session_id})
        return SessionAccepted(session_id=session_id, status="generating")

    @app.post("/api/sessions/{session_id}/cancel")
    async def cancel_generation(session_id: str, request: Request):
        if not _services(request).orchestrator.cancel(session_id):
            raise HTTPException(status_code=409, detail="No active generation for this session")
        return {"session_id": session_id, "cancelled": True}

    @app.get("/api/sessions")
    async def list_sessions(
        request: Request,
        limit: int = Query(50, ge=1, le=200),
        offset: int = Query(0, ge=0),
    ):
        services = _services(request)
        sessions = await _require_store(services).list_sessions(limit=limit, offset=offset)
        for session in sessions:
            session["running"] = services.orchestrator.is_running(session["id"])
        return sessions

    @app.get("/api/sessions/{session_id}")
    async def get_session(session_id: str, request: Request):
        services = _services(request)
        store = _require_store(services)
        session = await store.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        session["running"] = services.orchestrator.is_running(session_id)
        session["messages"] = await store.get_messages(session_id)
        session["files"] = await store.get_files(session_id)
        session["app"] = services.containers.get_status(session_id)
        return session

    @app.delete("/api/sessions/{session_id}")
    async def delete_session(session_id: str, request: Request):
        """Delete a finished session with its sandbox and preview container."""
        services = _services(request)
        if services.orchestrator.is_running(session_id):
            raise SessionBusy(session_id)

        if services.containers.has_container(session_id):
            await services.containers.stop(session_id)

        sandbox_existed = services.filesystem.get_sandbox_path(session_id).exists()
        await asyncio.to_thread(services.filesystem.cleanup_sandbox, session_id)

        deleted = False
        if services.store is not None:
            deleted = await services.store.delete_session(session_id)
        if not deleted and not sandbox_existed:
            raise SessionNotFound(session_id)
        return {"session_id": session_id, "deleted": True}

    # =========================================================================
    # Preview app
    # =========================================================================

    @app.post("/api/sessions/{session_id}/app/start", status_code=202)
    async def start_app(session_id: str, request: Request):
        """Start the generated app in a runner container (install + dev server run in background)."""
        services = _services(request)
        workdir = services.filesystem.get_sandbox_path(session_id)
        if not workdir.is_dir():
            raise SessionNotFound(session_id)

        pending = services.app_tasks.get(session_id)
        if pending is not None and not pending.done():
            raise SessionBusy(session_id)

        task = asyncio.create_task(_run_app(services, session_id, workdir))
        services.app_tasks[session_id] = task
        task.add_done_callback(lambda t: _forget_app_task(services, session_id, t))
        return {"session_id": session_id, "status": "creating"}

    @app.post("/api/sessions/{session_id}/app/stop")
    async def stop_app(session_id: str, request: Request):
        services = _services(request)
        pending = services.app_tasks.get(session_id)
        if pending is not None and not pending.done():
            pending.cancel()
        await services.containers.stop(session_id)
        return {"session_id": session_id, "status": "stopped"}

    @app.get("/api/sessions/{session_id}/app/status")
    async def app_status(session_id: str, request: Request):
        status = _services(request).containers.get_status(session_id)
        if status is None:
            return {"session_id": session_id, "status": "stopped"}
        return status

    @app.get("/api/sessions/{session_id}/app/logs")
    async def app_logs(session_id: str, request: Request, limit: Optional[int] = Query(None, ge=1, le=1000)):
        logs = _services(request).containers.get_logs(session_id, limit)
        return {"session_id": session_id, "logs": logs}

    # =========================================================================
    # WebSocket for Real-time Updates
    # =========================================================================

    @app.websocket("/api/ws/{session_id}")
    async def websocket_endpoint(websocket: WebSocket, session_id: str):
        """Room-scoped live channel for one session."""
        channel: LiveChannel = websocket.app.state.services.channel
        await websocket.accept()
        await channel.connect(session_id, websocket)

        try:
            await websocket.send_json({
                "type": "connected",
                "session_id": session_id,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            })

            # Keep connection alive and handle ping/pong
            while True:
                data = await websocket.receive_text()
                if data == "ping":
                    await websocket.send_text("pong")
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug(f"WebSocket closed: {e}", extra={"session_id": session_id})
        finally:
            await channel.disconnect(session_id, websocket)


async def _run_app(services: AppServices, session_id: str, workdir: Path) -> None:
    try:
        await services.containers.start_app(session_id, workdir)
    except GenStackError as e:
        logger.error(f"Failed to start app: {e}", extra={"session_id": session_id})
        await services.channel.publish(session_id, "error", {"message": str(e), "stage": "app"})
    except Exception as e:
        logger.exception(f"Unexpected error starting app: {e}", extra={"session_id": session_id})
        await services.channel.publish(
            session_id, "error", {"message": "Failed to start app", "stage": "app"}
        )


def _forget_app_task(services: AppServices, session_id: str, task: asyncio.Task) -> None:
    if services.app_tasks.get(session_id) is task:
        del services.app_tasks[session_id]


app = create_app()
