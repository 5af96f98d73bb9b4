"""
Container Service
=================

Owns the runner container of every session and composes the runtime
primitives around the Docker SDK:

- CircuitBreaker gates every create call and counts every failed start step
- PortManager allocates a (client, server) host port pair under the registry lock
- retry_on_conflict wraps runtime calls that may answer 409
- LogStreamDemultiplexer decodes attach/exec sockets into log entries
- HttpReadinessPoller confirms the dev server answers before ``running``

The Docker SDK is synchronous; every call runs in a worker thread.

Lifecycle per session:
    creating -> running -> stopping -> stopped, or error
"""

import asyncio
import socket as _socket
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

import docker
from docker.errors import APIError, ImageNotFound, NotFound
from docker.utils.socket import read as socket_read

from genstack.containers.circuit_breaker import CircuitBreaker
from genstack.containers.log_stream import LogStreamDemultiplexer
from genstack.containers.models import AppLogEntry, ContainerInfo, ContainerStatus
from genstack.containers.ports import PortManager
from genstack.containers.readiness import HttpReadinessPoller
from genstack.containers.retry import retry_on_conflict
from genstack.utils.config import ConflictRetryConfig, ContainerConfig
from genstack.utils.errors import (
    CommandFailed,
    CommandTimeout,
    ContainerLimitReached,
    ContainerStartFailed,
    ReadinessTimeout,
    SessionNotFound,
)
from genstack.utils.logging import get_logger

logger = get_logger(__name__)

EventCallback = Callable[[str, str, Dict[str, Any]], Awaitable[None]]

SESSION_LABEL = "genstack.session_id"
APP_DIR = "/app"
READ_CHUNK_SIZE = 4096


@dataclass
class _ContainerRuntime:
    """Private per-session state that never leaves the service."""
    info: ContainerInfo
    workdir: Path
    logs: Deque[AppLogEntry]
    container: Any = None
    tasks: Set[asyncio.Task] = field(default_factory=set)
    sockets: List[Any] = field(default_factory=list)
    cleanup_handle: Optional[asyncio.TimerHandle] = None
    ready_signal: asyncio.Event = field(default_factory=asyncio.Event)
    ready_cancel: asyncio.Event = field(default_factory=asyncio.Event)


class ContainerService:
    """
    Per-session runner containers.

    One instance is created at startup and shared by every session; all
    mutable state lives on the instance behind ``self._lock``.
    """

    def __init__(
        self,
        config: Optional[ContainerConfig] = None,
        breaker: Optional[CircuitBreaker] = None,
        retry_config: Optional[ConflictRetryConfig] = None,
        readiness: Optional[HttpReadinessPoller] = None,
        client: Optional[docker.DockerClient] = None,
        event_callback: Optional[EventCallback] = None,
    ):
        """
        Initialize the service.

        Args:
            config: Container limits, image and port range
            breaker: Shared circuit breaker (a private one is created if omitted)
            retry_config: Backoff for 409 conflicts
            readiness: HTTP readiness poller
            client: Docker client; ``docker.from_env()`` is used on first need
            event_callback: Optional async callback ``(session_id, event_type, data)``
                receiving ``app_status`` and ``app_log`` events
        """
        self.config = config or ContainerConfig()
        self.breaker = breaker or CircuitBreaker()
        self.retry_config = retry_config or ConflictRetryConfig()
        self.readiness = readiness or HttpReadinessPoller()
        self.ports = PortManager(self.config.port_range_start, self.config.port_range_end)
        self.event_callback = event_callback

        self._client = client
        self._containers: Dict[str, _ContainerRuntime] = {}
        self._lock = asyncio.Lock()
        self._image_lock = asyncio.Lock()
        self._image_built = False
        self._background: Set[asyncio.Task] = set()

    # =========================================================================
    # Docker plumbing
    # =========================================================================

    def _get_client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    @staticmethod
    async def _call(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await asyncio.to_thread(func, *args, **kwargs)

    def container_name(self, session_id: str) -> str:
        return f"{self.config.name_prefix}{session_id}"

    async def ensure_image(self) -> None:
        """Build the runner image once per process (skipped if it already exists)."""
        async with self._image_lock:
            if self._image_built:
                return

            client = self._get_client()
            try:
                await self._call(client.images.get, self.config.runner_image)
                logger.info("Runner image present", extra={"image": self.config.runner_image})
            except ImageNotFound:
                logger.info(
                    "Building runner image",
                    extra={"image": self.config.runner_image, "path": self.config.dockerfile_dir},
                )
                await self._call(
                    client.images.build,
                    path=self.config.dockerfile_dir,
                    tag=self.config.runner_image,
                    rm=True,
                )
            self._image_built = True

    async def cleanup_orphaned_containers(self) -> int:
        """
        Remove containers left behind by a previous process.

        Matches on this service's name prefix. Run before accepting sessions.

        Returns:
            Number of containers removed
        """
        client = self._get_client()
        containers = await self._call(
            client.containers.list, all=True, filters={"name": self.config.name_prefix}
        )

        removed = 0
        for container in containers:
            name = container.name.lstrip("/")
            if not name.startswith(self.config.name_prefix):
                continue
            try:
                if container.status == "running":
                    await self._call(container.stop, timeout=5)
                await self._call(container.remove, force=True)
                removed += 1
                logger.info("Removed orphaned container", extra={"container": name})
            except NotFound:
                continue
            except APIError as e:
                logger.warning(
                    f"Failed to remove orphaned container {name}: {e}",
                    extra={"container": name},
                )

        if removed:
            logger.info(f"Cleaned up {removed} orphaned container(s)")
        return removed

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def create_container(self, session_id: str, workdir: Path) -> ContainerInfo:
        """
        Create and start the runner container for a session.

        The container idles until install_dependencies/start_dev_server run
        commands in it. Any previous container of the session is replaced.

        Raises:
            CircuitOpen: runtime failed repeatedly, not retried
            ContainerLimitReached: too many live containers
            PortExhausted: no free port pair, not retried
            ContainerStartFailed: the previous container could not be removed,
                or runtime create/start failed
        """
        self.breaker.check()

        try:
            await self._remove_existing(session_id)
        except Exception as e:
            self.breaker.record_failure()
            raise ContainerStartFailed(
                f"Failed to replace existing container: {e}", session_id=session_id
            ) from e

        async with self._lock:
            if len(self._containers) >= self.config.max_containers:
                raise ContainerLimitReached(self.config.max_containers)

            client_port, server_port = self.ports.find_two_available_ports(
                runtime.info for runtime in self._containers.values()
            )
            runtime = _ContainerRuntime(
                info=ContainerInfo(
                    session_id=session_id,
                    container_id=None,
                    client_port=client_port,
                    server_port=server_port,
                ),
                workdir=Path(workdir).resolve(),
                logs=deque(maxlen=self.config.max_logs),
            )
            self._containers[session_id] = runtime

        logger.info(
            "Creating container",
            extra={"session_id": session_id, "client_port": client_port, "server_port": server_port},
        )
        await self._emit_status(runtime)

        try:
            await self.ensure_image()
            client = self._get_client()
            container = await retry_on_conflict(
                lambda: self._call(client.containers.create, **self._create_options(runtime)),
                self.retry_config,
                description="container create",
            )
            runtime.container = container
            runtime.info.container_id = container.id

            await retry_on_conflict(
                lambda: self._call(container.start),
                self.retry_config,
                description="container start",
            )

            sock = await self._call(
                client.api.attach_socket,
                container.id,
                params={"stdout": 1, "stderr": 1, "stream": 1, "logs": 1},
            )
            self._track_task(runtime, self._pump_stream(runtime, sock))
        except Exception as e:
            self.breaker.record_failure()
            await self._fail_creation(runtime, str(e))
            raise ContainerStartFailed(
                f"Failed to create container: {e}", session_id=session_id
            ) from e

        self.breaker.record_success()
        self._schedule_auto_cleanup(runtime)

        logger.info(
            "Container created",
            extra={"session_id": session_id, "container_id": runtime.info.container_id},
        )
        return runtime.info

    async def install_dependencies(self, session_id: str) -> None:
        """
        Install npm packages and prepare the Prisma client/database.

        Raises:
            SessionNotFound: no container for the session
            CommandFailed / CommandTimeout: a step failed; status becomes error
            ContainerStartFailed: the runtime rejected an exec call
        """
        runtime = await self._require(session_id)
        steps = [(["npm", "install", "--loglevel=info"], self.config.install_timeout)]

        if (runtime.workdir / "prisma" / "schema.prisma").exists():
            steps.append((["npx", "prisma", "generate"], 60.0))
            if (runtime.workdir / "prisma" / "migrations").is_dir():
                steps.append((["npx", "prisma", "migrate", "deploy"], 60.0))
            else:
                steps.append((["npx", "prisma", "migrate", "dev", "--name", "init"], 60.0))

        try:
            for cmd, timeout in steps:
                exit_code = await self._run_exec(runtime, cmd, timeout)
                if exit_code != 0:
                    raise CommandFailed(" ".join(cmd), exit_code)
        except (CommandFailed, CommandTimeout) as e:
            await self._fail_start(runtime, e)
            raise
        except Exception as e:
            await self._fail_start(runtime, e)
            raise ContainerStartFailed(
                f"Dependency install failed: {e}", session_id=session_id
            ) from e

        logger.info("Dependencies installed", extra={"session_id": session_id})

    async def start_dev_server(self, session_id: str) -> ContainerInfo:
        """
        Launch ``npm run dev`` and wait until the client port answers HTTP.

        Returns:
            ContainerInfo, ``running`` unless the readiness check was cancelled

        Raises:
            SessionNotFound: no container for the session
            ReadinessTimeout: server never answered; status becomes error
            ContainerStartFailed: the runtime rejected the exec call
        """
        runtime = await self._require(session_id)
        runtime.ready_signal.clear()
        runtime.ready_cancel.clear()

        try:
            client = self._get_client()
            exec_id = await self._exec_create(runtime, ["npm", "run", "dev"])
            sock = await self._call(client.api.exec_start, exec_id, socket=True)
        except Exception as e:
            await self._fail_start(runtime, e)
            raise ContainerStartFailed(
                f"Failed to launch dev server: {e}", session_id=session_id
            ) from e
        self._track_task(runtime, self._pump_stream(runtime, sock))

        try:
            await asyncio.wait_for(runtime.ready_signal.wait(), timeout=self.config.start_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Dev server did not report ready in time, probing HTTP anyway",
                extra={"session_id": session_id},
            )

        try:
            ready = await self.readiness.wait_until_ready(
                runtime.info.client_port, runtime.ready_cancel
            )
        except ReadinessTimeout as e:
            await self._fail_start(runtime, e)
            raise

        if ready:
            await self._set_status(runtime, ContainerStatus.RUNNING)
        return runtime.info

    async def start(self, session_id: str, workdir: Path) -> ContainerInfo:
        """Create the container, install dependencies, and serve the app."""
        await self.create_container(session_id, workdir)
        await self.install_dependencies(session_id)
        return await self.start_dev_server(session_id)

    start_app = start

    async def stop(self, session_id: str) -> None:
        """
        Tear down a session's container and release its ports.

        Raises:
            SessionNotFound: no container for the session
        """
        async with self._lock:
            runtime = self._containers.get(session_id)
        if runtime is None:
            raise SessionNotFound(session_id)
        await self._teardown(runtime)

    async def shutdown(self) -> None:
        """Cancel timers and destroy every container (process exit)."""
        self.breaker.cleanup()
        async with self._lock:
            runtimes = list(self._containers.values())
        await asyncio.gather(*(self._teardown(r) for r in runtimes), return_exceptions=True)
        for task in list(self._background):
            task.cancel()
        logger.info("Container service shut down", extra={"destroyed": len(runtimes)})

    # =========================================================================
    # Queries
    # =========================================================================

    def has_container(self, session_id: str) -> bool:
        return session_id in self._containers

    def get_status(self, session_id: str) -> Optional[Dict[str, Any]]:
        runtime = self._containers.get(session_id)
        return runtime.info.to_dict() if runtime else None

    def get_logs(self, session_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        runtime = self._containers.get(session_id)
        if runtime is None:
            return []
        entries = list(runtime.logs)
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return [entry.to_dict() for entry in entries]

    def list_containers(self) -> List[ContainerInfo]:
        return [runtime.info for runtime in self._containers.values()]

    # =========================================================================
    # Internals
    # =========================================================================

    def _create_options(self, runtime: _ContainerRuntime) -> Dict[str, Any]:
        info = runtime.info
        return {
            "image": self.config.runner_image,
            "name": self.container_name(info.session_id),
            "command": ["tail", "-f", "/dev/null"],
            "working_dir": APP_DIR,
            "ports": {
                f"{self.config.client_container_port}/tcp": info.client_port,
                f"{self.config.server_container_port}/tcp": info.server_port,
            },
            "volumes": {str(runtime.workdir): {"bind": APP_DIR, "mode": "rw"}},
            "tmpfs": {"/tmp": "rw,nosuid,size=256m"},
            "environment": {
                "NODE_ENV": "development",
                "DATABASE_URL": "file:./dev.db",
            },
            "mem_limit": self.config.memory_limit,
            "nano_cpus": self.config.nano_cpus,
            "cap_drop": ["ALL"],
            "security_opt": ["no-new-privileges:true"],
            "labels": {SESSION_LABEL: info.session_id},
            "detach": True,
        }

    async def _require(self, session_id: str) -> _ContainerRuntime:
        async with self._lock:
            runtime = self._containers.get(session_id)
        if runtime is None or runtime.container is None:
            raise SessionNotFound(session_id)
        return runtime

    async def _remove_existing(self, session_id: str) -> None:
        async with self._lock:
            runtime = self._containers.get(session_id)
        if runtime is not None:
            await self._teardown(runtime)
            return

        client = self._get_client()
        try:
            stale = await self._call(client.containers.get, self.container_name(session_id))
        except NotFound:
            return
        logger.info("Removing stale container", extra={"session_id": session_id})
        await retry_on_conflict(
            lambda: self._call(stale.remove, force=True),
            self.retry_config,
            description="stale container remove",
        )

    async def _exec_create(self, runtime: _ContainerRuntime, cmd: List[str]) -> str:
        client = self._get_client()
        created = await self._call(
            client.api.exec_create,
            runtime.container.id,
            cmd,
            stdout=True,
            stderr=True,
            workdir=APP_DIR,
        )
        return created["Id"]

    async def _run_exec(self, runtime: _ContainerRuntime, cmd: List[str], timeout: float) -> int:
        """Run ``cmd`` in the container, streaming its output into the log."""
        command = " ".join(cmd)
        logger.info("Running in container", extra={"session_id": runtime.info.session_id, "command": command})

        client = self._get_client()
        exec_id = await self._exec_create(runtime, cmd)
        sock = await self._call(client.api.exec_start, exec_id, socket=True)
        try:
            await asyncio.wait_for(self._pump_stream(runtime, sock), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise CommandTimeout(command, timeout) from e

        inspection = await self._call(client.api.exec_inspect, exec_id)
        exit_code = inspection.get("ExitCode")
        return exit_code if exit_code is not None else -1

    async def _pump_stream(self, runtime: _ContainerRuntime, sock: Any) -> None:
        """Read a multiplexed socket to EOF, recording each frame."""
        demuxer = LogStreamDemultiplexer()
        runtime.sockets.append(sock)
        try:
            while True:
                chunk = await asyncio.to_thread(socket_read, sock, READ_CHUNK_SIZE)
                if not chunk:
                    break
                for entry in demuxer.feed(chunk):
                    await self._record_log(runtime, entry)
        except OSError as e:
            logger.debug(f"Log stream closed: {e}", extra={"session_id": runtime.info.session_id})
        finally:
            self._close_socket(sock)
            if sock in runtime.sockets:
                runtime.sockets.remove(sock)

    async def _record_log(self, runtime: _ContainerRuntime, entry: AppLogEntry) -> None:
        runtime.logs.append(entry)
        lowered = entry.message.lower()
        if "vite" in lowered and "ready" in lowered:
            runtime.ready_signal.set()
        await self._emit(runtime.info.session_id, "app_log", entry.to_dict())

    @staticmethod
    def _close_socket(sock: Any) -> None:
        raw = getattr(sock, "_sock", sock)
        try:
            raw.shutdown(_socket.SHUT_RDWR)
        except (OSError, AttributeError):
            pass
        try:
            sock.close()
        except OSError:
            pass

    def _track_task(self, runtime: _ContainerRuntime, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        runtime.tasks.add(task)
        task.add_done_callback(runtime.tasks.discard)

    def _schedule_auto_cleanup(self, runtime: _ContainerRuntime) -> None:
        loop = asyncio.get_running_loop()
        runtime.cleanup_handle = loop.call_later(
            self.config.max_runtime, self._expire, runtime
        )

    def _expire(self, runtime: _ContainerRuntime) -> None:
        runtime.cleanup_handle = None
        logger.info(
            "Container reached max runtime, destroying",
            extra={"session_id": runtime.info.session_id},
        )
        task = asyncio.ensure_future(self._teardown(runtime))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _teardown(self, runtime: _ContainerRuntime) -> None:
        session_id = runtime.info.session_id
        runtime.ready_cancel.set()
        if runtime.cleanup_handle is not None:
            runtime.cleanup_handle.cancel()
            runtime.cleanup_handle = None

        if runtime.info.status not in (ContainerStatus.STOPPING, ContainerStatus.STOPPED):
            await self._set_status(runtime, ContainerStatus.STOPPING)

        for sock in list(runtime.sockets):
            self._close_socket(sock)
        current = asyncio.current_task()
        pending = [task for task in runtime.tasks if task is not current]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        if runtime.container is not None:
            container = runtime.container
            try:
                await retry_on_conflict(
                    lambda: self._call(container.stop, timeout=self.config.stop_timeout),
                    self.retry_config,
                    description="container stop",
                )
                await retry_on_conflict(
                    lambda: self._call(container.remove, force=True),
                    self.retry_config,
                    description="container remove",
                )
            except NotFound:
                pass
            except APIError as e:
                logger.error(
                    f"Failed to remove container: {e}",
                    extra={"session_id": session_id, "container_id": container.id},
                )

        await self._set_status(runtime, ContainerStatus.STOPPED)

        async with self._lock:
            if self._containers.get(session_id) is runtime:
                del self._containers[session_id]

        logger.info("Container destroyed", extra={"session_id": session_id})

    async def _fail_creation(self, runtime: _ContainerRuntime, error: str) -> None:
        await self._set_status(runtime, ContainerStatus.ERROR, error=error)
        async with self._lock:
            if self._containers.get(runtime.info.session_id) is runtime:
                del self._containers[runtime.info.session_id]

    async def _fail_start(self, runtime: _ContainerRuntime, error: Exception) -> None:
        self.breaker.record_failure()
        await self._set_status(runtime, ContainerStatus.ERROR, error=str(error))

    async def _set_status(
        self,
        runtime: _ContainerRuntime,
        status: ContainerStatus,
        error: Optional[str] = None
    ) -> None:
        runtime.info.status = status
        runtime.info.error = error
        await self._emit_status(runtime)

    async def _emit_status(self, runtime: _ContainerRuntime) -> None:
        await self._emit(runtime.info.session_id, "app_status", runtime.info.to_dict())

    async def _emit(self, session_id: str, event_type: str, data: Dict[str, Any]) -> None:
        if self.event_callback is None:
            return
        try:
            await self.event_callback(session_id, event_type, data)
        except Exception as e:
            logger.warning(
                f"Event callback failed for {event_type}: {e}",
                extra={"session_id": session_id},
            )
