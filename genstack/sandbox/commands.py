"""
Sandbox Command Validation and Execution
========================================

Runs a single model-requested command inside a session sandbox.

Uses an allow-list approach: only known development tools may run, and any
shell metacharacter that could chain, pipe, or substitute is rejected before a
process is spawned. Valid commands are executed as an argument vector, never
through a shell, under a hard wall-clock limit and with bounded output.

Checks run in a fixed order and the first failure decides the reason:
    1. empty input
    2. program not on the allow-list
    3. chaining (&&, ||, ;)
    4. pipe (|)
    5. command substitution or environment expansion (`...`, $(...), $VAR, ${VAR})
"""

import asyncio
import os
import re
import shlex
import signal
import time
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from genstack.sandbox.filesystem import SandboxFilesystem
from genstack.utils.config import CommandConfig
from genstack.utils.errors import (
    CommandFailed,
    CommandRejected,
    CommandTimeout,
    RejectionReason,
)
from genstack.utils.logging import get_logger

logger = get_logger(__name__)


DEFAULT_ALLOWED_COMMANDS: FrozenSet[str] = frozenset({
    "npm",
    "npx",
    "pnpm",
    "node",
    "tsc",
    "vite",
    "ls",
    "cat",
    "echo",
    "mkdir",
    "pwd",
})

CHAINING_OPERATORS = ("&&", "||", ";")
_SUBSTITUTION = re.compile(r"`|\$\(|\$\{|\$[A-Za-z_]")


@dataclass
class CommandResult:
    """Outcome of one sandbox command."""
    command: str
    success: bool
    stdout: str
    stderr: str
    exit_code: int
    execution_time_ms: int
    timed_out: bool = False

    def raise_for_status(self, timeout: Optional[float] = None) -> None:
        """Raise CommandTimeout or CommandFailed unless the command succeeded."""
        if self.timed_out:
            raise CommandTimeout(self.command, timeout or self.execution_time_ms / 1000)
        if not self.success:
            raise CommandFailed(self.command, self.exit_code, stderr=self.stderr or self.stdout)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command": self.command,
            "success": self.success,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "execution_time_ms": self.execution_time_ms,
        }


def get_program_name(command: str) -> str:
    parts = command.strip().split()
    return parts[0] if parts else ""


def validate_command(
    command: Optional[str],
    allowed_commands: Iterable[str] = DEFAULT_ALLOWED_COMMANDS
) -> Optional[CommandRejected]:
    """
    Validate a raw command string.

    Returns:
        None if the command may run, otherwise the CommandRejected describing
        the first failed check (not raised)
    """
    if command is None or not command.strip():
        return CommandRejected(
            "Command must not be empty",
            RejectionReason.EMPTY,
            command=command or "",
        )

    program = get_program_name(command)
    allowed = frozenset(allowed_commands)
    if program not in allowed:
        return CommandRejected(
            f'Command "{program}" is not whitelisted. '
            f'Allowed commands: {", ".join(sorted(allowed))}',
            RejectionReason.NOT_WHITELISTED,
            command=command,
        )

    if any(operator in command for operator in CHAINING_OPERATORS):
        return CommandRejected(
            "Command chaining with &&, ||, or ; is not allowed",
            RejectionReason.CHAINING,
            command=command,
        )

    if "|" in command:
        return CommandRejected(
            "Pipe operator | is not allowed",
            RejectionReason.PIPE,
            command=command,
        )

    if _SUBSTITUTION.search(command):
        return CommandRejected(
            "Command substitution with `, $(), or $VAR is not allowed",
            RejectionReason.SUBSTITUTION,
            command=command,
        )

    return None


def truncate_output(output: str, max_size: int) -> str:
    if len(output) <= max_size:
        return output
    omitted = len(output) - max_size
    return f"{output[:max_size]}\n\n... (output truncated, {omitted} characters omitted)"


def format_command_result(result: CommandResult) -> str:
    """Render a result for the model."""
    status = "succeeded" if result.success else "failed"
    parts: List[str] = [
        f"Command {status} (exit code: {result.exit_code})",
        f"Execution time: {result.execution_time_ms}ms",
    ]
    if result.stdout:
        parts.append(f"\nStdout:\n{result.stdout}")
    if result.stderr:
        parts.append(f"\nStderr:\n{result.stderr}")
    return "\n".join(parts)


class CommandExecutor:
    """
    Validates and runs commands in a session's sandbox directory.

    One executor serves every session; sessions are isolated by working
    directory only.
    """

    def __init__(self, filesystem: SandboxFilesystem, config: Optional[CommandConfig] = None):
        self.filesystem = filesystem
        self.config = config or CommandConfig()
        self.allowed_commands: FrozenSet[str] = DEFAULT_ALLOWED_COMMANDS | frozenset(
            self.config.additional_allowed_commands
        )

    def validate(self, command: Optional[str]) -> Optional[CommandRejected]:
        return validate_command(command, self.allowed_commands)

    async def execute(
        self,
        session_id: str,
        command: str,
        timeout: Optional[float] = None
    ) -> CommandResult:
        """
        Validate and run ``command`` in the session sandbox.

        Args:
            session_id: Session whose sandbox is the working directory
            command: Raw command string from the model
            timeout: Wall-clock limit in seconds (defaults to config)

        Returns:
            CommandResult; a timeout is reported as a failed result

        Raises:
            CommandRejected: validation failed, nothing was spawned
        """
        rejection = self.validate(command)
        if rejection is not None:
            logger.warning(
                "Command rejected",
                extra={
                    "session_id": session_id,
                    "command": command,
                    "reason": rejection.reason.value,
                },
            )
            raise rejection

        try:
            argv = shlex.split(command)
        except ValueError as e:
            raise CommandRejected(
                f"Could not parse command: {e}",
                RejectionReason.MALFORMED,
                command=command,
            ) from e

        timeout = timeout if timeout is not None else self.config.timeout_seconds
        cwd = self.filesystem.get_sandbox_path(session_id)
        cwd.mkdir(parents=True, exist_ok=True)

        logger.info(
            "Executing command",
            extra={"session_id": session_id, "command": command, "cwd": cwd},
        )

        start = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as e:
            return CommandResult(
                command=command,
                success=False,
                stdout="",
                stderr=f"Failed to start {argv[0]}: {e}",
                exit_code=127,
                execution_time_ms=self._elapsed_ms(start),
            )

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(), timeout=timeout
            )
        except asyncio.TimeoutError:
            await self._kill(process)
            elapsed = self._elapsed_ms(start)
            logger.warning(
                "Command timed out",
                extra={"session_id": session_id, "command": command, "timeout": timeout},
            )
            return CommandResult(
                command=command,
                success=False,
                stdout="",
                stderr=f"Command timed out after {int(timeout * 1000)}ms",
                exit_code=-1,
                execution_time_ms=elapsed,
                timed_out=True,
            )
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        exit_code = process.returncode if process.returncode is not None else -1
        result = CommandResult(
            command=command,
            success=exit_code == 0,
            stdout=truncate_output(
                stdout_bytes.decode("utf-8", errors="replace"), self.config.max_output_size
            ),
            stderr=truncate_output(
                stderr_bytes.decode("utf-8", errors="replace"), self.config.max_output_size
            ),
            exit_code=exit_code,
            execution_time_ms=self._elapsed_ms(start),
        )

        logger.info(
            "Command finished",
            extra={
                "session_id": session_id,
                "command": command,
                "exit_code": exit_code,
                "execution_time_ms": result.execution_time_ms,
            },
        )
        return result

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        """Kill the whole process group (npm spawns children)."""
        if process.returncode is not None:
            return
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except PermissionError:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.monotonic() - start) * 1000)
