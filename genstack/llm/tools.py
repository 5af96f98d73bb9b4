"""
Sandbox Tools
=============

Function-calling tools the model uses to build an application inside a
session sandbox: writeFile, readFile, getFileTree and executeCommand.

Every tool returns plain text. Expected failures such as rejected commands,
paths outside the sandbox, missing or binary files and mistyped arguments are
reported back to the model as text so it can correct itself; they never abort
the generation loop.

writeFile also warns (without refusing) when an overwrite drops half or
more of an existing file.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from genstack.sandbox.commands import CommandExecutor, format_command_result
from genstack.sandbox.filesystem import SandboxFilesystem
from genstack.utils.errors import CommandRejected, PathValidationError, ToolArgumentError
from genstack.utils.logging import get_logger

logger = get_logger(__name__)

FileWrittenCallback = Callable[[str, str], Awaitable[None]]
WarningCallback = Callable[[str], Awaitable[None]]

SAFETY_MIN_SIZE = 100
SAFETY_REDUCTION_THRESHOLD = 0.5


TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "writeFile",
            "description": "Create or overwrite a file in the project. Parent directories are created automatically.",
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "File path relative to the project root, e.g. client/src/App.tsx"
                    },
                    "content": {
                        "type": "string",
                        "description": "Complete file content"
                    }
                },
                "required": ["path", "content"]
            }
        }
    },
    {
        "type": "function",
        "function": {
            "name": "readFile",
            "description": "Read a file from the project.",
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "File path relative to the project root"
                    }
                },
                "required": ["path"]
            }
        }
    },
    {
        "type": "function",
        "function": {
            "name": "getFileTree",
            "description": "Show the directory tree of the project.",
            "parameters": {"type": "object", "properties": {}}
        }
    },
    {
        "type": "function",
        "function": {
            "name": "executeCommand",
            "description": (
                "Run a single whitelisted command in the project root "
                "(npm, npx, pnpm, node, tsc, vite, ls, cat, echo, mkdir, pwd). "
                "Chaining, pipes and variable expansion are rejected."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "command": {
                        "type": "string",
                        "description": "The command to run, e.g. npm install zod"
                    }
                },
                "required": ["command"]
            }
        }
    },
]


@dataclass
class FileSafetyCheck:
    old_size: int
    new_size: int
    reduction_percent: int = 0
    warning: Optional[str] = None

    @property
    def safe(self) -> bool:
        return self.warning is None


def check_file_safety(old_content: str, new_content: str, path: str) -> FileSafetyCheck:
    """
    Flag an overwrite that shrinks an existing file to half its size or less.

    Models sometimes "fix" an import error by deleting working code; the
    check catches that without blocking the write. Files of
    ``SAFETY_MIN_SIZE`` characters or fewer are never flagged.
    """
    old_size, new_size = len(old_content), len(new_content)
    if old_size <= SAFETY_MIN_SIZE:
        return FileSafetyCheck(old_size, new_size)

    reduction = round((old_size - new_size) / old_size * 100)
    if new_size > old_size * SAFETY_REDUCTION_THRESHOLD:
        return FileSafetyCheck(old_size, new_size, reduction)

    return FileSafetyCheck(
        old_size,
        new_size,
        reduction,
        warning=(
            f"WARNING: Replacing {path} with {reduction}% less code "
            f"({old_size} -> {new_size} chars). Verify this is intentional."
        ),
    )


class SandboxTools:
    """Tool dispatcher bound to one session sandbox."""

    def __init__(
        self,
        session_id: str,
        filesystem: SandboxFilesystem,
        executor: CommandExecutor,
        on_file_written: Optional[FileWrittenCallback] = None,
        on_warning: Optional[WarningCallback] = None,
    ):
        self.session_id = session_id
        self.filesystem = filesystem
        self.executor = executor
        self.on_file_written = on_file_written
        self.on_warning = on_warning
        self._handlers = {
            "writeFile": self._write_file,
            "readFile": self._read_file,
            "getFileTree": self._get_file_tree,
            "executeCommand": self._execute_command,
        }

    @property
    def definitions(self) -> List[Dict[str, Any]]:
        return TOOL_DEFINITIONS

    async def call(self, name: str, arguments: Dict[str, Any]) -> str:
        handler = self._handlers.get(name)
        if handler is None:
            return f"Error: unknown tool '{name}'. Available tools: {', '.join(self._handlers)}"

        try:
            return await handler(arguments)
        except (CommandRejected, PathValidationError, ToolArgumentError) as e:
            return f"Error: {e.message}"
        except KeyError as e:
            return f"Error: missing required argument {e}"
        except UnicodeDecodeError:
            return f"Error: {arguments.get('path')} is not a UTF-8 text file"
        except OSError as e:
            if e.strerror:
                return f"Error: {e.strerror}: {arguments.get('path')}"
            return f"Error: {e}"

    @staticmethod
    def _text(tool: str, arguments: Dict[str, Any], name: str) -> str:
        value = arguments[name]
        if not isinstance(value, str):
            raise ToolArgumentError(tool, name, "string")
        return value

    async def _write_file(self, arguments: Dict[str, Any]) -> str:
        path = self._text("writeFile", arguments, "path")
        content = self._text("writeFile", arguments, "content")
        await self._warn_on_large_deletion(path, content)
        result = self.filesystem.write_file(self.session_id, path, content)
        if self.on_file_written is not None:
            await self.on_file_written(path, content)
        return result

    async def _read_file(self, arguments: Dict[str, Any]) -> str:
        return self.filesystem.read_file(self.session_id, self._text("readFile", arguments, "path"))

    async def _get_file_tree(self, arguments: Dict[str, Any]) -> str:
        return self.filesystem.get_file_tree(self.session_id)

    async def _execute_command(self, arguments: Dict[str, Any]) -> str:
        command = self._text("executeCommand", arguments, "command")
        logger.info("Model requested command", extra={"session_id": self.session_id, "command": command})
        result = await self.executor.execute(self.session_id, command)
        return format_command_result(result)

    async def _warn_on_large_deletion(self, path: str, content: str) -> None:
        try:
            existing = self.filesystem.read_file(self.session_id, path)
        except FileNotFoundError:
            return
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(
                f"Could not compare {path} before overwrite: {e}",
                extra={"session_id": self.session_id, "path": path},
            )
            return

        check = check_file_safety(existing, content, path)
        if check.safe:
            return
        logger.warning(
            check.warning,
            extra={
                "session_id": self.session_id,
                "path": path,
                "old_size": check.old_size,
                "new_size": check.new_size,
                "reduction_percent": check.reduction_percent,
            },
        )
        if self.on_warning is not None:
            await self.on_warning(check.warning)
