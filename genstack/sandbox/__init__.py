"""
Session Sandbox
===============

Per-session working directories and the command validator/executor that runs
model-requested commands inside them.
"""

from genstack.sandbox.filesystem import SandboxFilesystem
from genstack.sandbox.commands import (
    CommandExecutor,
    CommandResult,
    DEFAULT_ALLOWED_COMMANDS,
    format_command_result,
    validate_command,
)

__all__ = [
    "SandboxFilesystem",
    "CommandExecutor",
    "CommandResult",
    "DEFAULT_ALLOWED_COMMANDS",
    "format_command_result",
    "validate_command",
]
