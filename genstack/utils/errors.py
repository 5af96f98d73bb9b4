"""
GenStack Error Hierarchy

Provides a structured error framework for consistent error handling across the
generator. All custom exceptions include error categories, recoverability flags,
and error codes.
"""

from enum import Enum
from typing import Optional, Dict, Any


class ErrorCategory(str, Enum):
    """Categories of errors for grouping and monitoring"""
    COMMAND = "command"
    CONTAINER = "container"
    RESOURCE = "resource"
    GENERATION = "generation"
    SESSION = "session"
    VALIDATION = "validation"
    DATABASE = "database"
    NETWORK = "network"
    CONFIGURATION = "configuration"


class GenStackError(Exception):
    """
    Base exception for all GenStack errors.

    Attributes:
        category: Error category for grouping
        recoverable: Whether the error can be recovered from
        error_code: Unique error code for tracking
        context: Additional context about the error
    """
    category: ErrorCategory = ErrorCategory.VALIDATION
    error_code: str = "UNKNOWN"

    def __init__(
        self,
        message: str,
        recoverable: bool = False,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.recoverable = recoverable
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/API responses"""
        return {
            "error_code": self.error_code,
            "category": self.category.value,
            "message": str(self),
            "recoverable": self.recoverable,
            "context": self.context
        }


# ============================================================================
# Command Errors
# ============================================================================

class RejectionReason(str, Enum):
    """Why the command validator refused a command."""
    EMPTY = "empty"
    NOT_WHITELISTED = "not whitelisted"
    CHAINING = "chaining"
    PIPE = "Pipe operator"
    SUBSTITUTION = "substitution"
    MALFORMED = "malformed"


class CommandError(GenStackError):
    """Base class for sandbox command errors"""
    category = ErrorCategory.COMMAND
    error_code = "CMD_ERROR"


class CommandRejected(CommandError):
    """Command failed validation and was never spawned"""
    error_code = "CMD_REJECTED"

    def __init__(
        self,
        message: str,
        reason: RejectionReason,
        command: Optional[str] = None,
        **kwargs
    ):
        super().__init__(message, recoverable=False, **kwargs)
        self.reason = reason
        self.context["reason"] = reason.value
        if command is not None:
            self.context["command"] = command


class CommandTimeout(CommandError):
    """Command exceeded its wall-clock limit and was killed"""
    error_code = "CMD_TIMEOUT"

    def __init__(self, command: str, timeout: float, **kwargs):
        super().__init__(
            f"Command timed out after {int(timeout * 1000)}ms: {command}",
            recoverable=True,
            **kwargs
        )
        self.context["command"] = command
        self.context["timeout"] = timeout


class CommandFailed(CommandError):
    """Command ran to completion with a non-zero exit code"""
    error_code = "CMD_FAILED"

    def __init__(self, command: str, exit_code: int, stderr: str = "", **kwargs):
        super().__init__(
            f"Command '{command}' failed with exit code {exit_code}",
            recoverable=False,
            **kwargs
        )
        self.exit_code = exit_code
        self.context["command"] = command
        self.context["exit_code"] = exit_code
        if stderr:
            self.context["stderr"] = stderr[:500]


# ============================================================================
# Container Errors
# ============================================================================

class ContainerError(GenStackError):
    """Base class for container runtime errors"""
    category = ErrorCategory.CONTAINER
    error_code = "CONTAINER_ERROR"


class CircuitOpen(ContainerError):
    """Container runtime calls are short-circuited after repeated failures"""
    error_code = "CIRCUIT_OPEN"

    def __init__(
        self,
        message: str = (
            "Docker service temporarily unavailable due to repeated failures. "
            "Please try again later."
        ),
        **kwargs
    ):
        super().__init__(message, recoverable=True, **kwargs)


class ContainerStartFailed(ContainerError):
    """Container could not be created or started"""
    error_code = "CONTAINER_START"

    def __init__(self, message: str, session_id: Optional[str] = None, **kwargs):
        super().__init__(message, recoverable=True, **kwargs)
        if session_id:
            self.context["session_id"] = session_id


class ReadinessTimeout(ContainerError):
    """Started app never answered HTTP requests"""
    error_code = "READINESS_TIMEOUT"

    def __init__(self, port: int, attempts: int, **kwargs):
        super().__init__(
            f"Server on port {port} not ready after {attempts} attempts",
            recoverable=True,
            **kwargs
        )
        self.context["port"] = port
        self.context["attempts"] = attempts


class ContainerLimitReached(ContainerError):
    """Maximum number of concurrent containers is already running"""
    category = ErrorCategory.RESOURCE
    error_code = "CONTAINER_LIMIT"

    def __init__(self, limit: int, **kwargs):
        super().__init__(
            f"Maximum container limit reached ({limit}). "
            f"Stop a running app or increase MAX_CONTAINERS.",
            recoverable=True,
            **kwargs
        )
        self.context["limit"] = limit


# ============================================================================
# Resource Errors
# ============================================================================

class PortExhausted(GenStackError):
    """No free host ports remain in the configured range"""
    category = ErrorCategory.RESOURCE
    error_code = "PORT_EXHAUSTED"

    def __init__(self, start: int, end: int, **kwargs):
        super().__init__(
            f"No available ports in range {start}-{end}",
            recoverable=False,
            **kwargs
        )
        self.context["range"] = [start, end]


# ============================================================================
# Generation Errors
# ============================================================================

class CapabilityFailure(GenStackError):
    """A pipeline stage failed and aborted the run"""
    category = ErrorCategory.GENERATION
    error_code = "CAPABILITY_FAILED"

    def __init__(self, stage: str, message: str, **kwargs):
        super().__init__(f"{stage} failed: {message}", recoverable=False, **kwargs)
        self.stage = stage
        self.reason = message
        self.context["stage"] = stage


# ============================================================================
# Session Errors
# ============================================================================

class SessionError(GenStackError):
    """Base class for session errors"""
    category = ErrorCategory.SESSION
    error_code = "SESSION_ERROR"


class SessionBusy(SessionError):
    """A generation run is already active for this session"""
    error_code = "SESSION_BUSY"

    def __init__(self, session_id: str, **kwargs):
        super().__init__(
            f"Generation already in progress for session {session_id}",
            recoverable=False,
            **kwargs
        )
        self.context["session_id"] = session_id


class SessionNotFound(SessionError):
    """Session does not exist"""
    error_code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str, **kwargs):
        super().__init__(f"Session not found: {session_id}", recoverable=False, **kwargs)
        self.context["session_id"] = session_id


# ============================================================================
# Validation Errors
# ============================================================================

class PathValidationError(GenStackError):
    """File path is unsafe or escapes the session sandbox"""
    category = ErrorCategory.VALIDATION
    error_code = "INVALID_PATH"

    def __init__(self, message: str, path: Optional[str] = None, **kwargs):
        super().__init__(message, recoverable=False, **kwargs)
        if path is not None:
            self.context["path"] = path


class ToolArgumentError(GenStackError):
    """Model called a tool with an argument of the wrong type"""
    error_code = "TOOL_ARGUMENT"

    def __init__(self, tool: str, argument: str, expected: str, **kwargs):
        super().__init__(
            f"{tool}: argument '{argument}' must be a {expected}", recoverable=False, **kwargs
        )
        self.context.update({"tool": tool, "argument": argument})


# ============================================================================
# Database Errors
# ============================================================================

class DatabaseError(GenStackError):
    """Base class for database-related errors"""
    category = ErrorCategory.DATABASE
    error_code = "DB_ERROR"


class DatabaseConnectionError(DatabaseError):
    """Database connection failed"""
    error_code = "DB_CONNECTION"

    def __init__(self, message: str, retry_count: int = 0, **kwargs):
        super().__init__(message, recoverable=True, **kwargs)
        self.context["retry_count"] = retry_count


class DatabaseQueryError(DatabaseError):
    """Database query execution failed"""
    error_code = "DB_QUERY"

    def __init__(self, message: str, query: Optional[str] = None, **kwargs):
        super().__init__(message, recoverable=False, **kwargs)
        if query:
            self.context["query"] = query


# ============================================================================
# Network Errors
# ============================================================================

class LLMRequestError(GenStackError):
    """Model API request failed"""
    category = ErrorCategory.NETWORK
    error_code = "LLM_REQUEST"

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, recoverable=True, **kwargs)
        if status_code:
            self.context["status_code"] = status_code


# ============================================================================
# Configuration Errors
# ============================================================================

class ConfigurationError(GenStackError):
    """Base class for configuration errors"""
    category = ErrorCategory.CONFIGURATION
    error_code = "CONFIG_ERROR"


class InvalidConfigError(ConfigurationError):
    """Configuration value is invalid"""
    error_code = "CONFIG_INVALID"

    def __init__(self, key: str, value: Any, reason: str, **kwargs):
        super().__init__(
            f"Invalid configuration for '{key}': {reason}",
            recoverable=False,
            **kwargs
        )
        self.context["key"] = key
        self.context["value"] = str(value)
        self.context["reason"] = reason
