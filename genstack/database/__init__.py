"""Session persistence and transient-error retry."""

from genstack.database.retry import RetryConfig, is_transient_error, with_retry
from genstack.database.store import PostgresSessionStore, SessionStore

__all__ = [
    "PostgresSessionStore",
    "RetryConfig",
    "SessionStore",
    "is_transient_error",
    "with_retry",
]
