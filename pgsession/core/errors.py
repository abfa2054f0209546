"""
Error taxonomy for pgsession.

Session-level failures raise subclasses of :class:`SessionError`. Statement
failures coming from the server are not wrapped: they surface as the
driver's own ``psycopg.Error`` subclasses (exported here as ``QueryFailure``)
so callers can match on ``sqlstate`` exactly as they would with raw psycopg.

For logging, every failure can be classified into an :class:`ErrorInfo`:

    info = classify_postgres_error(exc)
    if info.kind == ErrorKind.DB_CONSTRAINT:
        ...
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

import psycopg
from pydantic import BaseModel, Field


QueryFailure = psycopg.Error


class SessionError(RuntimeError):
    """Base class for errors raised by a Session itself."""


class AlreadyConnectedError(SessionError):
    """connect() was called while the session already holds a connection."""

    def __init__(self, message: str = "Session is connected already"):
        super().__init__(message)


class DisconnectedError(SessionError):
    """A statement was issued on a session without a held connection."""

    def __init__(self, message: str = "Session is disconnected from PostgreSQL"):
        super().__init__(message)


class AcquireFailure(SessionError):
    """The pool could not hand out a connection."""

    def __init__(self, message: str, info: Optional["ErrorInfo"] = None):
        super().__init__(message)
        self.info = info


class ListenNameInvalid(SessionError, ValueError):
    """Channel name is not a plain SQL identifier."""

    def __init__(self, channel: Any):
        super().__init__(
            f"Invalid channel name {channel!r}: expected a name matching ^[A-Za-z][A-Za-z0-9_]*$"
        )
        self.channel = channel


class ErrorKind(str, Enum):
    """Failure categories used when logging database errors."""

    DB_CONNECTION = "db_connection"  # connection refused, lost, closed
    DB_POOL = "db_pool"              # pool timeout, queue full, pool closed
    DB_CONSTRAINT = "db_constraint"  # unique, foreign key, check, not null
    DB_DEADLOCK = "db_deadlock"      # deadlock, serialization failure
    DB_TIMEOUT = "db_timeout"        # statement timeout, query canceled
    DB_SYNTAX = "db_syntax"          # syntax error, undefined table/column
    DB_TRANSACTION = "db_transaction"  # aborted transaction, bad state
    UNKNOWN = "unknown"


class ErrorInfo(BaseModel):
    """Classified view of a database error, attached to log records."""

    kind: ErrorKind = Field(default=ErrorKind.UNKNOWN, description="Error category")
    retryable: bool = Field(default=False, description="Whether a retry might succeed")
    code: str = Field(default="PG_UNKNOWN", description="PG_<sqlstate> or POOL_<name>")
    message: str = Field(default="Unknown error", description="Human-readable error message")
    pg_code: Optional[str] = Field(None, description="PostgreSQL SQLSTATE, e.g. 23505")
    exception_type: Optional[str] = Field(None, description="Python exception class name")

    def to_dict(self) -> dict[str, Any]:
        d = {
            "kind": self.kind.value,
            "retryable": self.retryable,
            "code": self.code,
            "message": self.message,
        }
        if self.pg_code is not None:
            d["pg_code"] = self.pg_code
        if self.exception_type is not None:
            d["exception_type"] = self.exception_type
        return d

    def log_extra(self) -> dict[str, Any]:
        """Fields for ``logger.error(..., extra=...)``; skips reserved LogRecord names."""
        return {
            "error_kind": self.kind.value,
            "error_code": self.code,
            "retryable": self.retryable,
        }


_POOL_ERRORS = ("PoolTimeout", "TooManyRequests", "PoolClosed")


def classify_postgres_error(error: BaseException) -> ErrorInfo:
    """Classify a psycopg / psycopg_pool error by SQLSTATE, then by message."""
    error_str = str(error).lower()
    error_type = type(error).__name__
    pg_code = getattr(error, "sqlstate", None)
    code = f"PG_{pg_code}" if pg_code else "PG_UNKNOWN"

    def info(kind: ErrorKind, retryable: bool, code: str = code) -> ErrorInfo:
        return ErrorInfo(
            kind=kind,
            retryable=retryable,
            code=code,
            message=str(error),
            pg_code=pg_code,
            exception_type=error_type,
        )

    if error_type in _POOL_ERRORS:
        return info(ErrorKind.DB_POOL, error_type != "PoolClosed", code=f"POOL_{error_type}")

    if pg_code in ("40001", "40P01") or "deadlock" in error_str:
        return info(ErrorKind.DB_DEADLOCK, True)

    if pg_code and pg_code.startswith("23"):
        return info(ErrorKind.DB_CONSTRAINT, False)

    if pg_code == "57014" or "timeout" in error_str:
        return info(ErrorKind.DB_TIMEOUT, True)

    if pg_code and pg_code.startswith("42"):
        return info(ErrorKind.DB_SYNTAX, False)

    if pg_code and pg_code.startswith("25"):
        return info(ErrorKind.DB_TRANSACTION, False)

    if (pg_code and pg_code.startswith("08")) or isinstance(error, psycopg.OperationalError):
        return info(ErrorKind.DB_CONNECTION, True)

    return info(ErrorKind.UNKNOWN, False)


__all__ = [
    "SessionError",
    "AlreadyConnectedError",
    "DisconnectedError",
    "AcquireFailure",
    "ListenNameInvalid",
    "QueryFailure",
    "ErrorKind",
    "ErrorInfo",
    "classify_postgres_error",
]
