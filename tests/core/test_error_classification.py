import pytest
from psycopg import errors as pg_errors
from psycopg_pool import PoolTimeout, PoolClosed

from pgsession.core.errors import (
    AcquireFailure,
    DisconnectedError,
    ErrorKind,
    ListenNameInvalid,
    QueryFailure,
    SessionError,
    classify_postgres_error,
)


@pytest.mark.parametrize("error,kind,retryable", [
    (pg_errors.UniqueViolation("duplicate key value"), ErrorKind.DB_CONSTRAINT, False),
    (pg_errors.ForeignKeyViolation("violates foreign key"), ErrorKind.DB_CONSTRAINT, False),
    (pg_errors.DeadlockDetected("deadlock detected"), ErrorKind.DB_DEADLOCK, True),
    (pg_errors.SerializationFailure("could not serialize"), ErrorKind.DB_DEADLOCK, True),
    (pg_errors.QueryCanceled("canceling statement"), ErrorKind.DB_TIMEOUT, True),
    (pg_errors.UndefinedTable('relation "nope" does not exist'), ErrorKind.DB_SYNTAX, False),
    (pg_errors.InFailedSqlTransaction("current transaction is aborted"), ErrorKind.DB_TRANSACTION, False),
    (pg_errors.OperationalError("server closed the connection"), ErrorKind.DB_CONNECTION, True),
    (PoolTimeout("couldn't get a connection after 30.00 sec"), ErrorKind.DB_POOL, True),
    (PoolClosed("the pool is closed"), ErrorKind.DB_POOL, False),
    (RuntimeError("something else"), ErrorKind.UNKNOWN, False),
])
def test_classify_postgres_error(error, kind, retryable):
    info = classify_postgres_error(error)

    assert info.kind == kind
    assert info.retryable is retryable
    assert info.message == str(error)
    assert info.exception_type == type(error).__name__


def test_sqlstate_is_kept_in_code():
    info = classify_postgres_error(pg_errors.UniqueViolation("duplicate key value"))

    assert info.pg_code == "23505"
    assert info.code == "PG_23505"
    assert info.to_dict()["pg_code"] == "23505"


def test_log_extra_avoids_reserved_record_names():
    extra = classify_postgres_error(PoolTimeout("timeout")).log_extra()

    assert extra == {"error_kind": "db_pool", "error_code": "POOL_PoolTimeout", "retryable": True}
    assert "message" not in extra


def test_taxonomy():
    assert issubclass(DisconnectedError, SessionError)
    assert issubclass(AcquireFailure, SessionError)
    assert issubclass(ListenNameInvalid, ValueError)
    assert QueryFailure is pg_errors.Error
    assert "bad-name" in str(ListenNameInvalid("bad-name"))
