# chronokey/core/utils/db.py
"""Shared helpers for classifying transient store and database errors."""

from __future__ import annotations

from psycopg import InterfaceError, OperationalError
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from sqlalchemy.exc import DBAPIError, OperationalError as SAOperationalError


def is_dbapi_disconnect(exc: DBAPIError) -> bool:
    """Check whether a SQLAlchemy DBAPIError represents a connection disconnect."""
    connection_invalidated = bool(getattr(exc, 'connection_invalidated', False))
    is_disconnect = bool(getattr(exc, 'is_disconnect', False))
    return connection_invalidated or is_disconnect


def is_retryable_connection_error(exc: BaseException) -> bool:
    """Check whether a database exception is a transient connection error."""
    match exc:
        case OperationalError() | InterfaceError() | SAOperationalError():
            return True
        case DBAPIError() as db_exc if is_dbapi_disconnect(db_exc):
            return True
        case _:
            return False


def is_retryable_store_error(exc: BaseException) -> bool:
    """Check whether a Redis exception is a transient connectivity failure."""
    match exc:
        case RedisConnectionError() | RedisTimeoutError() | ConnectionError() | TimeoutError():
            return True
        case _:
            return False
