"""
pgsession: pooled PostgreSQL sessions with transaction brackets and
LISTEN/NOTIFY events on top of psycopg 3.
"""
__version__ = "0.3.0"

from pgsession.core.config import Settings, get_settings
from pgsession.core.db.pool import PoolRegistry, close_default_registry, get_default_registry
from pgsession.core.errors import (
    AcquireFailure,
    AlreadyConnectedError,
    DisconnectedError,
    ListenNameInvalid,
    QueryFailure,
    SessionError,
)
from pgsession.notify.channels import NOTIFICATION_CHANNEL, Channel
from pgsession.scope import Scope
from pgsession.session import Session, TransactionState

__all__ = [
    "AcquireFailure",
    "AlreadyConnectedError",
    "Channel",
    "DisconnectedError",
    "ListenNameInvalid",
    "NOTIFICATION_CHANNEL",
    "PoolRegistry",
    "QueryFailure",
    "Scope",
    "Session",
    "SessionError",
    "Settings",
    "TransactionState",
    "close_default_registry",
    "get_default_registry",
    "get_settings",
]
