"""
pgsession.core.db
=================

Connection pool access for sessions. A PoolRegistry owns one psycopg_pool
AsyncConnectionPool per connection string and event loop and hands out
connections together with their release callback.
"""
from pgsession.core.db.pool import PoolRegistry, Release, get_default_registry, close_default_registry

__all__ = ['PoolRegistry', 'Release', 'get_default_registry', 'close_default_registry']
