"""
Pooled PostgreSQL sessions with transaction brackets and LISTEN/NOTIFY events.

A Session binds one logical unit of work to one physical connection taken
from a PoolRegistry, for its whole lifetime:

    db = await Session.start(dsn)          # acquire + BEGIN
    rows = await db.query('SELECT * FROM "accounts"')
    await db.commit()                      # COMMIT + release

Channels are used through an event-emitter style API:

    db = await Session.connect(dsn)
    await db.on("jobs", handle_job)        # LISTEN jobs
    await other.emit("jobs", {"id": 1}, "urgent")
    # handle_job({"id": 1}, "urgent")

Names starting with ``$`` are local meta channels; ``$notification``
receives every raw ``psycopg.Notify`` the connection sees.
"""
from __future__ import annotations

import asyncio
import functools
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, Sequence, Set, Union

import psycopg
from psycopg import AsyncConnection, sql

from pgsession.core.common import dump_payload
from pgsession.core.db.pool import PoolRegistry, Release, get_default_registry
from pgsession.core.errors import (
    AlreadyConnectedError,
    DisconnectedError,
    SessionError,
    classify_postgres_error,
)
from pgsession.core.logger import setup_logger
from pgsession.notify.channels import (
    Channel,
    ChannelLike,
    listen_statement,
    notify_statement,
    unlisten_statement,
    validate_channel,
)
from pgsession.notify.router import Listener, NotificationRouter
from pgsession.scope import Scope

logger = setup_logger(__name__, include_location=True)

Statement = Union[str, sql.Composable]
Params = Optional[Union[Sequence[Any], Mapping[str, Any]]]


class TransactionState(str, Enum):
    NONE = "none"
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class factorymethod:
    """
    Async method that doubles as a class-level factory.

    ``await session.connect()`` runs the method on an existing session;
    ``await Session.connect(dsn)`` builds ``Session(dsn)`` first.
    """

    def __init__(self, func):
        self.func = func
        functools.update_wrapper(self, func)

    def __get__(self, instance, owner):
        if instance is not None:
            return self.func.__get__(instance, owner)
        func = self.func

        @functools.wraps(func)
        async def factory(config: Optional[str] = None, *, pools: Optional[PoolRegistry] = None):
            return await func(owner(config, pools=pools))

        return factory


def _statement_text(statement: Statement) -> str:
    if isinstance(statement, sql.Composable):
        statement = statement.as_string(None)
    text = " ".join(str(statement).split())
    return text if len(text) <= 200 else text[:197] + "..."


class Session:

    def __init__(self, config: Optional[str] = None, *, pools: Optional[PoolRegistry] = None):
        self.config = config
        self.state = TransactionState.NONE
        self._pools = pools
        self._conn: Optional[AsyncConnection] = None
        self._release: Optional[Release] = None
        self._acquiring = False
        self._forwarder_installed = False
        self._router = NotificationRouter()
        self._background: Set[asyncio.Task] = set()

    def __repr__(self) -> str:
        status = "connected" if self.connected else "disconnected"
        return f"<Session {status} transaction={self.state.value}>"

    @property
    def connected(self) -> bool:
        return self._conn is not None

    @property
    def pools(self) -> PoolRegistry:
        if self._pools is None:
            self._pools = get_default_registry()
        return self._pools

    def _conninfo(self) -> str:
        conninfo = self.config or self.pools.settings.dsn
        if not conninfo:
            raise SessionError("No connection string given and PGSESSION_DSN is not set")
        return conninfo

    def _require_connection(self) -> AsyncConnection:
        if self._conn is None:
            raise DisconnectedError()
        return self._conn

    # ------------------------------------------------------------------
    # connection lifecycle
    # ------------------------------------------------------------------

    @factorymethod
    async def connect(self) -> "Session":
        """
        Take a connection from the pool and start forwarding its notifications.

        Raises AlreadyConnectedError if this session holds (or is acquiring)
        a connection, AcquireFailure if the pool cannot provide one.
        """
        if self._conn is not None or self._acquiring:
            raise AlreadyConnectedError()
        conninfo = self._conninfo()
        self._acquiring = True
        try:
            conn, release = await self.pools.acquire(conninfo)
        finally:
            self._acquiring = False
        self._conn, self._release = conn, release
        self.state = TransactionState.NONE
        conn.add_notify_handler(self._router.route)
        self._forwarder_installed = True
        return self

    async def disconnect(self) -> "Session":
        """
        Return the connection to the pool.

        Safe to call more than once: without a connection it only logs a
        warning.
        """
        conn = self._conn
        if conn is not None and self._background:
            # pending UNLISTENs from one-shot listeners still need the connection
            await asyncio.gather(*self._background, return_exceptions=True)
        if conn is None or self._conn is not conn:
            logger.warning("disconnect() called on a session without a connection -- maybe multiple times?")
            return self
        release = self._release
        self._conn = self._release = None

        if self._forwarder_installed:
            conn.remove_notify_handler(self._router.route)
            self._forwarder_installed = False
        if self.state == TransactionState.ACTIVE:
            logger.warning("Releasing a connection inside an open transaction; the pool will roll it back")
        await release()
        return self

    async def __aenter__(self) -> "Session":
        if not self.connected:
            await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if self.connected:
            await self.disconnect()
        return False

    # ------------------------------------------------------------------
    # statements
    # ------------------------------------------------------------------

    async def query(self, statement: Statement, params: Params = None) -> List[Dict[str, Any]]:
        """
        Run one statement and return its rows.

        Statements without a result set (BEGIN, LISTEN, INSERT without
        RETURNING...) return an empty list. Server errors propagate as
        psycopg errors; an open transaction stays open.
        """
        conn = self._require_connection()
        text = _statement_text(statement)
        logger.debug(f"Executing: {text}")
        try:
            cursor = await conn.execute(statement, params)
            if cursor.description is None:
                return []
            return await cursor.fetchall()
        except psycopg.Error as e:
            info = classify_postgres_error(e)
            logger.error(f"Statement failed: {text}: {e}", extra=info.log_extra())
            raise

    @factorymethod
    async def start(self) -> "Session":
        """Open a transaction, connecting first when needed."""
        connected_here = False
        if self._conn is None:
            await self.connect()
            connected_here = True
        try:
            await self.query("BEGIN")
        except Exception:
            if connected_here:
                await self.disconnect()
            raise
        self.state = TransactionState.ACTIVE
        return self

    async def commit(self) -> "Session":
        """
        COMMIT, then release the connection.

        When COMMIT itself fails the connection stays held; call rollback()
        or disconnect() to give it back.
        """
        await self.query("COMMIT")
        self.state = TransactionState.COMMITTED
        return await self.disconnect()

    async def rollback(self) -> "Session":
        """ROLLBACK, then release the connection (kept on failure, as commit)."""
        await self.query("ROLLBACK")
        self.state = TransactionState.ROLLED_BACK
        return await self.disconnect()

    @classmethod
    @asynccontextmanager
    async def transaction(cls, config: Optional[str] = None, *, pools: Optional[PoolRegistry] = None) -> AsyncIterator["Session"]:
        """
        ``async with Session.transaction(dsn) as db:`` commits on exit and
        rolls back when the block raises, re-raising the original error.

        The connection is back in the pool when the block is left, also when
        COMMIT or ROLLBACK fails.
        """
        scope = Scope()
        session = scope.bind(await cls.start(config, pools=pools))
        try:
            async with scope:
                yield session
            if session.connected:
                await session.commit()
        finally:
            if session.connected:
                await session.disconnect()

    @staticmethod
    def scope(existing: Optional[Scope] = None) -> Union[Scope, Callable[["Session"], "Session"]]:
        """
        Without arguments: a fresh Scope. With a Scope: a connector that
        stores a session into it and passes the session through.
        """
        if existing is None:
            return Scope()
        return existing.connector()

    # ------------------------------------------------------------------
    # LISTEN / UNLISTEN / NOTIFY
    # ------------------------------------------------------------------

    async def listen(self, channel: ChannelLike) -> "Session":
        await self.query(listen_statement(channel))
        return self

    async def unlisten(self, channel: ChannelLike) -> "Session":
        await self.query(unlisten_statement(channel))
        return self

    async def notify(self, channel: ChannelLike, payload: Optional[str] = None) -> "Session":
        if payload is not None and not isinstance(payload, str):
            raise TypeError(f"NOTIFY payload must be a string, got {type(payload).__name__}")
        await self.query(notify_statement(channel, payload))
        return self

    async def wait_notifications(self, timeout: Optional[float] = None, stop_after: Optional[int] = None) -> int:
        """
        Read notifications on an idle connection and dispatch them.

        psycopg only sees notifications while it reads from the socket, so a
        session that only listens must call this. Returns after ``timeout``
        seconds or ``stop_after`` notifications, with the number dispatched.
        """
        conn = self._require_connection()
        received = 0
        if self._forwarder_installed:
            conn.remove_notify_handler(self._router.route)
            self._forwarder_installed = False
        try:
            async for notify in conn.notifies(timeout=timeout, stop_after=stop_after):
                self._router.route(notify)
                received += 1
        finally:
            if self._conn is conn:
                conn.add_notify_handler(self._router.route)
                self._forwarder_installed = True
        return received

    # ------------------------------------------------------------------
    # event facade
    # ------------------------------------------------------------------

    def subscribe_meta(self, channel: ChannelLike, listener: Listener, once: bool = False) -> "Session":
        """Register a listener on a local ``$`` channel; no statement is sent."""
        name = channel.name if isinstance(channel, Channel) else channel
        meta = Channel.meta_channel(name)
        self._router.add(meta.name, listener, once=once)
        return self

    async def subscribe_channel(self, channel: ChannelLike, listener: Listener, once: bool = False) -> "Session":
        """
        Register a listener on a database channel and LISTEN to it.

        With ``once=True`` the registration is removed, and UNLISTEN
        scheduled, right before the listener runs.
        """
        name = validate_channel(channel)
        on_discard = functools.partial(self._schedule_unlisten, name) if once else None
        self._router.add(name, listener, once=once, on_discard=on_discard)
        try:
            await self.listen(name)
        except Exception:
            self._router.remove(name, listener)
            raise
        return self

    async def on(self, channel: ChannelLike, listener: Listener) -> "Session":
        channel = Channel.parse(channel)
        if channel.meta:
            return self.subscribe_meta(channel, listener)
        return await self.subscribe_channel(channel, listener)

    add_listener = on

    async def once(self, channel: ChannelLike, listener: Listener) -> "Session":
        channel = Channel.parse(channel)
        if channel.meta:
            return self.subscribe_meta(channel, listener, once=True)
        return await self.subscribe_channel(channel, listener, once=True)

    async def remove_listener(self, channel: ChannelLike, listener: Listener) -> "Session":
        channel = Channel.parse(channel)
        if not self._router.remove(channel.name, listener):
            logger.debug(f"Listener was not registered on {channel.name!r}")
        if not channel.meta:
            await self.unlisten(channel)
        return self

    off = remove_listener

    async def emit(self, channel: ChannelLike, *args: Any) -> "Session":
        """
        NOTIFY ``channel`` with ``args`` as a JSON array payload (no payload
        when called without args). Meta channels are dispatched locally.
        """
        channel = Channel.parse(channel)
        if channel.meta:
            self._router.emit(channel.name, *args)
            return self
        payload = dump_payload(args) if args else None
        return await self.notify(channel, payload)

    def listener_count(self, channel: ChannelLike) -> int:
        name = channel.name if isinstance(channel, Channel) else channel
        return self._router.listener_count(name)

    def listeners(self, channel: ChannelLike) -> List[Listener]:
        name = channel.name if isinstance(channel, Channel) else channel
        return self._router.listeners(name)

    def channels(self) -> List[str]:
        """Channels with at least one local listener, in registration order."""
        return self._router.channels()

    def _schedule_unlisten(self, channel: str) -> None:
        task = asyncio.get_running_loop().create_task(self._unlisten_quietly(channel))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _unlisten_quietly(self, channel: str) -> None:
        try:
            await self.unlisten(channel)
        except Exception as e:
            logger.error(f"Failed to unlisten {channel!r}: {e}")
