"""
Rollback-on-failure helper for chains of dependent statements.

    scope = Session.scope()
    try:
        db = scope.bind(await Session.start(dsn))
        await db.query("INSERT ...")
        await db.query("UPDATE ...")
        await db.commit()
    except Exception as err:
        await scope.rollback(err)   # rolls back, then re-raises err

``Session.scope(scope)`` returns ``scope.bind`` as a plain function, for
pipeline stages that take a session and pass it on.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Callable, NoReturn, Optional

from pgsession.core.logger import setup_logger

if TYPE_CHECKING:
    from pgsession.session import Session

logger = setup_logger(__name__, include_location=True)


class Scope:
    """Mutable record of the session a chain of steps is working on."""

    def __init__(self, session: Optional["Session"] = None):
        self.session = session

    def bind(self, session: "Session") -> "Session":
        """Remember ``session`` for rollback and return it unchanged."""
        self.session = session
        return session

    def connector(self) -> Callable[["Session"], "Session"]:
        return self.bind

    async def rollback(self, error: BaseException) -> NoReturn:
        """
        Roll back the bound session, if it still holds a connection, and
        re-raise ``error``.

        A failing ROLLBACK is logged; ``error`` is still what propagates.
        """
        session = self.session
        if session is not None and session.connected:
            try:
                await session.rollback()
            except Exception as rollback_error:
                logger.exception(f"Rollback after {type(error).__name__} failed: {rollback_error}")
        elif session is not None:
            logger.debug("Scope session is already released, nothing to roll back")
        raise error

    async def __aenter__(self) -> "Scope":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc is not None:
            await self.rollback(exc)
        return False

    def __repr__(self) -> str:
        return f"<Scope session={self.session!r}>"
