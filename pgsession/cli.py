import asyncio
import json
from typing import List, Optional

import psycopg
import typer

from pgsession.core.common import PayloadEncoder
from pgsession.core.db.pool import PoolRegistry
from pgsession.core.errors import SessionError
from pgsession.core.logger import setup_logger
from pgsession.notify.channels import NOTIFICATION_CHANNEL
from pgsession.notify.router import decode_payload
from pgsession.session import Session

logger = setup_logger(__name__, include_location=True)
cli = typer.Typer(no_args_is_help=True, help="Listen, notify and query through pgsession sessions.")

DSN_OPTION = typer.Option(None, "--dsn", "-d", help="Connection string (defaults to PGSESSION_DSN / PGCONFIG).")


def _echo_json(value) -> None:
    typer.echo(json.dumps(value, cls=PayloadEncoder, ensure_ascii=False))


def _parse_arg(raw: str):
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _run(coro) -> None:
    try:
        asyncio.run(coro)
    except (SessionError, psycopg.Error) as e:
        typer.echo(json.dumps({"status": "error", "details": str(e)}), err=True)
        raise typer.Exit(code=1)


async def _with_registry(func):
    registry = PoolRegistry()
    try:
        await func(registry)
    finally:
        await registry.close_all()


@cli.command("listen")
def listen(
    channels: List[str] = typer.Argument(..., help="Channels to LISTEN on."),
    dsn: Optional[str] = DSN_OPTION,
    timeout: Optional[float] = typer.Option(None, "--timeout", "-t", help="Stop after this many seconds."),
    count: Optional[int] = typer.Option(None, "--count", "-n", help="Stop after this many notifications."),
):
    """Print notifications as JSON lines: channel, sender pid and decoded arguments."""

    def show(notify):
        _echo_json({
            "channel": notify.channel,
            "pid": notify.pid,
            "args": list(decode_payload(notify.payload)),
        })

    async def _listen(registry: PoolRegistry):
        async with Session(dsn, pools=registry) as db:
            db.subscribe_meta(NOTIFICATION_CHANNEL, show)
            for channel in channels:
                await db.listen(channel)
            logger.info(f"Listening on {', '.join(channels)}")
            received = await db.wait_notifications(timeout=timeout, stop_after=count)
            logger.info(f"Received {received} notifications")

    try:
        _run(_with_registry(_listen))
    except KeyboardInterrupt:
        raise typer.Exit(code=0)


@cli.command("notify")
def notify(
    channel: str = typer.Argument(..., help="Channel to NOTIFY."),
    args: Optional[List[str]] = typer.Argument(None, help="Arguments; each is sent as JSON when it parses, else as a string."),
    dsn: Optional[str] = DSN_OPTION,
    raw: bool = typer.Option(False, "--raw", help="Send the single argument as the payload text, without JSON encoding."),
):
    """Emit an event on a channel."""
    args = args or []
    if raw and len(args) > 1:
        typer.echo("--raw takes at most one argument", err=True)
        raise typer.Exit(code=2)

    async def _notify(registry: PoolRegistry):
        async with Session(dsn, pools=registry) as db:
            if raw:
                await db.notify(channel, args[0] if args else None)
            else:
                await db.emit(channel, *[_parse_arg(a) for a in args])
        _echo_json({"status": "ok", "channel": channel})

    _run(_with_registry(_notify))


@cli.command("query")
def query(
    statement: str = typer.Argument(..., help="SQL statement to run."),
    dsn: Optional[str] = DSN_OPTION,
    transaction: bool = typer.Option(False, "--transaction/--no-transaction", help="Run inside BEGIN/COMMIT."),
):
    """Run one statement and print the rows as JSON lines."""

    async def _query(registry: PoolRegistry):
        if transaction:
            async with Session.transaction(dsn, pools=registry) as db:
                rows = await db.query(statement)
        else:
            async with Session(dsn, pools=registry) as db:
                rows = await db.query(statement)
        for row in rows:
            _echo_json(row)

    _run(_with_registry(_query))


if __name__ == "__main__":
    cli()
