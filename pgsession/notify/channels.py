"""
Channel names and the LISTEN / UNLISTEN / NOTIFY statements built from them.

A channel is either a database channel, delivered through PostgreSQL
LISTEN/NOTIFY, or a meta channel (name starts with ``$``) that only exists
inside one Session, such as the ``$notification`` firehose.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Union

from psycopg import sql

from pgsession.core.errors import ListenNameInvalid

CHANNEL_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")
META_PREFIX = "$"
NOTIFICATION_CHANNEL = "$notification"


@dataclass(frozen=True)
class Channel:
    name: str
    meta: bool = False

    @classmethod
    def parse(cls, name: Union[str, "Channel"]) -> "Channel":
        """Tag a raw name; database channel names are validated here."""
        if isinstance(name, Channel):
            return name
        if isinstance(name, str) and name.startswith(META_PREFIX):
            return cls.meta_channel(name)
        return cls(validate_channel(name), meta=False)

    @classmethod
    def meta_channel(cls, name: str) -> "Channel":
        if not isinstance(name, str) or not name.startswith(META_PREFIX) or len(name) == 1:
            raise ListenNameInvalid(name)
        return cls(name, meta=True)

    def __str__(self) -> str:
        return self.name


ChannelLike = Union[str, Channel]


def validate_channel(name: ChannelLike) -> str:
    """Return the database channel name, or raise ListenNameInvalid."""
    if isinstance(name, Channel):
        if name.meta:
            raise ListenNameInvalid(name.name)
        name = name.name
    if not isinstance(name, str) or not CHANNEL_PATTERN.match(name):
        raise ListenNameInvalid(name)
    return name


def listen_statement(channel: ChannelLike) -> sql.Composed:
    return sql.SQL("LISTEN {}").format(sql.Identifier(validate_channel(channel)))


def unlisten_statement(channel: ChannelLike) -> sql.Composed:
    return sql.SQL("UNLISTEN {}").format(sql.Identifier(validate_channel(channel)))


def notify_statement(channel: ChannelLike, payload: Optional[str] = None) -> sql.Composed:
    name = sql.Identifier(validate_channel(channel))
    if payload is None:
        return sql.SQL("NOTIFY {}").format(name)
    return sql.SQL("NOTIFY {}, {}").format(name, sql.Literal(payload))
