"""
Local listener bookkeeping and notification demultiplexing.

Every Session owns one NotificationRouter. The psycopg notify handler feeds
raw ``Notify`` objects to :meth:`NotificationRouter.route`, which republishes
them on ``$notification`` and then on their own channel with the decoded
payload as positional arguments.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from psycopg import Notify

from pgsession.core.common import load_payload
from pgsession.core.logger import setup_logger
from pgsession.notify.channels import NOTIFICATION_CHANNEL

logger = setup_logger(__name__, include_location=True)

Listener = Callable[..., Any]


def decode_payload(payload: Optional[str]) -> Tuple[Any, ...]:
    """
    Turn a notification payload into listener arguments.

    - not starting with ``[`` (including the empty payload): the raw string
    - parses as a JSON array: one argument per element
    - parses as any other JSON value: that value
    - does not parse: the raw string
    """
    if not payload:
        return ("",)
    if not payload.startswith("["):
        return (payload,)
    try:
        parsed = load_payload(payload)
    except json.JSONDecodeError:
        return (payload,)
    if isinstance(parsed, list):
        return tuple(parsed)
    return (parsed,)


@dataclass(eq=False)
class Registration:
    listener: Listener
    once: bool = False
    on_discard: Optional[Callable[[], Any]] = None


class NotificationRouter:
    """Ordered per-channel listener lists with failure-isolated dispatch."""

    def __init__(self):
        self._registrations: Dict[str, List[Registration]] = {}

    def add(
        self,
        channel: str,
        listener: Listener,
        once: bool = False,
        on_discard: Optional[Callable[[], Any]] = None,
    ) -> None:
        """
        Register ``listener`` for ``channel``.

        ``on_discard`` is only used with ``once=True``: it runs when the
        registration is dropped right before its single invocation.
        """
        if not callable(listener):
            raise TypeError(f"Listener for {channel!r} must be callable, got {type(listener).__name__}")
        self._registrations.setdefault(channel, []).append(Registration(listener, once, on_discard))

    def remove(self, channel: str, listener: Listener) -> bool:
        """Remove the most recent registration of ``listener``; False if none."""
        registrations = self._registrations.get(channel)
        if not registrations:
            return False
        for registration in reversed(registrations):
            if registration.listener == listener:
                self._drop(channel, registration)
                return True
        return False

    def listeners(self, channel: str) -> List[Listener]:
        return [r.listener for r in self._registrations.get(channel, ())]

    def listener_count(self, channel: str) -> int:
        return len(self._registrations.get(channel, ()))

    def channels(self) -> List[str]:
        return list(self._registrations)

    def emit(self, channel: str, *args: Any) -> bool:
        """
        Call the listeners of ``channel`` in registration order.

        One-shot registrations are dropped before their listener runs. A
        listener that raises is logged and the rest still run. Returns True
        if the channel had listeners.
        """
        registrations = list(self._registrations.get(channel, ()))
        if not registrations:
            return False
        for registration in registrations:
            if registration.once:
                if not self._drop(channel, registration):
                    # already fired or removed by an earlier listener
                    continue
                if registration.on_discard is not None:
                    try:
                        registration.on_discard()
                    except Exception:
                        logger.exception(f"Cleanup of one-shot listener on {channel!r} failed")
            try:
                registration.listener(*args)
            except Exception:
                logger.exception(
                    f"Listener {getattr(registration.listener, '__qualname__', registration.listener)!r} "
                    f"failed on channel {channel!r}"
                )
        return True

    def route(self, notify: Notify) -> None:
        """Dispatch one server notification."""
        logger.debug(f"Notification on {notify.channel!r} from pid {notify.pid}")
        self.emit(NOTIFICATION_CHANNEL, notify)
        self.emit(notify.channel, *decode_payload(notify.payload))

    def _drop(self, channel: str, registration: Registration) -> bool:
        registrations = self._registrations.get(channel)
        if not registrations:
            return False
        for index, current in enumerate(registrations):
            if current is registration:
                del registrations[index]
                if not registrations:
                    del self._registrations[channel]
                return True
        return False
