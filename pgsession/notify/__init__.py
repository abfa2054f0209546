from pgsession.notify.channels import (
    CHANNEL_PATTERN,
    NOTIFICATION_CHANNEL,
    Channel,
    listen_statement,
    notify_statement,
    unlisten_statement,
    validate_channel,
)
from pgsession.notify.router import NotificationRouter, decode_payload

__all__ = [
    'CHANNEL_PATTERN',
    'NOTIFICATION_CHANNEL',
    'Channel',
    'NotificationRouter',
    'decode_payload',
    'listen_statement',
    'notify_statement',
    'unlisten_statement',
    'validate_channel',
]
