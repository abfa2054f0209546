import os
import json
import logging
from datetime import datetime, date
from decimal import Decimal
from typing import Any
from uuid import UUID


#===================================
# environment
#===================================


def log_level() -> int:
    return getattr(logging, os.environ.get("PGSESSION_LOG_LEVEL", "INFO").upper(), logging.INFO)

def is_on(value: str) -> bool:
    return str(value).strip().lower() in ("true", "1", "yes", "on", "y", "t")

#===================================
# serialization
#===================================


class PayloadEncoder(json.JSONEncoder):
    """JSON encoder for NOTIFY payloads; covers the types rows usually carry."""

    def default(self, obj):
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        elif isinstance(obj, Decimal):
            return float(obj)
        elif isinstance(obj, UUID):
            return str(obj)
        elif isinstance(obj, (set, frozenset, tuple)):
            return list(obj)
        return super().default(obj)


def dump_payload(args: tuple | list) -> str:
    """Serialize positional notification arguments as a compact JSON array."""
    return json.dumps(list(args), cls=PayloadEncoder, separators=(",", ":"), ensure_ascii=False)


def load_payload(payload: str) -> Any:
    return json.loads(payload)
