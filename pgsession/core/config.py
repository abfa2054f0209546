import os
import sys
from typing import Optional, Dict
from pydantic import BaseModel, Field, ConfigDict, model_validator, field_validator


_ENV_LOADED = False

def _load_env_file(path: str, allow_override: bool = False) -> None:
    """
    Minimal .env loader: loads KEY=VALUE pairs into os.environ.
    - Ignores empty lines and lines starting with '#'
    - Supports values wrapped in single or double quotes
    - By default, does not override existing environment variables
    """
    if not path or not os.path.exists(path):
        return
    try:
        with open(path, "r", encoding="utf-8") as f:
            for raw_line in f:
                line = raw_line.strip()
                if not line or line.startswith("#"):
                    continue
                if line.startswith("export "):
                    line = line[len("export "):].strip()
                if "=" not in line:
                    continue
                key, value = line.split("=", 1)
                key = key.strip()
                value = value.strip()
                if (value.startswith('"') and value.endswith('"')) or (value.startswith("'") and value.endswith("'")):
                    value = value[1:-1]
                if allow_override or key not in os.environ:
                    os.environ[key] = value
    except PermissionError as e:
        print(f"Permission denied reading environment file {path}: {e}", file=sys.stderr)
        raise

def load_env_if_present(force_reload: bool = False) -> None:
    """
    Load environment variables from .env files:
    1. PGSESSION_ENV_FILE, when set (only this file)
    2. otherwise .env.local then .env
    Existing environment variables always win.
    """
    global _ENV_LOADED
    if _ENV_LOADED and not force_reload:
        return

    custom = os.environ.get("PGSESSION_ENV_FILE")
    if custom:
        _load_env_file(custom)
    else:
        for env_file in ('.env.local', '.env'):
            _load_env_file(env_file)

    _ENV_LOADED = True


class Settings(BaseModel):
    """
    pgsession settings from environment variables.
    """
    model_config = ConfigDict(validate_assignment=True, populate_by_name=True)

    raw_env: Dict[str, str] = Field(default_factory=dict, exclude=True)

    # Connection string used when a Session is created without one
    dsn: Optional[str] = Field(None, alias="PGSESSION_DSN")

    # Pool sizing and timing, handed to psycopg_pool.AsyncConnectionPool
    pool_size: int = Field(10, alias="PGSESSION_POOL_SIZE")
    pool_min_size: int = Field(1, alias="PGSESSION_POOL_MIN_SIZE")
    pool_timeout: float = Field(30.0, alias="PGSESSION_POOL_TIMEOUT")
    pool_max_waiting: int = Field(0, alias="PGSESSION_POOL_MAX_WAITING")
    pool_max_lifetime: float = Field(3600.0, alias="PGSESSION_POOL_MAX_LIFETIME")
    pool_max_idle: float = Field(600.0, alias="PGSESSION_POOL_MAX_IDLE")

    log_level: str = Field("INFO", alias="PGSESSION_LOG_LEVEL")
    log_json: bool = Field(False, alias="PGSESSION_LOG_JSON")

    @field_validator('dsn', mode='before')
    def blank_dsn_is_none(cls, v):
        if v is None:
            return None
        if not isinstance(v, str):
            raise ValueError("Expected a connection string")
        return v.strip() or None

    @field_validator('log_json', mode='before')
    def coerce_bool(cls, v):
        if isinstance(v, bool):
            return v
        if isinstance(v, str):
            val = v.strip().lower()
            if val in ("true", "1", "yes", "y", "on"):
                return True
            if val in ("false", "0", "no", "n", "off", ""):
                return False
        raise ValueError(f"Invalid boolean value: {v}")

    @field_validator('pool_size', 'pool_min_size', 'pool_max_waiting', mode='before')
    def coerce_int(cls, v):
        if isinstance(v, int):
            return v
        if isinstance(v, str):
            return int(v.strip())
        raise ValueError("Expected integer-compatible value")

    @field_validator('pool_timeout', 'pool_max_lifetime', 'pool_max_idle', mode='before')
    def coerce_float(cls, v):
        if isinstance(v, (int, float)):
            return float(v)
        if isinstance(v, str):
            return float(v.strip())
        raise ValueError("Expected float-compatible value")

    @field_validator('log_level', mode='before')
    def normalize_level(cls, v):
        return str(v or "INFO").strip().upper()

    @model_validator(mode='after')
    def validate_pool_config(self):
        if self.pool_size < 1:
            raise ValueError(f"PGSESSION_POOL_SIZE must be >= 1, got {self.pool_size}")
        if self.pool_min_size < 0 or self.pool_min_size > self.pool_size:
            raise ValueError(
                f"PGSESSION_POOL_MIN_SIZE must be between 0 and PGSESSION_POOL_SIZE ({self.pool_size}), "
                f"got {self.pool_min_size}"
            )
        if self.pool_timeout <= 0:
            raise ValueError(f"PGSESSION_POOL_TIMEOUT must be > 0, got {self.pool_timeout}")
        if self.pool_max_waiting < 0:
            raise ValueError(f"PGSESSION_POOL_MAX_WAITING must be >= 0, got {self.pool_max_waiting}")
        return self

    def pool_kwargs(self) -> Dict[str, object]:
        """Keyword arguments for AsyncConnectionPool sizing and timing."""
        return {
            "min_size": self.pool_min_size,
            "max_size": self.pool_size,
            "timeout": self.pool_timeout,
            "max_waiting": self.pool_max_waiting,
            "max_lifetime": self.pool_max_lifetime,
            "max_idle": self.pool_max_idle,
        }


_settings: Optional[Settings] = None

def get_settings(reload: bool = False) -> Settings:
    """
    Get pgsession settings, reading the environment on first call.
    Set reload=True to pick up changes to os.environ.
    """
    global _settings
    if _settings is None or reload:
        load_env_if_present(force_reload=reload)
        env = os.environ
        values = {
            "PGSESSION_DSN": env.get('PGSESSION_DSN') or env.get('PGCONFIG'),
            "PGSESSION_POOL_SIZE": env.get('PGSESSION_POOL_SIZE', '10'),
            "PGSESSION_POOL_MIN_SIZE": env.get('PGSESSION_POOL_MIN_SIZE', '1'),
            "PGSESSION_POOL_TIMEOUT": env.get('PGSESSION_POOL_TIMEOUT', '30'),
            "PGSESSION_POOL_MAX_WAITING": env.get('PGSESSION_POOL_MAX_WAITING', '0'),
            "PGSESSION_POOL_MAX_LIFETIME": env.get('PGSESSION_POOL_MAX_LIFETIME', '3600'),
            "PGSESSION_POOL_MAX_IDLE": env.get('PGSESSION_POOL_MAX_IDLE', '600'),
            "PGSESSION_LOG_LEVEL": env.get('PGSESSION_LOG_LEVEL', 'INFO'),
            "PGSESSION_LOG_JSON": env.get('PGSESSION_LOG_JSON', 'false'),
        }
        _settings = Settings(raw_env=dict(env), **values)
    return _settings
