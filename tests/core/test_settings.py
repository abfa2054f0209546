import pytest
from pydantic import ValidationError

from pgsession.core import config
from pgsession.core.config import Settings, get_settings


def test_defaults_without_environment():
    settings = get_settings(reload=True)

    assert settings.dsn is None
    assert settings.pool_size == 10
    assert settings.pool_min_size == 1
    assert settings.pool_timeout == 30.0
    assert settings.log_json is False


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("PGSESSION_DSN", "postgresql://app@db/app")
    monkeypatch.setenv("PGSESSION_POOL_SIZE", " 4 ")
    monkeypatch.setenv("PGSESSION_POOL_TIMEOUT", "2.5")
    monkeypatch.setenv("PGSESSION_LOG_JSON", "yes")

    settings = get_settings(reload=True)

    assert settings.dsn == "postgresql://app@db/app"
    assert settings.pool_size == 4
    assert settings.pool_timeout == 2.5
    assert settings.log_json is True


def test_pgconfig_is_fallback_for_dsn(monkeypatch):
    monkeypatch.setenv("PGCONFIG", "postgresql://legacy@db/test")
    assert get_settings(reload=True).dsn == "postgresql://legacy@db/test"

    monkeypatch.setenv("PGSESSION_DSN", "postgresql://preferred@db/test")
    assert get_settings(reload=True).dsn == "postgresql://preferred@db/test"


def test_env_file_is_loaded_without_overriding(monkeypatch, tmp_path):
    env_file = tmp_path / "pgsession.env"
    env_file.write_text(
        "# local settings\n"
        "export PGSESSION_DSN='postgresql://from-file@db/app'\n"
        "PGSESSION_POOL_SIZE=7\n"
    )
    monkeypatch.setenv("PGSESSION_ENV_FILE", str(env_file))
    monkeypatch.setenv("PGSESSION_POOL_SIZE", "3")
    # variables set from the file must not leak into other tests
    monkeypatch.setattr(config.os, "environ", dict(config.os.environ))

    settings = get_settings(reload=True)

    assert settings.dsn == "postgresql://from-file@db/app"
    assert settings.pool_size == 3


@pytest.mark.parametrize("field,value", [
    ("PGSESSION_POOL_SIZE", 0),
    ("PGSESSION_POOL_MIN_SIZE", 11),
    ("PGSESSION_POOL_TIMEOUT", 0),
    ("PGSESSION_POOL_MAX_WAITING", -1),
    ("PGSESSION_LOG_JSON", "maybe"),
])
def test_invalid_values_are_rejected(field, value):
    with pytest.raises(ValidationError):
        Settings(**{field: value})


def test_pool_kwargs_follow_settings():
    settings = Settings(PGSESSION_POOL_SIZE=5, PGSESSION_POOL_MIN_SIZE=2)

    kwargs = settings.pool_kwargs()

    assert kwargs["max_size"] == 5
    assert kwargs["min_size"] == 2
    assert set(kwargs) == {"min_size", "max_size", "timeout", "max_waiting", "max_lifetime", "max_idle"}
