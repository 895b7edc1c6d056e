import pytest

from upload_tokens.config import Config

ENV_VARS = (
    "DATABASE_PATH",
    "DB_POOL_SIZE",
    "DB_BUSY_TIMEOUT",
    "TOKEN_TTL_MINUTES",
    "TOKEN_CLEANUP_PROBABILITY",
    "TOKEN_CLEANUP_INTERVAL",
    "HOST",
    "PORT",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    config = Config.from_env()

    assert config.storage.database_path == "./data/upload_tokens.db"
    assert config.storage.pool_size == 5
    assert config.storage.token_ttl_minutes == 15
    assert config.storage.cleanup_probability == 0.1
    assert config.storage.cleanup_interval == 0.0
    assert config.server.port == 8080
    assert config.log_level == "INFO"


def test_reads_environment(monkeypatch):
    monkeypatch.setenv("DATABASE_PATH", "/tmp/t.db")
    monkeypatch.setenv("DB_POOL_SIZE", "10")
    monkeypatch.setenv("TOKEN_CLEANUP_PROBABILITY", "0.5")
    monkeypatch.setenv("PORT", "9000")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    config = Config.from_env()

    assert config.storage.database_path == "/tmp/t.db"
    assert config.storage.pool_size == 10
    assert config.storage.cleanup_probability == 0.5
    assert config.server.port == 9000
    assert config.log_level == "DEBUG"


def test_reports_every_invalid_value(monkeypatch):
    monkeypatch.setenv("DB_POOL_SIZE", "0")
    monkeypatch.setenv("TOKEN_TTL_MINUTES", "soon")
    monkeypatch.setenv("TOKEN_CLEANUP_PROBABILITY", "2")

    with pytest.raises(ValueError) as excinfo:
        Config.from_env()

    message = str(excinfo.value)
    assert "DB_POOL_SIZE" in message
    assert "TOKEN_TTL_MINUTES" in message
    assert "TOKEN_CLEANUP_PROBABILITY" in message
