from billsplit.backend.config import load_settings

_ENV_KEYS = (
    "BILLSPLIT_DATABASE_URL",
    "BILLSPLIT_HOST",
    "BILLSPLIT_PORT",
    "BILLSPLIT_SESSION_TTL_SECONDS",
    "BILLSPLIT_STORE_TIMEOUT_SECONDS",
    "BILLSPLIT_SEND_TIMEOUT_SECONDS",
    "BILLSPLIT_SUBSCRIBER_QUEUE_SIZE",
    "BILLSPLIT_SWEEP_INTERVAL_SECONDS",
    "BILLSPLIT_LOG_LEVEL",
)


def test_load_settings_reads_expected_env(monkeypatch) -> None:
    monkeypatch.setenv("BILLSPLIT_DATABASE_URL", "postgresql://local")
    monkeypatch.setenv("BILLSPLIT_HOST", "0.0.0.0")
    monkeypatch.setenv("BILLSPLIT_PORT", "9000")
    monkeypatch.setenv("BILLSPLIT_SESSION_TTL_SECONDS", "3600")
    monkeypatch.setenv("BILLSPLIT_STORE_TIMEOUT_SECONDS", "2.5")
    monkeypatch.setenv("BILLSPLIT_SUBSCRIBER_QUEUE_SIZE", "8")
    monkeypatch.setenv("BILLSPLIT_LOG_LEVEL", "debug")

    settings = load_settings()

    assert settings.database_url == "postgresql://local"
    assert settings.host == "0.0.0.0"
    assert settings.port == 9000
    assert settings.session_ttl_seconds == 3600
    assert settings.store_timeout_seconds == 2.5
    assert settings.subscriber_queue_size == 8
    assert settings.log_level == "DEBUG"


def test_load_settings_applies_defaults(monkeypatch) -> None:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)

    settings = load_settings()

    assert settings.database_url is None
    assert settings.host == "127.0.0.1"
    assert settings.port == 8000
    assert settings.session_ttl_seconds == 86400
    assert settings.store_timeout_seconds == 5
    assert settings.send_timeout_seconds == 5
    assert settings.subscriber_queue_size == 64
    assert settings.sweep_interval_seconds == 60
    assert settings.log_level == "INFO"
