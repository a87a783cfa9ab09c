from billsplit.backend import server
from billsplit.backend.config import load_settings


def test_parse_args_defaults_to_settings(monkeypatch) -> None:
    monkeypatch.setenv("BILLSPLIT_HOST", "0.0.0.0")
    monkeypatch.setenv("BILLSPLIT_PORT", "8123")

    args = server.parse_args(load_settings(), [])

    assert args.host == "0.0.0.0"
    assert args.port == 8123
    assert args.reload is False


def test_main_runs_uvicorn_with_api_app(monkeypatch) -> None:
    calls = []
    monkeypatch.setattr(server.uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
    monkeypatch.setattr(server, "configure_logging", lambda level: None)
    monkeypatch.delenv("BILLSPLIT_LOG_LEVEL", raising=False)

    exit_code = server.main(["--host", "localhost", "--port", "9001"])

    assert exit_code == 0
    assert calls == [
        (
            "billsplit.backend.api:app",
            {"host": "localhost", "port": 9001, "reload": False, "log_level": "info"},
        )
    ]
