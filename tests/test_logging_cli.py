import sys
from pathlib import Path

import pytest

from arouzy_chat import cli, logging_utils, server


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("JWT_SECRET", "DATABASE_URL", "CHAT_PORT"):
        monkeypatch.delenv(name, raising=False)
    yield
    server.logger.remove()


def _patch_uvicorn(monkeypatch, store):
    def fake_run(app, **kwargs):
        store["app"] = app
        store["run_kwargs"] = kwargs

    monkeypatch.setattr(server.uvicorn, "run", fake_run)


def test_main_logging_args_with_log_dir(monkeypatch, tmp_path):
    store: dict[str, object] = {}
    _patch_uvicorn(monkeypatch, store)

    original_configure = server.configure_logging

    def wrapped_configure_logging(**kwargs):
        store["configure_args"] = kwargs
        return original_configure(**kwargs)

    monkeypatch.setattr(server, "configure_logging", wrapped_configure_logging)

    argv = [
        "--log-dir",
        str(tmp_path),
        "--log-json-console",
        "--log-level-console",
        "DEBUG",
        "--log-rotation",
        "10 MB",
        "--log-retention",
        "5 days",
        "--port",
        "4321",
    ]

    assert server.main(argv) == 0
    server.logger.remove()

    assert store["configure_args"]["log_dir"] == Path(tmp_path)
    assert store["configure_args"]["console_json"] is True
    assert store["configure_args"]["console_level"] == "DEBUG"
    assert store["configure_args"]["rotation"] == "10 MB"
    assert store["configure_args"]["retention"] == "5 days"
    assert store["run_kwargs"]["port"] == 4321
    assert store["run_kwargs"]["log_config"] is None

    log_file = tmp_path / "chat-server.log"
    assert log_file.exists()
    first_line = log_file.read_text().splitlines()[0]
    assert first_line.lstrip().startswith("{")


def test_main_logging_args_without_log_dir(monkeypatch):
    store: dict[str, object] = {}
    _patch_uvicorn(monkeypatch, store)
    monkeypatch.setattr(
        server,
        "configure_logging",
        lambda **kwargs: store.setdefault("configure_args", kwargs),
    )

    assert server.main([]) == 0

    assert store["configure_args"]["log_dir"] is None
    assert store["configure_args"]["console_level"] == "INFO"
    assert store["run_kwargs"]["host"] == "0.0.0.0"
    assert store["run_kwargs"]["port"] == 3001
    chat = store["app"].state.chat
    assert chat.config.ws_path == "/ws"


def test_main_uses_sql_store_for_database_url(monkeypatch, tmp_path):
    store: dict[str, object] = {}
    _patch_uvicorn(monkeypatch, store)
    monkeypatch.setattr(server, "configure_logging", lambda **kwargs: None)

    url = f"sqlite:///{tmp_path / 'chat.db'}"
    assert server.main(["--database-url", url]) == 0

    chat = store["app"].state.chat
    assert type(chat.store).__name__ == "SqlMessageStore"
    chat.close()


def test_main_rejects_invalid_config(monkeypatch, capsys):
    store: dict[str, object] = {}
    _patch_uvicorn(monkeypatch, store)

    assert server.main(["--port", "0"]) == 1
    assert "port must be between" in capsys.readouterr().err
    assert "app" not in store


def test_main_missing_config_file(monkeypatch, tmp_path, capsys):
    _patch_uvicorn(monkeypatch, {})
    assert server.main(["--config", str(tmp_path / "missing.toml")]) == 1
    assert "ERROR" in capsys.readouterr().err


def test_cli_main_exit_codes(monkeypatch):
    monkeypatch.setattr(cli, "main", lambda: 0)
    with pytest.raises(SystemExit) as exc_info:
        cli.cli_main()
    assert exc_info.value.code == 0

    def boom():
        raise RuntimeError("broken")

    monkeypatch.setattr(cli, "main", boom)
    with pytest.raises(SystemExit) as exc_info:
        cli.cli_main()
    assert exc_info.value.code == 1


def test_version_flag(capsys):
    with pytest.raises(SystemExit) as exc_info:
        server.main(["--version"])
    assert exc_info.value.code == 0
    assert server.get_version() in capsys.readouterr().out


def test_retention_parsing():
    assert logging_utils._parse_retention(None) == logging_utils.LOG_RETENTION_MAX_FILES
    assert logging_utils._parse_retention("7") == 7
    assert logging_utils._parse_retention("1 week") == "1 week"


def test_intercept_handler_routes_stdlib_logging(tmp_path):
    import logging

    log_file = logging_utils.configure_logging(log_dir=tmp_path)
    logging.getLogger("uvicorn.error").warning("from uvicorn")
    logging_utils.logger.remove()

    assert log_file == tmp_path / logging_utils.DEFAULT_LOG_FILENAME
    assert "from uvicorn" in log_file.read_text()


def test_argv_defaults_to_sys_argv(monkeypatch):
    store: dict[str, object] = {}
    _patch_uvicorn(monkeypatch, store)
    monkeypatch.setattr(server, "configure_logging", lambda **kwargs: None)
    monkeypatch.setattr(sys, "argv", ["arouzy-chat-server", "--host", "127.0.0.1"])

    assert server.main() == 0
    assert store["run_kwargs"]["host"] == "127.0.0.1"


@pytest.mark.parametrize(
    "env_secret, expect_warning", [(None, True), ("deployment-secret", False)]
)
def test_main_warns_about_default_jwt_secret(
    monkeypatch, env_secret, expect_warning
):
    _patch_uvicorn(monkeypatch, {})
    monkeypatch.setattr(server, "configure_logging", lambda **kwargs: None)
    if env_secret is not None:
        monkeypatch.setenv("JWT_SECRET", env_secret)

    messages: list[str] = []
    server.logger.add(lambda m: messages.append(str(m)), level="WARNING")

    assert server.main([]) == 0

    warned = any("bundled development default" in m for m in messages)
    assert warned is expect_warning
