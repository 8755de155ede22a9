from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest

from gemdesk.app import configure_logging, main
from gemdesk.engine.config import BridgeConfig
from gemdesk.shared.services.persistence import SessionStore


def test_list_prints_saved_sessions(tmp_path: Path, monkeypatch, capsys) -> None:
    monkeypatch.chdir(tmp_path)
    data_dir = tmp_path / "data"
    store = SessionStore(data_dir / "sessions")
    session = store.create("Design review")

    monkeypatch.setattr("sys.argv", ["gemdesk", "--list", "--data-dir", str(data_dir)])
    with pytest.raises(SystemExit) as exc_info:
        main()

    assert exc_info.value.code == 0
    out = capsys.readouterr().out
    assert session.id in out
    assert "Design review" in out


def test_list_with_no_sessions(tmp_path: Path, monkeypatch, capsys) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("sys.argv", ["gemdesk", "--list", "--data-dir", str(tmp_path / "empty")])
    with pytest.raises(SystemExit):
        main()
    assert "No saved sessions." in capsys.readouterr().out


def test_bad_config_exits_with_error(tmp_path: Path, monkeypatch, capsys) -> None:
    monkeypatch.chdir(tmp_path)
    bad = tmp_path / "bad.yaml"
    bad.write_text("bridge: {unclosed\n", encoding="utf-8")
    monkeypatch.setattr("sys.argv", ["gemdesk", "--list", "--config", str(bad)])
    with pytest.raises(SystemExit) as exc_info:
        main()
    assert exc_info.value.code == 2
    assert "could not load config" in capsys.readouterr().err


def test_configure_logging_writes_rotating_log(tmp_path: Path) -> None:
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        log_file = configure_logging(BridgeConfig(data_dir=tmp_path, log_level="DEBUG"))
        assert log_file == tmp_path / "logs" / "gemdesk-server.log"
        assert root.level == logging.DEBUG
        assert any(isinstance(h, RotatingFileHandler) for h in root.handlers)
        logging.getLogger("gemdesk.test").info("hello log")
        for handler in root.handlers:
            handler.flush()
        assert "hello log" in log_file.read_text(encoding="utf-8")
    finally:
        for handler in root.handlers:
            if handler not in saved_handlers:
                handler.close()
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
