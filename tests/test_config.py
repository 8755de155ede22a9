from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from gemdesk.engine.config import BridgeConfig
from gemdesk.engine.yaml_config import discover_config_path, load_config, load_yaml_config


def test_defaults_run_gemini_continue_mode(tmp_path: Path) -> None:
    config = BridgeConfig(data_dir=tmp_path)
    assert config.worker_argv == ["npx", "gemini", "-c"]
    assert config.sessions_dir == tmp_path / "sessions"
    assert config.contexts_dir == tmp_path / "contexts"
    assert config.logs_dir == tmp_path / "logs"


def test_load_yaml_config_reads_bridge_and_server_sections(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("GEMDESK_TEST_API_KEY", "secret")
    config_path = tmp_path / "gemdesk.yaml"
    config_path.write_text(
        "bridge:\n"
        f"  data_dir: {tmp_path / 'data'}\n"
        "  worker_command: gemini\n"
        "  worker_args: [--yolo, -c]\n"
        "  worker_env:\n"
        "    GEMINI_API_KEY: ${GEMDESK_TEST_API_KEY}\n"
        "  read_chunk_size: 1024\n"
        "  shutdown_grace_seconds: 2.5\n"
        "server:\n"
        "  host: 0.0.0.0\n"
        "  port: 8765\n"
        "  log_level: debug\n",
        encoding="utf-8",
    )

    config = load_yaml_config(config_path)

    assert config.data_dir == tmp_path / "data"
    assert config.worker_argv == ["gemini", "--yolo", "-c"]
    assert config.worker_env == {"GEMINI_API_KEY": "secret"}
    assert config.read_chunk_size == 1024
    assert config.shutdown_grace_seconds == 2.5
    assert config.host == "0.0.0.0"
    assert config.port == 8765
    assert config.log_level == "DEBUG"


def test_load_yaml_config_accepts_string_worker_args(tmp_path: Path) -> None:
    config_path = tmp_path / "gemdesk.yaml"
    config_path.write_text("bridge:\n  worker_args: gemini -c\n", encoding="utf-8")
    assert load_yaml_config(config_path).worker_args == ["gemini", "-c"]


def test_load_yaml_config_empty_file_gives_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "gemdesk.yaml"
    config_path.write_text("", encoding="utf-8")
    config = load_yaml_config(config_path)
    assert config.worker_argv == BridgeConfig().worker_argv


def test_load_yaml_config_rejects_bad_sections(tmp_path: Path) -> None:
    config_path = tmp_path / "gemdesk.yaml"
    config_path.write_text("bridge: [not, a, mapping]\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_yaml_config(config_path)


def test_load_yaml_config_propagates_parse_errors(tmp_path: Path) -> None:
    config_path = tmp_path / "gemdesk.yaml"
    config_path.write_text("bridge: {unclosed\n", encoding="utf-8")
    with pytest.raises(yaml.YAMLError):
        load_yaml_config(config_path)


def test_load_yaml_config_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_yaml_config(tmp_path / "nope.yaml")


def test_discover_prefers_dot_gemdesk_location(tmp_path: Path) -> None:
    assert discover_config_path(tmp_path) is None

    (tmp_path / "gemdesk.yaml").write_text("{}", encoding="utf-8")
    assert discover_config_path(tmp_path) == tmp_path / "gemdesk.yaml"

    (tmp_path / ".gemdesk").mkdir()
    (tmp_path / ".gemdesk" / "gemdesk.yaml").write_text("{}", encoding="utf-8")
    assert discover_config_path(tmp_path) == tmp_path / ".gemdesk" / "gemdesk.yaml"


def test_env_overrides_yaml(tmp_path: Path) -> None:
    config_path = tmp_path / "gemdesk.yaml"
    config_path.write_text("bridge:\n  worker_command: from-yaml\nserver:\n  port: 1111\n", encoding="utf-8")
    env = {
        "GEMDESK_WORKER_COMMAND": "from-env",
        "GEMDESK_WORKER_ARGS": "chat --resume 'last session'",
        "GEMDESK_PORT": "2222",
        "GEMDESK_DATA_DIR": str(tmp_path / "env-data"),
    }
    with patch.dict(os.environ, env, clear=False):
        config = load_config(config_path)

    assert config.worker_command == "from-env"
    assert config.worker_args == ["chat", "--resume", "last session"]
    assert config.port == 2222
    assert config.data_dir == tmp_path / "env-data"


def test_from_env_rejects_non_positive_chunk_size() -> None:
    with patch.dict(os.environ, {"GEMDESK_READ_CHUNK_SIZE": "0"}, clear=False):
        with pytest.raises(ValueError):
            BridgeConfig.from_env()


def test_engine_package_exports_lazily() -> None:
    import gemdesk.engine as engine
    from gemdesk.engine.process_bridge import ProcessBridge

    assert engine.ProcessBridge is ProcessBridge
    assert engine.load_config is load_config
    with pytest.raises(AttributeError):
        engine.NoSuchThing
