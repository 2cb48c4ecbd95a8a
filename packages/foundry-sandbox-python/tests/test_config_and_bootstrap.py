from __future__ import annotations

import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from foundry_sandbox import bootstrap
from foundry_sandbox.config.defaults import load_default_config_dict
from foundry_sandbox.config.loader import load_config, load_config_dicts


def _clear_sandbox_env(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    for key in (bootstrap.ENV_FILE_VAR, bootstrap.CONFIG_PATHS_VAR, bootstrap.WORKSPACE_ROOT_VAR):
        monkeypatch.delenv(key, raising=False)


def test_default_config_is_valid_and_matches_documented_defaults() -> None:
    cfg = load_config_dicts([load_default_config_dict()])
    assert cfg.config_version == 1
    assert cfg.workspace.source_extensions == [".sol"]
    assert cfg.toolchain.probe_command == "forge --version"
    assert "foundryup" in cfg.toolchain.install_command
    assert cfg.repl.launch_keyword == "chisel"
    assert cfg.repl.exit_keyword == "exit"
    assert cfg.repl.exit_directive == "!quit"
    assert cfg.repl.write_timeout_ms == 2000
    assert cfg.reaper.retention_sec == 86400
    assert cfg.server.cookie_name == "sessionToken"


def test_overlay_deep_merges_and_lists_replace() -> None:
    cfg = load_config_dicts(
        [
            load_default_config_dict(),
            {"executor": {"timeout_ms": 5000}, "toolchain": {"progress_patterns": ["^\\.+$"]}},
        ]
    )
    assert cfg.executor.timeout_ms == 5000
    assert cfg.executor.shell == "/bin/bash"
    assert cfg.toolchain.progress_patterns == ["^\\.+$"]


def test_unknown_field_is_rejected() -> None:
    with pytest.raises(ValidationError):
        load_config_dicts([load_default_config_dict(), {"executor": {"timeout": 1}}])


def test_invalid_progress_pattern_is_rejected() -> None:
    with pytest.raises(ValidationError):
        load_config_dicts([{"toolchain": {"progress_patterns": ["("]}}])


def test_source_extensions_are_normalized() -> None:
    cfg = load_config_dicts([{"workspace": {"source_extensions": ["SOL", ".Vy", ""]}}])
    assert cfg.workspace.source_extensions == [".sol", ".vy"]


def test_load_config_reads_yaml_files_in_order(tmp_path: Path) -> None:
    a = tmp_path / "a.yaml"
    b = tmp_path / "b.yaml"
    a.write_text("reaper:\n  interval_sec: 10\n  retention_sec: 20\n", encoding="utf-8")
    b.write_text("reaper:\n  retention_sec: 30\n", encoding="utf-8")
    cfg = load_config([a, b])
    assert cfg.reaper.interval_sec == 10
    assert cfg.reaper.retention_sec == 30


def test_resolve_discovers_default_overlay_and_env_paths(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    _clear_sandbox_env(monkeypatch)
    (tmp_path / "config").mkdir()
    (tmp_path / "config" / "sandbox.yaml").write_text("server:\n  port: 6000\n", encoding="utf-8")
    extra = tmp_path / "extra.yaml"
    extra.write_text("server:\n  host: 0.0.0.0\n", encoding="utf-8")

    env = {bootstrap.CONFIG_PATHS_VAR: "extra.yaml"}
    resolved = bootstrap.resolve_sandbox_config(app_root=tmp_path, env=env)
    assert resolved.config.server.port == 6000
    assert resolved.config.server.host == "0.0.0.0"
    assert resolved.overlay_paths == [
        str((tmp_path / "config" / "sandbox.yaml").resolve()),
        str(extra.resolve()),
    ]


def test_workspace_root_env_wins_over_overlays(tmp_path: Path) -> None:
    (tmp_path / "config").mkdir()
    (tmp_path / "config" / "sandbox.yaml").write_text("workspace:\n  root: /from/overlay\n", encoding="utf-8")
    env = {bootstrap.WORKSPACE_ROOT_VAR: str(tmp_path / "ws")}
    cfg = bootstrap.load_sandbox_config(app_root=tmp_path, env=env)
    assert cfg.workspace.root == str(tmp_path / "ws")


def test_missing_overlay_from_env_fails_fast(tmp_path: Path) -> None:
    env = {bootstrap.CONFIG_PATHS_VAR: "missing.yaml"}
    with pytest.raises(ValueError):
        bootstrap.resolve_sandbox_config(app_root=tmp_path, env=env)


def test_load_dotenv_if_present_does_not_override_existing_env(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    _clear_sandbox_env(monkeypatch)
    (tmp_path / ".env").write_text("# comment\nX_SANDBOX_A=from_file\nexport X_SANDBOX_B='quoted'\n", encoding="utf-8")
    monkeypatch.setenv("X_SANDBOX_A", "from_process")
    monkeypatch.delenv("X_SANDBOX_B", raising=False)

    p, env = bootstrap.load_dotenv_if_present(app_root=tmp_path, override=False)
    assert p == (tmp_path / ".env").resolve()
    assert env == {"X_SANDBOX_B": "quoted"}
    assert os.environ.get("X_SANDBOX_B") is None


def test_load_dotenv_if_present_env_file_var_must_exist(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.setenv(bootstrap.ENV_FILE_VAR, "nope.env")
    with pytest.raises(ValueError):
        bootstrap.load_dotenv_if_present(app_root=tmp_path)


def test_apply_dotenv_injects_missing_keys_only(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    _clear_sandbox_env(monkeypatch)
    (tmp_path / ".env").write_text("X_SANDBOX_C=from_file\nX_SANDBOX_D=from_file\n", encoding="utf-8")
    monkeypatch.setenv("X_SANDBOX_C", "from_process")
    monkeypatch.delenv("X_SANDBOX_D", raising=False)

    assert bootstrap.apply_dotenv(app_root=tmp_path) == (tmp_path / ".env").resolve()
    assert os.environ["X_SANDBOX_C"] == "from_process"
    assert os.environ["X_SANDBOX_D"] == "from_file"
    os.environ.pop("X_SANDBOX_D", None)


def test_apply_dotenv_without_file_is_a_noop(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    _clear_sandbox_env(monkeypatch)
    assert bootstrap.apply_dotenv(app_root=tmp_path) is None
