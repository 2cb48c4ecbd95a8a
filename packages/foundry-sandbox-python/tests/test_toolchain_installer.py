from __future__ import annotations

import os
from pathlib import Path
from typing import List, Tuple

from foundry_sandbox.core.executor import Executor
from foundry_sandbox.core.installer import ToolchainInstaller
from foundry_sandbox.core.progress import ProgressClassifier
from foundry_sandbox.core.sessions import InstallStatus, SessionRegistry
from foundry_sandbox.core.workspace import WorkspaceStore


def _setup(tmp_path: Path, *, probe: str, install: str) -> Tuple[SessionRegistry, ToolchainInstaller]:
    reg = SessionRegistry(workspaces=WorkspaceStore(root=tmp_path / "ws"))
    inst = ToolchainInstaller(
        registry=reg,
        executor=Executor(),
        env_factory=lambda: dict(os.environ),
        probe_command=probe,
        install_command=install,
        classifier=ProgressClassifier(),
        probe_timeout_ms=10_000,
        install_timeout_ms=10_000,
        max_error_bytes=256,
    )
    reg.set_on_created(inst.ensure_installed)
    return reg, inst


def test_successful_probe_short_circuits_install(tmp_path: Path) -> None:
    reg, _inst = _setup(tmp_path, probe="true", install="touch install_ran")
    token = reg.resolve(None).token
    assert reg.wait_for_install(token, timeout=10) is InstallStatus.INSTALLED
    assert not (tmp_path / "ws" / token / "install_ran").exists()


def test_failed_probe_runs_install_in_workspace(tmp_path: Path) -> None:
    reg, _inst = _setup(tmp_path, probe="false", install="touch install_ran")
    token = reg.resolve(None).token
    assert reg.wait_for_install(token, timeout=10) is InstallStatus.INSTALLED
    assert (tmp_path / "ws" / token / "install_ran").exists()


def test_install_failure_keeps_error_lines_but_not_progress(tmp_path: Path) -> None:
    script = (
        "echo '######################## 35.0%' 1>&2; "
        "echo 'curl: (6) Could not resolve host' 1>&2; "
        "exit 7"
    )
    reg, _inst = _setup(tmp_path, probe="false", install=script)
    events: List[InstallStatus] = []
    token = reg.resolve(None).token
    reg.subscribe(token, lambda s, e: events.append(s))
    assert reg.wait_for_install(token, timeout=10) is InstallStatus.FAILED
    snap = reg.snapshot(token)
    assert "Could not resolve host" in snap.install_error
    assert "35.0%" not in snap.install_error
    assert events == [InstallStatus.FAILED]


def test_install_failure_without_stderr_reports_exit_code(tmp_path: Path) -> None:
    reg, _inst = _setup(tmp_path, probe="false", install="exit 4")
    token = reg.resolve(None).token
    assert reg.wait_for_install(token, timeout=10) is InstallStatus.FAILED
    assert reg.snapshot(token).install_error == "install command exited with code 4"


def test_error_text_is_bounded_to_tail(tmp_path: Path) -> None:
    script = "for i in $(seq 1 200); do echo \"error line $i\" 1>&2; done; exit 1"
    reg, _inst = _setup(tmp_path, probe="false", install=script)
    token = reg.resolve(None).token
    assert reg.wait_for_install(token, timeout=10) is InstallStatus.FAILED
    err = reg.snapshot(token).install_error
    assert len(err.encode("utf-8")) <= 256
    assert err.endswith("error line 200")
    assert "error line 1\n" not in err


def test_install_runs_at_most_once_per_attempt(tmp_path: Path) -> None:
    reg, inst = _setup(tmp_path, probe="false", install="echo x >> count.txt")
    token = reg.resolve(None).token
    assert inst.ensure_installed(token) is None
    assert reg.wait_for_install(token, timeout=10) is InstallStatus.INSTALLED
    assert inst.ensure_installed(token) is None
    assert (tmp_path / "ws" / token / "count.txt").read_text(encoding="utf-8") == "x\n"


def test_retry_after_failure_runs_a_new_attempt(tmp_path: Path) -> None:
    reg, inst = _setup(tmp_path, probe="test -f ok", install="exit 1")
    token = reg.resolve(None).token
    assert reg.wait_for_install(token, timeout=10) is InstallStatus.FAILED

    (tmp_path / "ws" / token / "ok").write_text("", encoding="utf-8")
    assert reg.reset_install(token) is True
    t = inst.ensure_installed(token)
    assert t is not None
    t.join(timeout=10)
    assert reg.snapshot(token).install_status is InstallStatus.INSTALLED
    assert reg.snapshot(token).install_attempts == 2
