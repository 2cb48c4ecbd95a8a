from __future__ import annotations

import sys
import time
from pathlib import Path
from typing import List, Tuple

from foundry_sandbox.core.executor import Executor


def _py(code: str) -> list[str]:
    return [sys.executable, "-c", code]


def test_run_shell_captures_stdout_and_exit_code(tmp_path: Path) -> None:
    r = Executor().run_shell("echo hi", cwd=tmp_path)
    assert r.ok is True
    assert r.exit_code == 0
    assert r.stdout == "hi\n"
    assert r.stderr == ""


def test_nonzero_exit_is_reported_with_stderr(tmp_path: Path) -> None:
    r = Executor().run_shell("echo oops 1>&2; exit 3", cwd=tmp_path)
    assert r.ok is False
    assert r.exit_code == 3
    assert r.error_kind == "exit_code"
    assert "oops" in r.stderr


def test_command_runs_inside_cwd(tmp_path: Path) -> None:
    r = Executor().run_shell("pwd", cwd=tmp_path)
    assert Path(r.stdout.strip()).resolve() == tmp_path.resolve()


def test_env_is_passed_verbatim(tmp_path: Path) -> None:
    r = Executor().run_shell('printf "%s" "$SANDBOX_PROBE"', cwd=tmp_path, env={"SANDBOX_PROBE": "42", "PATH": "/usr/bin:/bin"})
    assert r.stdout == "42"


def test_streaming_preserves_per_stream_order(tmp_path: Path) -> None:
    chunks: List[Tuple[str, str]] = []
    code = "import sys\nfor i in range(50):\n    print(i, flush=True)\nsys.stderr.write('done\\n')"
    r = Executor().run_command(_py(code), cwd=tmp_path, on_chunk=lambda s, t: chunks.append((s, t)))
    assert r.ok is True
    out = "".join(t for s, t in chunks if s == "stdout")
    err = "".join(t for s, t in chunks if s == "stderr")
    assert out == "".join(f"{i}\n" for i in range(50))
    assert err == "done\n"
    assert r.stdout == out


def test_streaming_callback_failure_does_not_break_execution(tmp_path: Path) -> None:
    def _boom(_stream: str, _text: str) -> None:
        raise RuntimeError("sink gone")

    r = Executor().run_shell("echo a; echo b", cwd=tmp_path, on_chunk=_boom)
    assert r.ok is True
    assert r.stdout == "a\nb\n"


def test_spawn_failure_is_structured(tmp_path: Path) -> None:
    r = Executor().run_command(["/definitely/not/a/binary"], cwd=tmp_path)
    assert r.ok is False
    assert r.error_kind == "spawn_failed"
    assert r.exit_code is None


def test_missing_cwd_is_a_validation_error(tmp_path: Path) -> None:
    r = Executor().run_shell("true", cwd=tmp_path / "missing")
    assert r.error_kind == "validation"


def test_cancel_terminates_the_process_group(tmp_path: Path) -> None:
    started = time.monotonic()
    marker = tmp_path / "child_survived"
    # 子 shell 在后台再起一个孙进程；取消后整个进程组都应被终止
    cmd = f"(sleep 2; touch {marker}) & sleep 30"
    r = Executor(terminate_grace_ms=100).run_shell(
        cmd, cwd=tmp_path, cancel_checker=lambda: time.monotonic() - started > 0.2
    )
    assert r.error_kind == "cancelled"
    assert time.monotonic() - started < 5
    time.sleep(2.5)
    assert not marker.exists()


def test_timeout_is_distinct_from_cancel(tmp_path: Path) -> None:
    r = Executor().run_shell("sleep 5", cwd=tmp_path, timeout_ms=100)
    assert r.timeout is True
    assert r.error_kind == "timeout"


def test_output_is_truncated_keeping_tail(tmp_path: Path) -> None:
    ex = Executor(max_stdout_bytes=64)
    r = ex.run_command(_py("print('x' * 1000 + 'END')"), cwd=tmp_path)
    assert r.truncated is True
    assert r.stdout.endswith("END\n")
    assert r.stdout.startswith("...<truncated>")


def test_multibyte_output_split_across_chunks_is_decoded(tmp_path: Path) -> None:
    ex = Executor(chunk_bytes=1)
    chunks: List[str] = []
    r = ex.run_command(_py("import sys; sys.stdout.write('héllo ✓')"), cwd=tmp_path, on_chunk=lambda s, t: chunks.append(t))
    assert "".join(chunks) == "héllo ✓"
    assert r.stdout == "héllo ✓"


def _pid_running(pid: int) -> bool:
    # 已退出但尚未被回收的进程在 /proc 中显示为 Z
    try:
        stat = Path(f"/proc/{pid}/stat").read_text(encoding="utf-8")
    except OSError:
        return False
    return stat.rsplit(")", 1)[1].split()[0] != "Z"


def test_background_children_are_killed_when_the_shell_exits(tmp_path: Path) -> None:
    chunks: List[Tuple[str, str]] = []
    started = time.monotonic()
    r = Executor().run_shell(
        "sleep 30 & echo $! > bg.pid; echo started",
        cwd=tmp_path,
        on_chunk=lambda s, t: chunks.append((s, t)),
    )
    assert r.exit_code == 0
    assert r.stdout == "started\n"
    assert time.monotonic() - started < 5

    pid = int((tmp_path / "bg.pid").read_text(encoding="utf-8").strip())
    deadline = time.monotonic() + 2
    while _pid_running(pid) and time.monotonic() < deadline:
        time.sleep(0.05)
    assert not _pid_running(pid)
    seen = len(chunks)
    time.sleep(0.2)
    assert len(chunks) == seen
