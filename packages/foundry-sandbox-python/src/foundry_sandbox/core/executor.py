"""
Executor（一次性命令执行引擎）。

- `Executor.run_command(...)`：执行 argv 命令
- `Executor.run_shell(...)`：以 `[shell, "-c", command]` 执行命令字符串（允许管道/重定向；沙箱边界是 workspace 目录而不是 shell）
- 标准化 `CommandResult`：stdout/stderr/exit_code/timeout/truncated/error_kind 等

输出策略：
- 批量模式：stdout/stderr 各自保留尾部（有界），再对 combined bytes 施加上限（优先保留 stderr）；
- 流式模式（传入 `on_chunk`）：每读到一块就按 stream 回调（每个 stream 内保序，stream 之间不保序），
  同时仍保留有界尾部用于结果摘要；回调方可阻塞以形成背压。
"""

from __future__ import annotations

import codecs
import logging
import os
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from foundry_sandbox.core.output import STDERR, STDOUT

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str, str], None]


class CommandResult(BaseModel):
    """
    命令执行结果（结构化）。

    字段说明：
    - ok：exit_code==0 且未超时/未取消
    - exit_code：进程退出码；超时/被取消/spawn 失败时为 None
    - stdout/stderr：捕获到的输出（可能被截断，截断时带前缀标记）
    - duration_ms：耗时（毫秒）
    - timeout：是否因超时被终止
    - truncated：stdout/stderr 是否发生截断（任一发生即 true）
    - error_kind：错误分类（validation/spawn_failed/timeout/cancelled/exit_code）
    """

    model_config = ConfigDict(extra="forbid")

    ok: bool
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = Field(default=0, ge=0)
    timeout: bool = False
    truncated: bool = False
    error_kind: Optional[str] = None


class _TailRingBuffer:
    """保留尾部的有界字节缓冲（用于截断策略）。"""

    def __init__(self, max_bytes: int) -> None:
        """
        创建一个“只保留尾部”的字节缓冲区。

        参数：
        - `max_bytes`：允许保留的最大字节数；为 0 时表示不保留任何输出（但会标记 truncated）。
        """

        if max_bytes < 0:
            raise ValueError("max_bytes must be >= 0")
        self._max_bytes = max_bytes
        self._buf = bytearray()
        self.truncated = False

    def append(self, chunk: bytes) -> None:
        """追加字节；超出上限时丢弃头部，保留尾部。"""

        if not chunk:
            return
        if self._max_bytes == 0:
            self.truncated = True
            return

        if len(chunk) >= self._max_bytes:
            self._buf[:] = chunk[-self._max_bytes :]
            self.truncated = True
            return

        overflow = len(self._buf) + len(chunk) - self._max_bytes
        if overflow > 0:
            del self._buf[:overflow]
            self.truncated = True
        self._buf.extend(chunk)

    def get_bytes(self) -> bytes:
        """获取当前缓冲内容（尾部片段）。"""

        return bytes(self._buf)


def _decode_bytes(data: bytes) -> str:
    """将字节解码为 UTF-8 文本；非法字节替换为 U+FFFD。"""

    return data.decode("utf-8", errors="replace")


def kill_process_group(pgid: int) -> None:
    """向进程组发送 SIGKILL；组已不存在时忽略。"""

    try:
        os.killpg(pgid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass


def terminate_process_group(proc: subprocess.Popen, *, grace_ms: int) -> None:
    """
    终止子进程（及其进程组）：SIGTERM → (grace) → SIGKILL。

    说明：
    - 子进程以 `start_new_session=True` 启动，pid 即进程组 id；优先按组终止，避免孙进程残留；
    - 进程已退出时 killpg 会失败，这里忽略（调用方只关心“最终不再运行”）。
    """

    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except (ProcessLookupError, PermissionError):
        pass
    except OSError:
        try:
            proc.terminate()
        except OSError:
            pass

    try:
        proc.wait(timeout=grace_ms / 1000.0)
        return
    except subprocess.TimeoutExpired:
        pass

    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass
    except OSError:
        try:
            proc.kill()
        except OSError:
            pass
    try:
        proc.wait(timeout=max(grace_ms, 1000) / 1000.0)
    except subprocess.TimeoutExpired:
        logger.warning("process %s did not exit after SIGKILL", proc.pid)


class Executor:
    """
    执行器。

    参数：
    - max_stdout_bytes/max_stderr_bytes：分别限制 stdout/stderr 记录的最大字节数（尾部保留）
    - max_combined_bytes：限制 stdout+stderr 的总记录字节数（尾部保留；优先保留 stderr）
    - terminate_grace_ms：超时/取消后 SIGTERM→SIGKILL 的宽限时间（毫秒）
    - truncate_marker：截断提示（插入到输出最前部，提示前文被省略）
    - chunk_bytes：单次读取的最大字节数（流式模式下即单个 chunk 的上限）
    - shell：`run_shell` 使用的 shell
    """

    def __init__(
        self,
        *,
        max_stdout_bytes: int = 1024 * 1024,
        max_stderr_bytes: int = 1024 * 1024,
        max_combined_bytes: int = 2 * 1024 * 1024,
        terminate_grace_ms: int = 200,
        truncate_marker: str = "...<truncated>\n",
        chunk_bytes: int = 4096,
        shell: str = "/bin/bash",
    ) -> None:
        """
        创建执行器并配置输出截断策略与终止策略。

        约束：
        - 所有 `max_*_bytes` 必须 >= 0；`terminate_grace_ms` 必须 >= 0；`chunk_bytes` 必须 >= 1；
        - 本类不做命令白名单判断。
        """

        if max_stdout_bytes < 0 or max_stderr_bytes < 0 or max_combined_bytes < 0:
            raise ValueError("max_*_bytes must be >= 0")
        if terminate_grace_ms < 0:
            raise ValueError("terminate_grace_ms must be >= 0")
        if chunk_bytes < 1:
            raise ValueError("chunk_bytes must be >= 1")
        self._max_stdout_bytes = max_stdout_bytes
        self._max_stderr_bytes = max_stderr_bytes
        self._max_combined_bytes = max_combined_bytes
        self._terminate_grace_ms = terminate_grace_ms
        self._truncate_marker = truncate_marker
        self._chunk_bytes = chunk_bytes
        self._shell = shell

    @property
    def shell(self) -> str:
        """`run_shell` 使用的 shell。"""

        return self._shell

    @property
    def terminate_grace_ms(self) -> int:
        """SIGTERM→SIGKILL 宽限时间。"""

        return self._terminate_grace_ms

    def shell_argv(self, command: str) -> list[str]:
        """把命令字符串包装成 shell argv。"""

        return [self._shell, "-c", command]

    def run_command(
        self,
        argv: list[str],
        *,
        cwd: Path,
        env: Optional[Mapping[str, str]] = None,
        timeout_ms: Optional[int] = None,
        cancel_checker: Optional[Callable[[], bool]] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> CommandResult:
        """
        执行 argv 命令并捕获结果。

        参数：
        - argv：命令与参数（至少 1 项）
        - cwd：工作目录（必须存在且为目录）
        - env：子进程的完整环境（通常是 `ExecutionEnvironment`）；None 表示继承 `os.environ`
        - timeout_ms：超时毫秒数；None 表示不限时
        - cancel_checker：轮询回调，返回 true 时终止进程组（例如客户端断开）
        - on_chunk：流式回调 `(stream, text)`；None 表示纯批量模式

        返回：
        - `CommandResult`；spawn 失败以 `error_kind="spawn_failed"` 返回，不抛异常
        """

        start = time.monotonic()
        if not argv:
            return CommandResult(ok=False, stderr="argv must not be empty", error_kind="validation")

        cwd_path = Path(cwd)
        if not cwd_path.exists() or not cwd_path.is_dir():
            return CommandResult(
                ok=False,
                stderr=f"cwd does not exist or is not a directory: {cwd_path}",
                error_kind="validation",
            )

        if timeout_ms is not None and timeout_ms < 1:
            return CommandResult(ok=False, stderr="timeout_ms must be >= 1", error_kind="validation")

        spawn_env = {str(k): str(v) for k, v in (env if env is not None else os.environ).items()}

        stdout_buf = _TailRingBuffer(self._max_stdout_bytes)
        stderr_buf = _TailRingBuffer(self._max_stderr_bytes)

        def _drain_stream(stream: Optional[object], buf: _TailRingBuffer, name: str) -> None:
            """持续读取子进程输出：写入尾部缓冲，并在流式模式下按 chunk 回调（后台线程）。"""

            if stream is None:
                return
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            forward = on_chunk
            try:
                while True:
                    try:
                        chunk = stream.read1(self._chunk_bytes)  # type: ignore[attr-defined]
                    except (OSError, ValueError):
                        break
                    if not chunk:
                        break
                    buf.append(chunk)
                    if forward is not None:
                        text = decoder.decode(chunk)
                        if text:
                            forward = self._forward(forward, name, text)
                if forward is not None:
                    tail = decoder.decode(b"", final=True)
                    if tail:
                        self._forward(forward, name, tail)
            finally:
                try:
                    stream.close()  # type: ignore[attr-defined]
                except OSError:
                    pass

        try:
            proc = subprocess.Popen(  # noqa: S603
                argv,
                cwd=str(cwd_path),
                env=spawn_env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            logger.info("spawn failed: argv0=%s err=%s", argv[0], e)
            return CommandResult(ok=False, stderr=str(e), duration_ms=duration_ms, error_kind="spawn_failed")

        t_out = threading.Thread(target=_drain_stream, args=(proc.stdout, stdout_buf, STDOUT), daemon=True)
        t_err = threading.Thread(target=_drain_stream, args=(proc.stderr, stderr_buf, STDERR), daemon=True)
        t_out.start()
        t_err.start()

        timeout = False
        cancelled = False
        try:
            # 短超时轮询：超时 / cancel_checker 任一触发即终止进程组
            deadline = None if timeout_ms is None else time.monotonic() + (timeout_ms / 1000.0)
            while True:
                if cancel_checker is not None:
                    try:
                        if cancel_checker():
                            cancelled = True
                            terminate_process_group(proc, grace_ms=self._terminate_grace_ms)
                            break
                    except Exception:
                        # fail-open：取消检测异常不应杀死执行器
                        logger.exception("cancel_checker raised; ignoring")

                wait_sec = 0.05
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        timeout = True
                        terminate_process_group(proc, grace_ms=self._terminate_grace_ms)
                        break
                    wait_sec = min(wait_sec, remaining)
                try:
                    proc.wait(timeout=wait_sec)
                    break
                except subprocess.TimeoutExpired:
                    continue
            # shell 已退出：组内残留的后台进程（例如 `anvil &`）随命令一起结束
            kill_process_group(proc.pid)
        finally:
            # 管道由各自的 reader 线程关闭，这里只等待有限时间。
            t_out.join(timeout=1.0)
            t_err.join(timeout=1.0)
            if t_out.is_alive() or t_err.is_alive():
                logger.debug("output pipes still held after exit: pid=%s", proc.pid)

        duration_ms = int((time.monotonic() - start) * 1000)
        exit_code: Optional[int] = None if (timeout or cancelled) else proc.returncode

        out_b, err_b, combined_limit_truncated = self._apply_combined_limit(stdout_buf.get_bytes(), stderr_buf.get_bytes())
        truncated = stdout_buf.truncated or stderr_buf.truncated or combined_limit_truncated

        stdout_text = _decode_bytes(out_b)
        stderr_text = _decode_bytes(err_b)
        if truncated:
            if stdout_text:
                stdout_text = f"{self._truncate_marker}{stdout_text}"
            if stderr_text:
                stderr_text = f"{self._truncate_marker}{stderr_text}"

        if cancelled:
            return CommandResult(
                ok=False,
                stdout=stdout_text,
                stderr=stderr_text,
                duration_ms=duration_ms,
                truncated=truncated,
                error_kind="cancelled",
            )

        if timeout:
            return CommandResult(
                ok=False,
                stdout=stdout_text,
                stderr=stderr_text,
                duration_ms=duration_ms,
                timeout=True,
                truncated=truncated,
                error_kind="timeout",
            )

        ok = exit_code == 0
        return CommandResult(
            ok=ok,
            exit_code=exit_code,
            stdout=stdout_text,
            stderr=stderr_text,
            duration_ms=duration_ms,
            truncated=truncated,
            error_kind=None if ok else "exit_code",
        )

    def run_shell(
        self,
        command: str,
        *,
        cwd: Path,
        env: Optional[Mapping[str, str]] = None,
        timeout_ms: Optional[int] = None,
        cancel_checker: Optional[Callable[[], bool]] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> CommandResult:
        """以 shell 执行一条命令字符串；参数语义同 `run_command`。"""

        return self.run_command(
            self.shell_argv(command),
            cwd=cwd,
            env=env,
            timeout_ms=timeout_ms,
            cancel_checker=cancel_checker,
            on_chunk=on_chunk,
        )

    def _forward(self, callback: ChunkCallback, stream: str, text: str) -> Optional[ChunkCallback]:
        """
        调用流式回调；回调抛异常时记录日志并返回 None（后续只写缓冲，继续 drain 管道以免子进程阻塞）。
        """

        try:
            callback(stream, text)
            return callback
        except Exception:
            logger.exception("on_chunk callback failed; output forwarding disabled for this stream")
            return None

    def _apply_combined_limit(self, stdout_b: bytes, stderr_b: bytes) -> tuple[bytes, bytes, bool]:
        """
        对 stdout/stderr 的“记录字节数总和”施加上限（尾部保留）。

        策略：先从 stdout 头部丢弃，再从 stderr 头部丢弃。
        """

        max_total = self._max_combined_bytes
        total = len(stdout_b) + len(stderr_b)
        if max_total <= 0 or total <= max_total:
            return stdout_b, stderr_b, False

        drop = total - max_total
        if drop >= len(stdout_b):
            drop -= len(stdout_b)
            stdout_b = b""
        else:
            stdout_b = stdout_b[drop:]
            drop = 0

        if drop > 0:
            stderr_b = b"" if drop >= len(stderr_b) else stderr_b[drop:]

        return stdout_b, stderr_b, True
