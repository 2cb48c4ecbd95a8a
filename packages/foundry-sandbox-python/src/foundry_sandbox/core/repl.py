"""
Interactive Process Multiplexer（每个 session 至多一个长生命周期的交互式子进程，默认 chisel）。

状态机（per session）：`absent → starting → ready → closed(→absent)`

- 启动：命令（去空白、忽略大小写）等于启动关键字且当前无子进程 → spawn，发送 `replStarting`；
- `starting → ready`：stdout 中出现就绪 banner（正则）→ 发送 `replReady`；就绪前的输入被拒绝（提示“仍在启动”），不转发；
- `ready`：除退出关键字外的一切命令（包括再次出现的启动关键字）原样 + `\\n` 写入 stdin；同一进程的写入串行化；
- 退出关键字：写入 REPL 原生退出指令，等待有限时间后无条件终止进程组，清除状态，发送 `replClosed`；
- 子进程自行退出：清除状态，向客户端发送 "REPL session ended." 与 `replClosed`；
- 两个 stream 的输出都以普通命令输出的形状转发（`stdout`/`stderr` chunk）。

输出 sink 跟随“最近一次发送输入的连接”；连接断开时由上层调用 `close_for_owner` 关闭其名下的 REPL。
"""

from __future__ import annotations

import codecs
import logging
import os
import re
import select
import subprocess
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from foundry_sandbox.core.errors import InvalidInputError, ReplProcessError, SpawnFailureError
from foundry_sandbox.core.executor import terminate_process_group
from foundry_sandbox.core.output import STDERR, STDOUT, OutputSink
from foundry_sandbox.core.sessions import SessionRegistry

logger = logging.getLogger(__name__)

STARTING_NOTICE = "REPL is still starting, please wait.\n"
ENDED_NOTICE = "REPL session ended.\n"

_READY_WINDOW_CHARS = 4096


class ReplState(str, Enum):
    """交互式子进程状态。"""

    STARTING = "starting"
    READY = "ready"
    CLOSED = "closed"


class ReplProcess:
    """
    一个交互式子进程（stdin/stdout/stderr 均为管道）。

    线程模型：
    - 两个 reader 线程分别读取 stdout/stderr 并转发给当前 sink；
    - 一个 watcher 线程等待进程退出，随后回调 `on_exit`；
    - `write_line` 与 `shutdown` 共用写锁，保证 stdin 写入串行；
    - stdin 为非阻塞 fd，单次写入有截止时间，不读 stdin 的 REPL 不会让写入方无限阻塞。
    """

    def __init__(
        self,
        *,
        token: str,
        proc: subprocess.Popen,
        sink: OutputSink,
        owner: Optional[str],
        ready_pattern: re.Pattern[str],
        on_exit: Callable[["ReplProcess"], None],
        chunk_bytes: int = 4096,
        write_timeout_ms: int = 2000,
    ) -> None:
        """包装已启动的进程；调用 `start()` 后开始转发输出。"""

        self.token = token
        self.proc = proc
        self._sink: OutputSink = sink
        self._owner = owner
        self._ready_pattern = ready_pattern
        self._on_exit = on_exit
        self._chunk_bytes = chunk_bytes
        self._write_timeout_sec = write_timeout_ms / 1000.0
        self._state = ReplState.STARTING
        self._state_lock = threading.Lock()
        self._sink_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._ready_window = ""
        self._readers: list[threading.Thread] = []
        self.exited = threading.Event()
        if proc.stdin is not None:
            os.set_blocking(proc.stdin.fileno(), False)

    @property
    def state(self) -> ReplState:
        """当前状态。"""

        with self._state_lock:
            return self._state

    @property
    def owner(self) -> Optional[str]:
        """当前绑定的连接 id。"""

        with self._sink_lock:
            return self._owner

    def bind(self, sink: OutputSink, owner: Optional[str]) -> None:
        """把输出改投到新的 sink（最近一次发送输入的连接）。"""

        with self._sink_lock:
            self._sink = sink
            self._owner = owner

    def emit_chunk(self, stream: str, text: str) -> None:
        """向当前 sink 转发一段输出（不持锁调用 sink，sink 可阻塞形成背压）。"""

        with self._sink_lock:
            sink = self._sink
        try:
            sink.chunk(stream, text)
        except Exception:
            logger.exception("repl sink failed: %s", self.token)

    def emit_signal(self, event: str, **fields: Any) -> None:
        """向当前 sink 发送带外信号。"""

        with self._sink_lock:
            sink = self._sink
        try:
            sink.signal(event, **fields)
        except Exception:
            logger.exception("repl sink failed: %s", self.token)

    def start(self) -> None:
        """启动 reader 与 watcher 线程。"""

        short = self.token[:8]
        for name, pipe in ((STDOUT, self.proc.stdout), (STDERR, self.proc.stderr)):
            t = threading.Thread(target=self._pump, args=(name, pipe), name=f"repl-{name}-{short}", daemon=True)
            self._readers.append(t)
            t.start()
        threading.Thread(target=self._watch, name=f"repl-watch-{short}", daemon=True).start()

    def _pump(self, stream: str, pipe: Any) -> None:
        """读取一个输出管道直至 EOF，逐块转发；stdout 同时用于就绪检测。"""

        if pipe is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                try:
                    chunk = pipe.read1(self._chunk_bytes)
                except (OSError, ValueError):
                    break
                if not chunk:
                    break
                text = decoder.decode(chunk)
                if not text:
                    continue
                self.emit_chunk(stream, text)
                if stream == STDOUT:
                    self._check_ready(text)
            tail = decoder.decode(b"", final=True)
            if tail:
                self.emit_chunk(stream, tail)
        finally:
            try:
                pipe.close()
            except OSError:
                pass

    def _check_ready(self, text: str) -> None:
        """在 starting 状态下检测就绪 banner（跨 chunk 拼接检测窗口）。"""

        with self._state_lock:
            if self._state is not ReplState.STARTING:
                return
            self._ready_window = (self._ready_window + text)[-_READY_WINDOW_CHARS:]
            if not self._ready_pattern.search(self._ready_window):
                return
            self._state = ReplState.READY
            self._ready_window = ""
        logger.info("repl ready: %s", self.token)
        self.emit_signal("replReady")

    def _watch(self) -> None:
        """等待进程退出，排空输出后回调 `on_exit`。"""

        self.proc.wait()
        for t in self._readers:
            t.join(timeout=1.0)
        with self._state_lock:
            self._state = ReplState.CLOSED
        try:
            stdin = self.proc.stdin
            with self._write_lock:
                if stdin is not None and not stdin.closed:
                    stdin.close()
        except OSError:
            pass
        self.exited.set()
        try:
            self._on_exit(self)
        except Exception:
            logger.exception("repl exit hook failed: %s", self.token)

    def _write_all(self, data: bytes) -> None:
        """在截止时间内把 data 全部写入 stdin；超时抛 TimeoutError，管道断开抛 OSError。"""

        stdin = self.proc.stdin
        if stdin is None or stdin.closed:
            raise BrokenPipeError("stdin is closed")
        fd = stdin.fileno()
        view = memoryview(data)
        deadline = time.monotonic() + self._write_timeout_sec
        while view:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError("stdin is not being read")
            _, writable, _ = select.select([], [fd], [], remaining)
            if not writable:
                continue
            try:
                written = os.write(fd, view)
            except BlockingIOError:
                continue
            view = view[written:]

    def write_line(self, line: str) -> None:
        """
        向 stdin 写入一行（自动补 `\\n`）。

        异常：
        - ReplProcessError：进程未就绪 / 已退出 / 管道已断开 / 在截止时间内未被读走
        """

        if not self._write_lock.acquire(timeout=self._write_timeout_sec):
            raise ReplProcessError("REPL is not accepting input.", details={"reason": "write in progress"})
        try:
            if self.state is not ReplState.READY:
                raise ReplProcessError(details={"state": self.state.value})
            try:
                self._write_all((line + "\n").encode("utf-8"))
            except TimeoutError as exc:
                raise ReplProcessError("REPL is not accepting input.", details={"reason": str(exc)}) from exc
            except (OSError, ValueError) as exc:
                raise ReplProcessError(details={"reason": str(exc)}) from exc
        finally:
            self._write_lock.release()

    def shutdown(self, *, exit_directive: str, exit_grace_ms: int, terminate_grace_ms: int) -> None:
        """
        显式关闭：写入退出指令 → 等待至多 exit_grace_ms → 无条件终止进程组。

        说明：
        - 进程可能已经自行退出；写入失败与重复终止都被忽略；
        - 写锁在宽限时间内拿不到（另一写入方卡在满管道上）时跳过退出指令，直接终止；
        - 返回时进程已不再运行。
        """

        grace_sec = exit_grace_ms / 1000.0
        if self._write_lock.acquire(timeout=grace_sec):
            try:
                if exit_directive:
                    self._write_all((exit_directive + "\n").encode("utf-8"))
                stdin = self.proc.stdin
                if stdin is not None and not stdin.closed:
                    stdin.close()
            except (OSError, ValueError):
                pass
            finally:
                self._write_lock.release()
            try:
                self.proc.wait(timeout=grace_sec)
            except subprocess.TimeoutExpired:
                logger.info("repl did not exit after directive; terminating: %s", self.token)
        else:
            logger.info("repl stdin is blocked; terminating: %s", self.token)
        terminate_process_group(self.proc, grace_ms=terminate_grace_ms)
        with self._state_lock:
            self._state = ReplState.CLOSED


class ReplMultiplexer:
    """
    按 session 管理交互式子进程，并实现顶层路由规则。

    参数：
    - registry：Session Registry（保存每个 session 的 REPL 句柄）
    - shell：执行 `command` 的 shell
    - command：REPL 启动命令（默认 `chisel`）
    - launch_keyword / exit_keyword：启动与退出关键字（比较时去空白、忽略大小写）
    - ready_pattern：就绪 banner 正则
    - exit_directive：REPL 原生退出指令（默认 `!quit`）
    - exit_grace_ms：写入退出指令后等待自行退出的时间
    - terminate_grace_ms：SIGTERM→SIGKILL 宽限时间
    - write_timeout_ms：单行输入写入 stdin 的截止时间

    说明：
    - `_spawn_lock` 只保护“查询/登记/清除句柄”这类短临界区；向 sink 发信号与进程终止都在锁外进行，
      某个连接的慢 sink 不会拖住其他 session。
    """

    def __init__(
        self,
        *,
        registry: SessionRegistry,
        shell: str = "/bin/bash",
        command: str = "chisel",
        launch_keyword: str = "chisel",
        exit_keyword: str = "exit",
        ready_pattern: str = "Welcome to Chisel!",
        exit_directive: str = "!quit",
        exit_grace_ms: int = 500,
        terminate_grace_ms: int = 200,
        chunk_bytes: int = 4096,
        write_timeout_ms: int = 2000,
    ) -> None:
        """创建 multiplexer（不启动任何进程）。"""

        self._registry = registry
        self._shell = shell
        self._command = command
        self._launch_keyword = launch_keyword.strip().lower()
        self._exit_keyword = exit_keyword.strip().lower()
        self._ready_pattern = re.compile(ready_pattern)
        self._exit_directive = exit_directive
        self._exit_grace_ms = exit_grace_ms
        self._terminate_grace_ms = terminate_grace_ms
        self._chunk_bytes = chunk_bytes
        self._write_timeout_ms = write_timeout_ms
        self._spawn_lock = threading.Lock()

    def is_launch(self, command: str) -> bool:
        """是否为启动关键字。"""

        return command.strip().lower() == self._launch_keyword

    def is_exit(self, command: str) -> bool:
        """是否为退出关键字。"""

        return command.strip().lower() == self._exit_keyword

    def routes(self, token: str, command: str) -> bool:
        """顶层路由：(启动关键字且无子进程) 或 (已有子进程) → 交给 multiplexer。"""

        if self._registry.get_repl(token) is not None:
            return True
        return self.is_launch(command)

    def state(self, token: str) -> Optional[ReplState]:
        """session 当前 REPL 状态；无子进程时返回 None（absent）。"""

        handle = self._registry.get_repl(token)
        return None if handle is None else handle.state

    def handle(
        self,
        token: str,
        command: str,
        *,
        cwd: Path,
        env: Mapping[str, str],
        sink: OutputSink,
        owner: Optional[str] = None,
    ) -> None:
        """
        处理一条路由到 multiplexer 的命令。

        异常：
        - InvalidInputError：无子进程且命令不是启动关键字（调用方路由错误）
        - SpawnFailureError：子进程无法创建
        - ReplProcessError：写入 stdin 失败
        """

        with self._spawn_lock:
            handle = self._registry.get_repl(token)
            if handle is None:
                if not self.is_launch(command):
                    raise InvalidInputError("No interactive session is active.")
                handle = self._spawn(token, cwd=cwd, env=env, sink=sink, owner=owner)
                launched = True
            else:
                launched = False

        if launched:
            # 先发 replStarting 再启动 reader，保证 replReady 不会先于它到达
            handle.emit_signal("replStarting")
            handle.start()
            return

        handle.bind(sink, owner)
        if self.is_exit(command):
            self.close(token)
            return
        if handle.state is ReplState.STARTING:
            handle.emit_chunk(STDERR, STARTING_NOTICE)
            return
        handle.write_line(command)
        self._registry.touch(token)

    def _spawn(self, token: str, *, cwd: Path, env: Mapping[str, str], sink: OutputSink, owner: Optional[str]) -> ReplProcess:
        """在 spawn 锁内调用：启动子进程并登记句柄（reader 线程由调用方在锁外启动）。"""

        try:
            proc = subprocess.Popen(  # noqa: S603
                [self._shell, "-c", self._command],
                cwd=str(cwd),
                env={str(k): str(v) for k, v in env.items()},
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            logger.warning("repl spawn failed: %s err=%s", token, exc)
            raise SpawnFailureError(str(exc), details={"command": self._command}) from exc

        handle = ReplProcess(
            token=token,
            proc=proc,
            sink=sink,
            owner=owner,
            ready_pattern=self._ready_pattern,
            on_exit=self._on_process_exit,
            chunk_bytes=self._chunk_bytes,
            write_timeout_ms=self._write_timeout_ms,
        )
        try:
            self._registry.set_repl(token, handle)
        except Exception:
            terminate_process_group(proc, grace_ms=self._terminate_grace_ms)
            raise
        logger.info("repl starting: %s pid=%s", token, proc.pid)
        return handle

    def close(self, token: str) -> bool:
        """
        显式关闭 session 的 REPL（退出关键字 / 连接断开 / 删除 session）。

        返回：
        - True：关闭了一个子进程；False：本就没有
        """

        with self._spawn_lock:
            handle = self._registry.get_repl(token)
            if handle is None:
                return False
            self._registry.clear_repl(token, handle)
        handle.shutdown(
            exit_directive=self._exit_directive,
            exit_grace_ms=self._exit_grace_ms,
            terminate_grace_ms=self._terminate_grace_ms,
        )
        logger.info("repl closed: %s", token)
        handle.emit_signal("replClosed")
        return True

    def close_for_owner(self, owner: str) -> int:
        """关闭绑定到某连接的所有 REPL（连接断开清理）；返回关闭个数。"""

        closed = 0
        for handle in self._registry.repl_handles():
            if handle.owner == owner and self.close(handle.token):
                closed += 1
        return closed

    def close_all(self) -> int:
        """关闭所有 REPL（服务关闭）。"""

        closed = 0
        for handle in self._registry.repl_handles():
            if self.close(handle.token):
                closed += 1
        return closed

    def _on_process_exit(self, handle: ReplProcess) -> None:
        """watcher 线程回调：子进程自行退出时清除状态并通知客户端。"""

        with self._spawn_lock:
            cleared = self._registry.clear_repl(handle.token, handle)
        if not cleared:
            return
        logger.info("repl exited on its own: %s code=%s", handle.token, handle.proc.returncode)
        handle.emit_chunk(STDERR, ENDED_NOTICE)
        handle.emit_signal("replClosed")
