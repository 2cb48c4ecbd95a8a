"""
Toolchain Installer：每个 session 一次的异步工具链引导。

流程：
1) probe：以该 session 的执行环境运行版本检查（默认 `forge --version`）；成功即标记 installed，不执行安装脚本；
2) 否则在 workspace 目录中运行安装命令，逐行记录输出；stderr 中的进度行（见 `ProgressClassifier`）
   与真正的错误行分开记录，错误行保留有界尾部；
3) 非零退出 / spawn 失败 → failed（保留错误文本）；零退出 → installed。终态都会通知监听者。

说明：
- 不设全局安装锁：每个 session 各自 probe/安装（probe 短路使冗余成本很低）。
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

from foundry_sandbox.core.executor import Executor
from foundry_sandbox.core.output import STDERR
from foundry_sandbox.core.progress import ProgressClassifier
from foundry_sandbox.core.sessions import InstallStatus, SessionRegistry

logger = logging.getLogger(__name__)


class _InstallOutputCollector:
    """把安装输出切成行并分类：stdout/进度行记 debug，错误行记 warning 并保留有界尾部。"""

    def __init__(self, *, token: str, classifier: ProgressClassifier, max_error_bytes: int) -> None:
        """创建收集器。"""

        self._token = token
        self._classifier = classifier
        self._max_error_bytes = max_error_bytes
        self._partial: Dict[str, str] = {}
        self._errors: List[str] = []
        self._error_bytes = 0
        self._lock = threading.Lock()
        self.progress_lines = 0

    def feed(self, stream: str, text: str) -> None:
        """接收一段输出（两个 stream 各自在自己的 reader 线程中调用）。"""

        buf = self._partial.get(stream, "") + text.replace("\r\n", "\n").replace("\r", "\n")
        *lines, rest = buf.split("\n")
        self._partial[stream] = rest
        for line in lines:
            self._handle_line(stream, line)

    def flush(self) -> None:
        """处理各 stream 中未以换行结尾的残留文本。"""

        for stream, rest in list(self._partial.items()):
            if rest:
                self._handle_line(stream, rest)
        self._partial.clear()

    def _handle_line(self, stream: str, line: str) -> None:
        """分类并记录一行。"""

        if not line.strip():
            return
        if stream != STDERR:
            logger.debug("[install %s] %s", self._token, line)
            return
        if self._classifier.is_progress(line):
            with self._lock:
                self.progress_lines += 1
            logger.debug("[install %s] progress: %s", self._token, line)
            return
        logger.warning("[install %s] %s", self._token, line)
        self._retain_error(line)

    def _retain_error(self, line: str) -> None:
        """追加错误行；超过上限时丢弃最早的行。"""

        size = len(line.encode("utf-8")) + 1
        with self._lock:
            self._errors.append(line)
            self._error_bytes += size
            while self._errors and self._error_bytes > self._max_error_bytes:
                dropped = self._errors.pop(0)
                self._error_bytes -= len(dropped.encode("utf-8")) + 1

    def error_text(self) -> str:
        """保留下来的错误文本。"""

        with self._lock:
            return "\n".join(self._errors)


class ToolchainInstaller:
    """
    工具链安装器。

    参数：
    - registry：Session Registry（提供占位与状态迁移）
    - executor：命令执行器
    - env_factory：构造执行环境的工厂（每次 probe/安装各调用一次）
    - probe_command / install_command：shell 命令字符串
    - classifier：进度行分类器
    - probe_timeout_ms / install_timeout_ms：None 表示不限时
    - max_error_bytes：保留的错误文本上限
    """

    def __init__(
        self,
        *,
        registry: SessionRegistry,
        executor: Executor,
        env_factory: Callable[[], Mapping[str, str]],
        probe_command: str,
        install_command: str,
        classifier: Optional[ProgressClassifier] = None,
        probe_timeout_ms: Optional[int] = 30_000,
        install_timeout_ms: Optional[int] = None,
        max_error_bytes: int = 16 * 1024,
    ) -> None:
        """创建安装器（不做任何 I/O）。"""

        self._registry = registry
        self._executor = executor
        self._env_factory = env_factory
        self._probe_command = probe_command
        self._install_command = install_command
        self._classifier = classifier or ProgressClassifier()
        self._probe_timeout_ms = probe_timeout_ms
        self._install_timeout_ms = install_timeout_ms
        self._max_error_bytes = max_error_bytes

    def ensure_installed(self, token: str) -> Optional[threading.Thread]:
        """
        异步启动安装（同一次尝试至多一次）。

        返回：
        - 后台线程；本次尝试已被占位/session 不在 pending 时返回 None
        """

        if not self._registry.claim_install(token):
            return None
        t = threading.Thread(target=self.run, args=(token,), name=f"toolchain-install-{token[:8]}", daemon=True)
        t.start()
        return t

    def run(self, token: str) -> Optional[InstallStatus]:
        """
        同步执行 probe/安装并写入终态（在后台线程中调用）。

        返回：
        - 写入的终态；session 已不存在时返回 None
        """

        session = self._registry.get(token)
        if session is None:
            return None
        try:
            return self._run(token, session.workspace)
        except Exception as exc:
            logger.exception("install crashed: %s", token)
            self._registry.mark_failed(token, f"install crashed: {exc}")
            return InstallStatus.FAILED

    def probe(self, cwd: Path, env: Mapping[str, str]) -> bool:
        """工具链是否已可用（版本检查成功）。"""

        result = self._executor.run_shell(self._probe_command, cwd=cwd, env=env, timeout_ms=self._probe_timeout_ms)
        return result.ok

    def _run(self, token: str, workspace: Path) -> InstallStatus:
        """probe → install → 写终态。"""

        env = self._env_factory()
        if self.probe(workspace, env):
            logger.info("toolchain already available: %s", token)
            self._registry.mark_installed(token)
            return InstallStatus.INSTALLED

        logger.info("installing toolchain: %s", token)
        collector = _InstallOutputCollector(token=token, classifier=self._classifier, max_error_bytes=self._max_error_bytes)
        result = self._executor.run_shell(
            self._install_command,
            cwd=workspace,
            env=env,
            timeout_ms=self._install_timeout_ms,
            on_chunk=collector.feed,
        )
        collector.flush()

        if result.ok:
            logger.info("toolchain installed: %s (%sms)", token, result.duration_ms)
            self._registry.mark_installed(token)
            return InstallStatus.INSTALLED

        error = collector.error_text()
        if not error:
            if result.error_kind == "spawn_failed":
                error = result.stderr
            elif result.timeout:
                error = "install command timed out"
            else:
                error = f"install command exited with code {result.exit_code}"
        logger.error("toolchain install failed: %s kind=%s error=%s", token, result.error_kind, error)
        self._registry.mark_failed(token, error)
        return InstallStatus.FAILED
