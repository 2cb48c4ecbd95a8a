"""
SandboxRuntime：装配各组件并对外提供沙箱操作。

职责：
- 持有 Workspace Store / Session Registry / Installer / Executor / Multiplexer / Reaper 各一个实例；
- 统一执行前置条件（session 存在 → 已安装 → 命令合法），任一不满足都在 spawn 之前失败；
- 实现顶层路由（REPL vs 一次性命令）；
- API 层只调用本类，不直接触碰共享状态。
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from foundry_sandbox.config.loader import SandboxConfig
from foundry_sandbox.core.env import ExecutionEnvironment, build_execution_environment
from foundry_sandbox.core.errors import (
    InstallFailedError,
    InstallPendingError,
    InvalidInputError,
    SessionInvalidError,
)
from foundry_sandbox.core.executor import CommandResult, Executor
from foundry_sandbox.core.installer import ToolchainInstaller
from foundry_sandbox.core.output import STDERR, OutputSink
from foundry_sandbox.core.progress import ProgressClassifier
from foundry_sandbox.core.reaper import Reaper, SweepReport
from foundry_sandbox.core.repl import ReplMultiplexer
from foundry_sandbox.core.sessions import (
    InstallListener,
    InstallStatus,
    ResolvedSession,
    Session,
    SessionRegistry,
    SessionSnapshot,
)
from foundry_sandbox.core.workspace import WorkspaceStore

logger = logging.getLogger(__name__)

ROUTE_REPL = "repl"
ROUTE_COMMAND = "command"

EXIT_CODE_SPAWN_FAILED = 127
EXIT_CODE_TIMEOUT = 124
EXIT_CODE_CANCELLED = 130


@dataclass(frozen=True)
class ExecutionResult:
    """请求/响应模式的执行结果（`{output, error, exitCode}`）。"""

    output: str
    error: str
    exit_code: int

    def to_response(self) -> Dict[str, Any]:
        """转换为对外响应体。"""

        return {"output": self.output, "error": self.error, "exitCode": self.exit_code}


def exit_code_for(result: CommandResult) -> int:
    """把 `CommandResult` 映射为对外的整数退出码（无退出码时按 shell 惯例取值）。"""

    if result.exit_code is not None:
        return int(result.exit_code)
    if result.error_kind == "spawn_failed":
        return EXIT_CODE_SPAWN_FAILED
    if result.timeout:
        return EXIT_CODE_TIMEOUT
    if result.error_kind == "cancelled":
        return EXIT_CODE_CANCELLED
    return 1


class SandboxRuntime:
    """
    沙箱运行时（单进程单实例）。

    参数：
    - config：已校验的 `SandboxConfig`
    - base_env：构造执行环境所用的服务端 env（默认每次读取 `os.environ`）
    - clock：时间源（epoch 秒；registry 与 reaper 共用）
    """

    def __init__(
        self,
        config: SandboxConfig,
        *,
        base_env: Optional[Mapping[str, str]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """按配置装配全部组件（不启动后台线程，不做 I/O）。"""

        self.config = config
        self._base_env = base_env

        root = Path(config.workspace.root).expanduser() if config.workspace.root else None
        self.workspaces = WorkspaceStore(root=root, source_extensions=config.workspace.source_extensions)

        ex = config.executor
        self.executor = Executor(
            max_stdout_bytes=ex.max_stdout_bytes,
            max_stderr_bytes=ex.max_stderr_bytes,
            max_combined_bytes=ex.max_combined_bytes,
            terminate_grace_ms=ex.terminate_grace_ms,
            chunk_bytes=ex.chunk_bytes,
            shell=ex.shell,
        )

        self.registry = SessionRegistry(workspaces=self.workspaces, clock=clock)

        tc = config.toolchain
        self.installer = ToolchainInstaller(
            registry=self.registry,
            executor=self.executor,
            env_factory=self.execution_environment,
            probe_command=tc.probe_command,
            install_command=tc.install_command,
            classifier=ProgressClassifier(tc.progress_patterns),
            probe_timeout_ms=tc.probe_timeout_ms,
            install_timeout_ms=tc.install_timeout_ms,
            max_error_bytes=tc.max_error_bytes,
        )
        self.registry.set_on_created(self.installer.ensure_installed)

        rc = config.repl
        self.repl = ReplMultiplexer(
            registry=self.registry,
            shell=ex.shell,
            command=rc.command,
            launch_keyword=rc.launch_keyword,
            exit_keyword=rc.exit_keyword,
            ready_pattern=rc.ready_pattern,
            exit_directive=rc.exit_directive,
            exit_grace_ms=rc.exit_grace_ms,
            write_timeout_ms=rc.write_timeout_ms,
            terminate_grace_ms=ex.terminate_grace_ms,
            chunk_bytes=ex.chunk_bytes,
        )

        rp = config.reaper
        self.reaper = Reaper(
            registry=self.registry,
            workspaces=self.workspaces,
            interval_sec=rp.interval_sec,
            retention_sec=rp.retention_sec,
            sweep_orphans=rp.sweep_orphans,
            clock=clock,
        )

    # ---- 生命周期 ----

    def start(self) -> None:
        """确保 workspace root 存在；按配置启动 reaper。"""

        root = self.workspaces.ensure_root()
        logger.info("sandbox runtime started: workspace_root=%s", root)
        if self.config.reaper.enabled:
            self.reaper.start()

    def close(self) -> None:
        """停止 reaper 并关闭所有 REPL。"""

        self.reaper.stop()
        closed = self.repl.close_all()
        logger.info("sandbox runtime closed: repl_closed=%s", closed)

    def sweep(self, *, include_orphans: Optional[bool] = None) -> SweepReport:
        """立即执行一轮回收。"""

        return self.reaper.sweep(include_orphans=include_orphans)

    # ---- 执行环境 ----

    def execution_environment(self) -> ExecutionEnvironment:
        """为一次命令构造执行环境（基础 env + 工具链 PATH + 透传 + 静态覆盖）。"""

        ex = self.config.executor
        return build_execution_environment(
            toolchain_bin_dir=self.config.toolchain.bin_dir,
            inherit_env=ex.inherit_env,
            passthrough=ex.env_passthrough,
            overrides=ex.env,
            base=self._base_env if self._base_env is not None else os.environ,
        )

    # ---- session ----

    def resolve_session(self, presented_token: Optional[str]) -> ResolvedSession:
        """解析/创建 session（见 `SessionRegistry.resolve`）。"""

        return self.registry.resolve(presented_token)

    def session_status(self, token: Optional[str]) -> SessionSnapshot:
        """session 快照；不存在（或 workspace 已被带外删除）时抛 `SessionInvalidError`。"""

        session = self._require_session(token)
        return self.registry.snapshot(session.token)

    def subscribe_install(self, token: str, listener: InstallListener) -> Callable[[], None]:
        """订阅安装终态通知（见 `SessionRegistry.subscribe`）。"""

        return self.registry.subscribe(token, listener)

    def retry_install(self, token: str) -> InstallStatus:
        """
        对安装失败的 session 原地重试（failed → pending → 重新 probe/安装）。

        说明：
        - pending / installed 状态下为 no-op，直接返回当前状态。
        """

        if self.registry.reset_install(token):
            self.installer.ensure_installed(token)
        return self.registry.snapshot(token).install_status

    def delete_session(self, token: str) -> bool:
        """关闭 REPL、逐出 session、删除 workspace；session 不存在时抛 `SessionInvalidError`。"""

        self.registry.require(token)
        self.repl.close(token)
        session = self.registry.evict(token)
        if session is None:
            raise SessionInvalidError()
        return self.workspaces.remove(token)

    # ---- 命令 ----

    def _require_session(self, token: Optional[str]) -> Session:
        """
        前置条件：session 存在且 workspace 仍在磁盘上。

        说明：
        - workspace 被带外删除时关闭其 REPL、逐出 session 并抛 `SessionInvalidError`，
          之后客户端经 `resolve` 拿到新 session；不会在此重建目录。
        """

        session = self.registry.require(token)
        if self.workspaces.exists(session.token):
            return session
        logger.warning("workspace missing for session %s; evicting", session.token)
        self.repl.close(session.token)
        self.registry.evict(session.token)
        raise SessionInvalidError()

    def _require_ready(self, token: Optional[str]) -> Session:
        """前置条件：session 存在、workspace 仍在、工具链已安装。"""

        session = self._require_session(token)
        status = session.install_status
        if status is InstallStatus.PENDING:
            raise InstallPendingError()
        if status is InstallStatus.FAILED:
            raise InstallFailedError(
                "Foundry installation failed. Retry the installation or start a new session.",
                details={"install_error": session.install_error},
            )
        return session

    def _validate_command(self, command: Any) -> str:
        """命令必须是非空字符串。"""

        if not isinstance(command, str):
            raise InvalidInputError("Command must be a string.")
        if not command.strip():
            raise InvalidInputError("Command must not be empty.")
        return command

    def route(self, token: Optional[str], command: Any) -> str:
        """
        校验前置条件并返回路由目标（`repl` / `command`）。

        异常：
        - SessionInvalidError / InstallPendingError / InstallFailedError / InvalidInputError
        """

        session = self._require_ready(token)
        text = self._validate_command(command)
        return ROUTE_REPL if self.repl.routes(session.token, text) else ROUTE_COMMAND

    def execute(self, token: Optional[str], command: Any, *, cancel_checker: Optional[Callable[[], bool]] = None) -> ExecutionResult:
        """
        请求/响应模式：一次性执行命令，返回完整输出。

        说明：
        - 输出经 Executor 的有界尾部缓冲；spawn 失败作为执行错误返回（exitCode=127），不抛异常。
        """

        session = self._require_ready(token)
        text = self._validate_command(command)
        self.registry.begin_command(session.token)
        try:
            result = self.executor.run_shell(
                text,
                cwd=session.workspace,
                env=self.execution_environment(),
                timeout_ms=self.config.executor.timeout_ms,
                cancel_checker=cancel_checker,
            )
        finally:
            self.registry.end_command(session.token)
        logger.info("command finished: %s exit=%s kind=%s", session.token, result.exit_code, result.error_kind)
        return ExecutionResult(output=result.stdout, error=result.stderr, exit_code=exit_code_for(result))

    def run_streaming(
        self,
        token: Optional[str],
        command: Any,
        sink: OutputSink,
        *,
        cancel_checker: Optional[Callable[[], bool]] = None,
    ) -> int:
        """
        流式模式：一次性执行命令，输出逐块写入 sink；返回退出码。

        说明：
        - 阻塞直到进程退出（或被取消）；调用方决定在哪个线程运行；
        - spawn 失败时向 sink 写入错误文本并返回 127。
        """

        session = self._require_ready(token)
        text = self._validate_command(command)
        self.registry.begin_command(session.token)
        try:
            result = self.executor.run_shell(
                text,
                cwd=session.workspace,
                env=self.execution_environment(),
                timeout_ms=self.config.executor.timeout_ms,
                cancel_checker=cancel_checker,
                on_chunk=sink.chunk,
            )
        finally:
            self.registry.end_command(session.token)
        if result.error_kind == "spawn_failed":
            sink.chunk(STDERR, f"{result.stderr}\n")
        logger.info("command finished: %s exit=%s kind=%s", session.token, result.exit_code, result.error_kind)
        return exit_code_for(result)

    def dispatch(
        self,
        token: Optional[str],
        command: Any,
        sink: OutputSink,
        *,
        owner: Optional[str] = None,
        cancel_checker: Optional[Callable[[], bool]] = None,
    ) -> Optional[int]:
        """
        流式通道的统一入口：按路由规则交给 multiplexer 或 executor。

        返回：
        - 一次性命令：退出码
        - REPL 输入：None（输出异步到达 sink）
        """

        if self.route(token, command) == ROUTE_REPL:
            session = self._require_ready(token)
            self.repl.handle(
                session.token,
                command,
                cwd=session.workspace,
                env=self.execution_environment(),
                sink=sink,
                owner=owner,
            )
            return None
        return self.run_streaming(token, command, sink, cancel_checker=cancel_checker)

    def release_connection(self, owner: str) -> int:
        """连接断开：关闭绑定到该连接的 REPL；返回关闭个数。"""

        return self.repl.close_for_owner(owner)

    # ---- 文件 ----

    def read_file(self, token: Optional[str], name: str) -> str:
        """读取 workspace 内文件（路径越界抛 `InvalidPathError`，不存在抛 FileNotFoundError）。"""

        session = self._require_session(token)
        self.registry.touch(session.token)
        return self.workspaces.read_text(session.token, name)

    def write_file(self, token: Optional[str], name: str, content: str) -> Path:
        """写入 workspace 内文件（路径越界抛 `InvalidPathError`）。"""

        session = self._require_session(token)
        self.registry.touch(session.token)
        return self.workspaces.write_text(session.token, name, content)

    def find_source_file(self, token: Optional[str]) -> str:
        """workspace 根目录下第一个项目源文件名（无则 FileNotFoundError）。"""

        session = self._require_session(token)
        return self.workspaces.find_source_file(session.token)
