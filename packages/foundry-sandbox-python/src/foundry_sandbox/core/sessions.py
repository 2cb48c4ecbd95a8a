"""
Session Registry（进程内 session 表）。

约束：
- 唯一的共享可变状态；一把 `threading.Lock` 保护整个表，临界区只做内存读写，
  不在持锁期间做进程 I/O 或目录创建；
- 新 session 的创建顺序：生成 token → 创建 workspace（失败则整体失败，不留下表项）→ 登记 → 触发安装；
- 安装状态每次尝试只离开 `pending` 一次（`installed` 或 `failed`）；`failed` 可通过 `reset_install` 回到 `pending` 重试；
- 每个 session 最多持有一个 REPL 句柄。
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from foundry_sandbox.core.errors import SessionInvalidError
from foundry_sandbox.core.utils import now_rfc3339
from foundry_sandbox.core.workspace import WorkspaceStore

logger = logging.getLogger(__name__)


class InstallStatus(str, Enum):
    """工具链安装状态。"""

    PENDING = "pending"
    INSTALLED = "installed"
    FAILED = "failed"


InstallListener = Callable[[InstallStatus, str], None]


@dataclass
class Session:
    """session 状态（只应在 registry 锁内修改）。"""

    token: str
    workspace: Path
    created_at: str
    last_activity_at: float
    install_status: InstallStatus = InstallStatus.PENDING
    install_error: str = ""
    install_claimed: bool = False
    install_attempts: int = 0
    repl: Optional[Any] = None
    active_commands: int = 0
    listeners: Dict[int, InstallListener] = field(default_factory=dict)


@dataclass(frozen=True)
class SessionSnapshot:
    """session 的只读快照（用于状态接口与 reaper 判定）。"""

    token: str
    workspace: Path
    created_at: str
    last_activity_at: float
    install_status: InstallStatus
    install_error: str
    install_attempts: int
    repl_active: bool
    active_commands: int

    @property
    def busy(self) -> bool:
        """是否有进行中的命令或存活的 REPL。"""

        return self.repl_active or self.active_commands > 0


@dataclass(frozen=True)
class ResolvedSession:
    """`resolve` 的结果。"""

    token: str
    is_new: bool


def _snapshot(s: Session) -> SessionSnapshot:
    """在锁内调用：复制 session 的当前字段。"""

    return SessionSnapshot(
        token=s.token,
        workspace=s.workspace,
        created_at=s.created_at,
        last_activity_at=s.last_activity_at,
        install_status=s.install_status,
        install_error=s.install_error,
        install_attempts=s.install_attempts,
        repl_active=s.repl is not None,
        active_commands=s.active_commands,
    )


class SessionRegistry:
    """
    session 表。

    参数：
    - workspaces：Workspace Store
    - on_created：新 session 登记后的回调（runtime 用它异步启动安装）；回调异常会把 session 标记为 failed
    - clock：时间源（epoch 秒；测试可注入）
    """

    def __init__(
        self,
        *,
        workspaces: WorkspaceStore,
        on_created: Optional[Callable[[str], None]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """创建空表。"""

        self._workspaces = workspaces
        self._on_created = on_created
        self._clock = clock
        self._lock = threading.Lock()
        self._install_changed = threading.Condition(self._lock)
        self._sessions: Dict[str, Session] = {}
        self._next_listener_id = 1

    def set_on_created(self, callback: Optional[Callable[[str], None]]) -> None:
        """设置新 session 回调（装配期使用）。"""

        self._on_created = callback

    # ---- 创建 / 查找 / 删除 ----

    def resolve(self, presented_token: Optional[str]) -> ResolvedSession:
        """
        解析客户端出示的 token。

        规则：
        - 已知 token 且 workspace 仍存在：原样返回（`is_new=False`），刷新活跃时间；
        - 已知 token 但 workspace 被带外删除：逐出，按未知处理；
        - 空/未知 token：生成新 token，创建 workspace，登记为 `pending`，触发安装（`is_new=True`）。

        异常：
        - WorkspaceProvisionError：workspace 创建失败（不会留下表项）
        """

        presented = (presented_token or "").strip() if isinstance(presented_token, str) else ""
        if presented:
            with self._lock:
                known = self._sessions.get(presented)
            if known is not None:
                if self._workspaces.exists(presented):
                    self.touch(presented)
                    return ResolvedSession(token=presented, is_new=False)
                logger.warning("workspace missing for session %s; evicting", presented)
                self.evict(presented)

        token = secrets.token_hex(16)
        workspace = self._workspaces.create(token)
        now = self._clock()
        session = Session(token=token, workspace=workspace, created_at=now_rfc3339(), last_activity_at=now)
        with self._lock:
            self._sessions[token] = session
        logger.info("session created: %s", token)

        callback = self._on_created
        if callback is not None:
            try:
                callback(token)
            except Exception as exc:
                logger.exception("session post-create hook failed: %s", token)
                self.mark_failed(token, f"install could not be started: {exc}")
        return ResolvedSession(token=token, is_new=True)

    def get(self, token: Optional[str]) -> Optional[Session]:
        """按 token 取 session（不存在返回 None）。返回的对象只读使用。"""

        if not token:
            return None
        with self._lock:
            return self._sessions.get(token)

    def require(self, token: Optional[str]) -> Session:
        """按 token 取 session；不存在时抛 `SessionInvalidError`。"""

        session = self.get(token)
        if session is None:
            raise SessionInvalidError()
        return session

    def snapshot(self, token: Optional[str]) -> SessionSnapshot:
        """取 session 快照；不存在时抛 `SessionInvalidError`。"""

        with self._lock:
            s = self._sessions.get(token or "")
            if s is None:
                raise SessionInvalidError()
            return _snapshot(s)

    def snapshots(self) -> List[SessionSnapshot]:
        """所有 session 的快照。"""

        with self._lock:
            return [_snapshot(s) for s in self._sessions.values()]

    def list_tokens(self) -> List[str]:
        """所有已知 token。"""

        with self._lock:
            return list(self._sessions.keys())

    def __len__(self) -> int:
        """session 个数。"""

        with self._lock:
            return len(self._sessions)

    def evict(self, token: str) -> Optional[Session]:
        """从表中移除 session（不删除目录）；返回被移除的对象。"""

        with self._install_changed:
            session = self._sessions.pop(token, None)
            if session is not None:
                session.listeners.clear()
                self._install_changed.notify_all()
        if session is not None:
            logger.info("session evicted: %s", token)
        return session

    def evict_if_idle(self, token: str, *, cutoff: float, workspace_mtime: Optional[float]) -> str:
        """
        原子地判断并逐出闲置 session（reaper 使用）。

        判定：
        - 最后活跃时间取 `max(workspace_mtime, last_activity_at)`；
        - 有进行中的命令或存活 REPL 视为忙碌，不逐出。

        返回：
        - "evicted" / "busy" / "active" / "unknown"
        """

        with self._install_changed:
            s = self._sessions.get(token)
            if s is None:
                return "unknown"
            if s.repl is not None or s.active_commands > 0:
                return "busy"
            last = max(s.last_activity_at, workspace_mtime or 0.0)
            if last >= cutoff:
                return "active"
            self._sessions.pop(token, None)
            s.listeners.clear()
            self._install_changed.notify_all()
        logger.info("session evicted (idle): %s", token)
        return "evicted"

    # ---- 活跃度 / 命令计数 ----

    def touch(self, token: str, *, at: Optional[float] = None) -> None:
        """刷新 session 最后活跃时间。"""

        ts = self._clock() if at is None else at
        with self._lock:
            s = self._sessions.get(token)
            if s is not None:
                s.last_activity_at = ts

    def begin_command(self, token: str) -> None:
        """登记一条进行中的命令（同时刷新活跃时间）；session 不存在时抛 `SessionInvalidError`。"""

        with self._lock:
            s = self._sessions.get(token)
            if s is None:
                raise SessionInvalidError()
            s.active_commands += 1
            s.last_activity_at = self._clock()

    def end_command(self, token: str) -> None:
        """命令结束。"""

        with self._lock:
            s = self._sessions.get(token)
            if s is not None:
                s.active_commands = max(0, s.active_commands - 1)
                s.last_activity_at = self._clock()

    # ---- 安装状态 ----

    def claim_install(self, token: str) -> bool:
        """为本次安装尝试占位；同一尝试内只有第一次调用返回 True。"""

        with self._lock:
            s = self._sessions.get(token)
            if s is None or s.install_claimed or s.install_status is not InstallStatus.PENDING:
                return False
            s.install_claimed = True
            s.install_attempts += 1
            return True

    def mark_installed(self, token: str) -> bool:
        """`pending → installed` 并通知监听者；不在 pending 时返回 False。"""

        return self._finish_install(token, InstallStatus.INSTALLED, "")

    def mark_failed(self, token: str, error: str) -> bool:
        """`pending → failed`（保留错误文本）并通知监听者；不在 pending 时返回 False。"""

        return self._finish_install(token, InstallStatus.FAILED, str(error or ""))

    def reset_install(self, token: str) -> bool:
        """`failed → pending`（允许重试）；其它状态返回 False。session 不存在时抛 `SessionInvalidError`。"""

        with self._lock:
            s = self._sessions.get(token)
            if s is None:
                raise SessionInvalidError()
            if s.install_status is not InstallStatus.FAILED:
                return False
            s.install_status = InstallStatus.PENDING
            s.install_error = ""
            s.install_claimed = False
        logger.info("install reset for retry: %s", token)
        return True

    def _finish_install(self, token: str, status: InstallStatus, error: str) -> bool:
        """写入终态并在锁外通知监听者。"""

        with self._install_changed:
            s = self._sessions.get(token)
            if s is None or s.install_status is not InstallStatus.PENDING:
                return False
            s.install_status = status
            s.install_error = error
            listeners = list(s.listeners.values())
            self._install_changed.notify_all()
        for listener in listeners:
            self._notify(listener, status, error)
        return True

    def subscribe(self, token: str, listener: InstallListener) -> Callable[[], None]:
        """
        订阅安装终态通知 `listener(status, error)`。

        说明：
        - 订阅时若已处于终态，立即（在调用线程中）回调一次；
        - 之后每次安装尝试结束（含 retry）都会回调；
        - 返回退订函数（幂等）。

        异常：
        - SessionInvalidError：session 不存在
        """

        with self._lock:
            s = self._sessions.get(token)
            if s is None:
                raise SessionInvalidError()
            listener_id = self._next_listener_id
            self._next_listener_id += 1
            s.listeners[listener_id] = listener
            status, error = s.install_status, s.install_error

        if status is not InstallStatus.PENDING:
            self._notify(listener, status, error)

        def _unsubscribe() -> None:
            """移除监听者。"""

            with self._lock:
                cur = self._sessions.get(token)
                if cur is not None:
                    cur.listeners.pop(listener_id, None)

        return _unsubscribe

    def wait_for_install(self, token: str, *, timeout: Optional[float] = None) -> InstallStatus:
        """
        阻塞等待安装离开 pending（或超时）；返回当时的状态。

        异常：
        - SessionInvalidError：session 不存在（或等待期间被逐出）
        """

        with self._install_changed:
            def _done() -> bool:
                """session 消失或已到终态。"""

                s = self._sessions.get(token)
                return s is None or s.install_status is not InstallStatus.PENDING

            self._install_changed.wait_for(_done, timeout=timeout)
            s = self._sessions.get(token)
            if s is None:
                raise SessionInvalidError()
            return s.install_status

    def _notify(self, listener: InstallListener, status: InstallStatus, error: str) -> None:
        """调用监听者；异常只记录日志。"""

        try:
            listener(status, error)
        except Exception:
            logger.exception("install listener failed")

    # ---- REPL 句柄 ----

    def get_repl(self, token: str) -> Optional[Any]:
        """当前 REPL 句柄（无则 None）。"""

        with self._lock:
            s = self._sessions.get(token)
            return None if s is None else s.repl

    def set_repl(self, token: str, handle: Any) -> None:
        """登记 REPL 句柄；已有句柄时抛 RuntimeError（每个 session 最多一个）。"""

        with self._lock:
            s = self._sessions.get(token)
            if s is None:
                raise SessionInvalidError()
            if s.repl is not None and s.repl is not handle:
                raise RuntimeError(f"session {token} already has an interactive process")
            s.repl = handle
            s.last_activity_at = self._clock()

    def clear_repl(self, token: str, handle: Any = None) -> bool:
        """清除 REPL 句柄；传入 handle 时只在匹配时清除。"""

        with self._lock:
            s = self._sessions.get(token)
            if s is None or s.repl is None:
                return False
            if handle is not None and s.repl is not handle:
                return False
            s.repl = None
            s.last_activity_at = self._clock()
            return True

    def repl_handles(self) -> List[Any]:
        """所有存活的 REPL 句柄。"""

        with self._lock:
            return [s.repl for s in self._sessions.values() if s.repl is not None]
