"""
Reaper：周期性回收闲置 workspace。

规则：
- 闲置时长 = now − max(workspace 目录 mtime, session 最后活跃时间)；
- 超过保留窗口 → 逐出 session 并递归删除 workspace；
- 有进行中命令或存活 REPL 的 session 跳过（与命令执行同步的判定在 registry 锁内原子完成）；
- 可选：清理 workspace root 下不属于任何已知 session 的目录（上一次进程遗留），同样按 mtime 判定；
- 单个目录的失败（已被删除、权限不足）只记录日志，不中断本轮 sweep，也不向外抛出。
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

from foundry_sandbox.core.sessions import SessionRegistry
from foundry_sandbox.core.workspace import WorkspaceStore

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """一轮 sweep 的结果摘要。"""

    scanned: int = 0
    removed: List[str] = field(default_factory=list)
    skipped_busy: List[str] = field(default_factory=list)
    orphans_removed: List[str] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """转换为 JSON 友好的 dict。"""

        return asdict(self)


class Reaper:
    """
    闲置 session 回收器（后台 daemon 线程）。

    参数：
    - registry / workspaces：回收对象
    - interval_sec：两轮 sweep 的间隔
    - retention_sec：保留窗口
    - sweep_orphans：是否清理未登记的遗留目录
    - clock：时间源（epoch 秒）
    """

    def __init__(
        self,
        *,
        registry: SessionRegistry,
        workspaces: WorkspaceStore,
        interval_sec: float = 3600,
        retention_sec: float = 86400,
        sweep_orphans: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """创建回收器（不启动线程）。"""

        self._registry = registry
        self._workspaces = workspaces
        self._interval_sec = float(interval_sec)
        self._retention_sec = float(retention_sec)
        self._sweep_orphans = sweep_orphans
        self._clock = clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        """后台线程是否在运行。"""

        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """启动后台线程（重复调用为 no-op）。"""

        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="workspace-reaper", daemon=True)
        self._thread.start()
        logger.info("reaper started: interval=%ss retention=%ss", self._interval_sec, self._retention_sec)

    def stop(self, *, timeout: float = 5.0) -> None:
        """停止后台线程并等待其退出。"""

        self._stop.set()
        t = self._thread
        if t is not None:
            t.join(timeout=timeout)
        self._thread = None

    def _loop(self) -> None:
        """每隔 interval 执行一次 sweep，直到 stop。"""

        while not self._stop.wait(self._interval_sec):
            try:
                self.sweep()
            except Exception:
                logger.exception("reaper sweep failed")

    def sweep(self, *, now: Optional[float] = None, include_orphans: Optional[bool] = None) -> SweepReport:
        """
        执行一轮回收。

        参数：
        - now：判定用的当前时间（默认 clock()）
        - include_orphans：覆盖构造参数 `sweep_orphans`
        """

        current = self._clock() if now is None else now
        cutoff = current - self._retention_sec
        report = SweepReport()

        for token in self._registry.list_tokens():
            report.scanned += 1
            mtime = self._workspaces.last_modified(token)
            # workspace 已被带外删除：session 随之失效
            effective_cutoff = float("inf") if mtime is None else cutoff
            outcome = self._registry.evict_if_idle(token, cutoff=effective_cutoff, workspace_mtime=mtime)
            if outcome == "busy":
                logger.info("reaper skipped busy session: %s", token)
                report.skipped_busy.append(token)
                continue
            if outcome != "evicted":
                continue
            report.removed.append(token)
            self._remove_workspace(token, report)

        orphans = self._sweep_orphans if include_orphans is None else include_orphans
        if orphans:
            known = set(self._registry.list_tokens())
            for token, _path in self._workspaces.iter_directories():
                if token in known:
                    continue
                mtime = self._workspaces.last_modified(token)
                if mtime is None or mtime >= cutoff:
                    continue
                if self._remove_workspace(token, report):
                    report.orphans_removed.append(token)

        if report.removed or report.orphans_removed or report.errors:
            logger.info(
                "reaper sweep: scanned=%s removed=%s orphans=%s errors=%s",
                report.scanned,
                len(report.removed),
                len(report.orphans_removed),
                len(report.errors),
            )
        return report

    def _remove_workspace(self, token: str, report: SweepReport) -> bool:
        """删除目录；失败记入 report。"""

        try:
            return self._workspaces.remove(token)
        except OSError as exc:
            logger.warning("reaper failed to remove workspace %s: %s", token, exc)
            report.errors.append({"token": token, "error": str(exc)})
            return False
