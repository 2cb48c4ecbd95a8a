"""
Foundry Sandbox（Python）。

说明：
- 为匿名 Web 客户端提供按 session 隔离的 Foundry（forge/cast/anvil/chisel）命令执行沙箱；
- 当前包含：
  - 配置加载器（YAML overlay + pydantic 校验）与 bootstrap（`.env` / overlay 发现）
  - Workspace Store（per-session 目录 + 路径包含校验）
  - Session Registry（锁保护的进程内 session 表）
  - Toolchain Installer（probe 短路 + 异步安装 + 进度行分类）
  - Executor（批量/流式执行 + 有界输出 + 进程组终止）
  - Interactive Process Multiplexer（chisel REPL）
  - Reaper（闲置 workspace 回收）
"""

from __future__ import annotations

from foundry_sandbox.core.runtime import ExecutionResult, SandboxRuntime
from foundry_sandbox.core.sessions import InstallStatus

__all__ = ["ExecutionResult", "InstallStatus", "SandboxRuntime", "__version__"]

__version__ = "0.1.0"
