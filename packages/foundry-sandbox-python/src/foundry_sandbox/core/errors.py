"""
沙箱错误分类（异常类型）。

说明：
- 每个异常携带稳定错误码（英文大写下划线）、英文 message 与结构化 details；
- 组件边界（HTTP/WebSocket 层）负责把异常转换为结构化响应，异常本身不应终止服务进程。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict


@dataclass(frozen=True)
class SandboxIssue:
    """结构化问题对象（可直接序列化给客户端或 CLI）。"""

    code: str
    message: str
    details: Dict[str, Any]


class SandboxError(Exception):
    """沙箱结构化错误基类（`code/message/details`）。"""

    def __init__(self, *, code: str, message: str, details: Dict[str, Any] | None = None) -> None:
        """创建沙箱错误。

        参数：
        - `code`：稳定错误码
        - `message`：英文错误消息（面向客户端，不得包含 secrets）
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.code = code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回用于日志的字符串表示。"""

        return f"{self.code}: {self.message}"

    def to_issue(self) -> SandboxIssue:
        """把异常转换为可序列化问题对象。"""

        return SandboxIssue(code=self.code, message=self.message, details=dict(self.details))


class SessionInvalidError(SandboxError):
    """token 不对应任何已知 session（或其 workspace 已被移除）。"""

    def __init__(self, message: str = "Invalid session. Please refresh the page.", *, details: Dict[str, Any] | None = None) -> None:
        """创建 `SessionInvalidError`。"""

        super().__init__(code="SESSION_INVALID", message=message, details=details)


class InstallPendingError(SandboxError):
    """session 存在，但工具链安装尚未完成（可等待/轮询）。"""

    def __init__(self, message: str = "Foundry is still being installed. Please wait.", *, details: Dict[str, Any] | None = None) -> None:
        """创建 `InstallPendingError`。"""

        super().__init__(code="INSTALL_PENDING", message=message, details=details)


class InstallFailedError(SandboxError):
    """工具链安装失败（可通过 retry 重新探测/安装）。"""

    def __init__(self, message: str = "Foundry installation failed.", *, details: Dict[str, Any] | None = None) -> None:
        """创建 `InstallFailedError`。"""

        super().__init__(code="INSTALL_FAILED", message=message, details=details)


class InvalidInputError(SandboxError):
    """空命令/非字符串命令/格式错误的消息。"""

    def __init__(self, message: str, *, details: Dict[str, Any] | None = None) -> None:
        """创建 `InvalidInputError`。"""

        super().__init__(code="INVALID_INPUT", message=message, details=details)


class InvalidPathError(SandboxError):
    """文件访问路径越出 workspace（`..`、绝对路径、symlink 逃逸）。"""

    def __init__(self, message: str = "Invalid file path.", *, details: Dict[str, Any] | None = None) -> None:
        """创建 `InvalidPathError`。"""

        super().__init__(code="INVALID_PATH", message=message, details=details)


class SpawnFailureError(SandboxError):
    """子进程无法创建（可执行文件缺失、权限不足等）。"""

    def __init__(self, message: str, *, details: Dict[str, Any] | None = None) -> None:
        """创建 `SpawnFailureError`。"""

        super().__init__(code="SPAWN_FAILURE", message=message, details=details)


class ReplProcessError(SandboxError):
    """交互式子进程写入失败或已意外退出。"""

    def __init__(self, message: str = "REPL session ended.", *, details: Dict[str, Any] | None = None) -> None:
        """创建 `ReplProcessError`。"""

        super().__init__(code="REPL_PROCESS_ERROR", message=message, details=details)


class WorkspaceProvisionError(SandboxError):
    """workspace 目录无法创建（整个 session 解析失败）。"""

    def __init__(self, message: str = "Failed to provision workspace.", *, details: Dict[str, Any] | None = None) -> None:
        """创建 `WorkspaceProvisionError`。"""

        super().__init__(code="WORKSPACE_PROVISION_FAILED", message=message, details=details)
