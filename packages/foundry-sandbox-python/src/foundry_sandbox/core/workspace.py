"""
Workspace Store：session token → 专属目录。

约束：
- 目录名就是 token（32 位小写 hex），位于 workspace root 之下；
- 所有文件访问必须经过 `resolve_file`，保证解析结果位于 workspace 内（路径包含不变量）；
- 越界请求在任何文件系统读写发生之前抛出 `InvalidPathError`。
"""

from __future__ import annotations

import logging
import re
import shutil
import tempfile
from pathlib import Path, PurePosixPath
from typing import Iterable, Iterator, Optional, Tuple

from foundry_sandbox.core.errors import InvalidPathError, WorkspaceProvisionError

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"^[0-9a-f]{32}$")
_WINDOWS_DRIVE_RE = re.compile(r"^[A-Za-z]:")


def default_workspace_root() -> Path:
    """默认 workspace root：`<系统临时目录>/foundry-sandbox`。"""

    return Path(tempfile.gettempdir()) / "foundry-sandbox"


def is_valid_token(token: str) -> bool:
    """token 是否为合法的 workspace 目录名（32 位小写 hex）。"""

    return isinstance(token, str) and bool(_TOKEN_RE.match(token))


class WorkspaceStore:
    """
    per-session 目录的创建、查找、删除与文件访问。

    参数：
    - root：workspace 根目录；为空时使用 `default_workspace_root()`
    - source_extensions：`find_source_file` 识别的项目源文件扩展名（按顺序无优先级，统一按文件名排序）
    """

    def __init__(self, *, root: Optional[Path] = None, source_extensions: Iterable[str] = (".sol",)) -> None:
        """创建 store；不做任何 I/O（根目录在首次 `create` 时递归创建）。"""

        self._root = Path(root) if root else default_workspace_root()
        self._source_extensions = tuple(str(e).lower() for e in source_extensions)

    @property
    def root(self) -> Path:
        """workspace 根目录。"""

        return self._root

    def ensure_root(self) -> Path:
        """确保根目录存在并返回其绝对路径。"""

        try:
            self._root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise WorkspaceProvisionError(details={"root": str(self._root), "reason": str(exc)}) from exc
        return self._root.resolve()

    def path_for(self, token: str) -> Path:
        """返回 token 对应的目录路径（不保证存在）；token 非法时抛 `InvalidPathError`。"""

        if not is_valid_token(token):
            raise InvalidPathError("Invalid session token.", details={"token": str(token)[:64]})
        return self._root / token

    def create(self, token: str) -> Path:
        """
        创建 token 对应的目录（递归；已存在时为 no-op）。

        异常：
        - WorkspaceProvisionError：目录无法创建（磁盘/权限问题）
        """

        path = self.path_for(token)
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise WorkspaceProvisionError(details={"workspace": str(path), "reason": str(exc)}) from exc
        logger.info("workspace created: %s", path)
        return path

    def exists(self, token: str) -> bool:
        """目录是否仍在磁盘上（可能被带外删除）。"""

        try:
            return self.path_for(token).is_dir()
        except InvalidPathError:
            return False

    def remove(self, token: str) -> bool:
        """
        递归删除 token 对应的目录。

        返回：
        - True：已删除
        - False：目录本就不存在
        """

        path = self.path_for(token)
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            return False
        logger.info("workspace removed: %s", path)
        return True

    def last_modified(self, token: str) -> Optional[float]:
        """目录 mtime（epoch 秒）；目录不存在时返回 None。"""

        try:
            return self.path_for(token).stat().st_mtime
        except (FileNotFoundError, InvalidPathError):
            return None

    def iter_directories(self) -> Iterator[Tuple[str, Path]]:
        """遍历根目录下所有“看起来像 workspace”的目录（名字为合法 token）。"""

        try:
            entries = list(self._root.iterdir())
        except FileNotFoundError:
            return
        for entry in sorted(entries):
            if is_valid_token(entry.name) and entry.is_dir():
                yield entry.name, entry

    def resolve_file(self, token: str, name: str) -> Path:
        """
        把客户端提供的相对文件名解析为 workspace 内的绝对路径。

        拒绝（`InvalidPathError`）：
        - 空名字 / 含 NUL
        - 绝对路径（`/x`、`\\x`、`C:x`）
        - 任意 `..` 片段
        - symlink 解析后落在 workspace 之外（或等于 workspace 本身）
        """

        raw = name if isinstance(name, str) else ""
        details = {"name": raw[:256]}
        if not raw.strip() or "\x00" in raw:
            raise InvalidPathError("File name must not be empty.", details=details)

        normalized = raw.replace("\\", "/")
        if normalized.startswith("/") or _WINDOWS_DRIVE_RE.match(normalized):
            raise InvalidPathError("Absolute paths are not allowed.", details=details)

        rel = PurePosixPath(normalized)
        if any(part == ".." for part in rel.parts):
            raise InvalidPathError("Path traversal is not allowed.", details=details)

        workspace = self.path_for(token).resolve()
        candidate = (workspace / Path(*rel.parts)).resolve()
        if candidate == workspace or not candidate.is_relative_to(workspace):
            raise InvalidPathError("Path escapes the workspace.", details=details)
        return candidate

    def read_text(self, token: str, name: str) -> str:
        """读取 workspace 内文件（UTF-8）；不存在时抛 FileNotFoundError。"""

        path = self.resolve_file(token, name)
        return path.read_text(encoding="utf-8")

    def write_text(self, token: str, name: str, content: str) -> Path:
        """写入 workspace 内文件（UTF-8）；中间目录按需创建（仍位于 workspace 内，workspace 本身不重建）。"""

        path = self.resolve_file(token, name)
        workspace = self.path_for(token)
        if not workspace.is_dir():
            raise FileNotFoundError(f"workspace not found: {workspace}")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path

    def find_source_file(self, token: str) -> str:
        """
        返回 workspace 根目录下第一个（按文件名排序）匹配源文件扩展名的文件名。

        异常：
        - FileNotFoundError：没有匹配文件（或 workspace 不存在）
        """

        workspace = self.path_for(token)
        try:
            entries = sorted(workspace.iterdir(), key=lambda p: p.name)
        except FileNotFoundError:
            raise FileNotFoundError(f"workspace not found: {workspace}") from None
        for entry in entries:
            if entry.suffix.lower() in self._source_extensions and entry.is_file():
                return entry.name
        raise FileNotFoundError("no source file found in workspace")
