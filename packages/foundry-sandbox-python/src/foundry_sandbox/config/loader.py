"""
配置加载器（YAML）。

设计目标：
- 支持加载多个 YAML，并按顺序做深度合并（后者覆盖前者）。
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误与误配置被静默吞掉）。
- 内置默认值见 `foundry_sandbox/assets/default.yaml`。
"""

from __future__ import annotations

from copy import deepcopy
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型：overlay 直接覆盖
    - list：整体覆盖（不做去重/拼接）
    """

    for key, overlay_value in overlay.items():
        if key in base and isinstance(base[key], dict) and isinstance(overlay_value, Mapping):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class WorkspaceConfig(BaseModel):
    """workspace 根目录与源文件识别规则。"""

    model_config = ConfigDict(extra="forbid")

    root: str = Field(default="")
    source_extensions: List[str] = Field(default_factory=lambda: [".sol"])

    @field_validator("source_extensions")
    @classmethod
    def _normalize_extensions(cls, value: List[str]) -> List[str]:
        """统一扩展名为 `.xxx` 小写形式；空项丢弃。"""

        out: List[str] = []
        for raw in value:
            s = str(raw or "").strip().lower()
            if not s:
                continue
            out.append(s if s.startswith(".") else f".{s}")
        return out


class ToolchainConfig(BaseModel):
    """
    工具链安装配置。

    说明：
    - `probe_command` 成功即视为已安装，不再执行 `install_command`；
    - `progress_patterns` 为正则表达式列表，用于把安装 stderr 中的进度行与真正的错误行区分开。
    """

    model_config = ConfigDict(extra="forbid")

    bin_dir: str = Field(default="~/.foundry/bin")
    probe_command: str = Field(default="forge --version", min_length=1)
    probe_timeout_ms: int = Field(default=30_000, ge=1)
    install_command: str = Field(default="curl -L https://foundry.paradigm.xyz | bash && foundryup", min_length=1)
    install_timeout_ms: Optional[int] = Field(default=None, ge=1)
    progress_patterns: List[str] = Field(default_factory=lambda: ["%", "#"])
    max_error_bytes: int = Field(default=16 * 1024, ge=0)

    @field_validator("progress_patterns")
    @classmethod
    def _validate_patterns(cls, value: List[str]) -> List[str]:
        """所有 pattern 必须是合法正则（fail-fast）。"""

        for p in value:
            try:
                re.compile(p)
            except re.error as exc:
                raise ValueError(f"invalid progress pattern {p!r}: {exc}") from exc
        return value


class ExecutorConfig(BaseModel):
    """命令执行配置（shell、环境变量、输出上限）。"""

    model_config = ConfigDict(extra="forbid")

    shell: str = Field(default="/bin/bash", min_length=1)
    inherit_env: bool = True
    env_passthrough: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    timeout_ms: Optional[int] = Field(default=None, ge=1)
    terminate_grace_ms: int = Field(default=200, ge=0)
    chunk_bytes: int = Field(default=4096, ge=1)
    max_stdout_bytes: int = Field(default=1024 * 1024, ge=0)
    max_stderr_bytes: int = Field(default=1024 * 1024, ge=0)
    max_combined_bytes: int = Field(default=2 * 1024 * 1024, ge=0)


class ReplConfig(BaseModel):
    """交互式子进程（chisel）配置。"""

    model_config = ConfigDict(extra="forbid")

    launch_keyword: str = Field(default="chisel", min_length=1)
    exit_keyword: str = Field(default="exit", min_length=1)
    command: str = Field(default="chisel", min_length=1)
    ready_pattern: str = Field(default="Welcome to Chisel!", min_length=1)
    exit_directive: str = Field(default="!quit")
    exit_grace_ms: int = Field(default=500, ge=0)
    write_timeout_ms: int = Field(default=2000, ge=1)

    @field_validator("ready_pattern")
    @classmethod
    def _validate_ready_pattern(cls, value: str) -> str:
        """ready_pattern 必须是合法正则。"""

        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"invalid ready_pattern {value!r}: {exc}") from exc
        return value


class ReaperConfig(BaseModel):
    """闲置 workspace 回收配置。"""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    interval_sec: float = Field(default=3600, gt=0)
    retention_sec: float = Field(default=86400, gt=0)
    sweep_orphans: bool = True


class ServerConfig(BaseModel):
    """API 层配置（监听地址、session 载体、连接出站队列上限）。"""

    model_config = ConfigDict(extra="forbid")

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=5000, ge=0, le=65535)
    cookie_name: str = Field(default="sessionToken", min_length=1)
    token_header: str = Field(default="X-Session-Token", min_length=1)
    cookie_secure: bool = False
    outbox_max_messages: int = Field(default=256, ge=1)


class SandboxConfig(BaseModel):
    """配置根对象。"""

    model_config = ConfigDict(extra="forbid")

    config_version: int = Field(default=1, ge=1)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    toolchain: ToolchainConfig = Field(default_factory=ToolchainConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    repl: ReplConfig = Field(default_factory=ReplConfig)
    reaper: ReaperConfig = Field(default_factory=ReaperConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    if not path.exists():
        raise FileNotFoundError(f"config file not found: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"config root must be a mapping(dict): {path}")
    return data


def load_config_dicts(config_dicts: list[Dict[str, Any]]) -> SandboxConfig:
    """
    加载并合并多个 dict 配置，返回校验后的 `SandboxConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    """

    merged: Dict[str, Any] = {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    return SandboxConfig.model_validate(merged)


def load_config(config_paths: list[Path]) -> SandboxConfig:
    """
    加载并合并多个配置文件，返回校验后的 `SandboxConfig`。

    参数：
    - config_paths：YAML 路径列表；按顺序合并（后者覆盖前者）
    """

    overlays: list[Dict[str, Any]] = []
    for path in config_paths:
        overlays.append(_load_yaml_file(Path(path)))
    return load_config_dicts(overlays)
