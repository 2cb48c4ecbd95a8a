"""
Bootstrap Layer（应用层启动/配置发现）。

设计目标：
- 保持核心组件无隐式 I/O：`SandboxRuntime` 只接收已校验的 `SandboxConfig`；
- 提供可选 bootstrap 入口：Web/CLI 复用同一套 `.env` 与 overlay 发现规则。

发现规则（顺序稳定）：
1) 内置默认：`foundry_sandbox/assets/default.yaml`
2) 默认 overlay：`<app_root>/config/sandbox.yaml`
3) `FOUNDRY_SANDBOX_CONFIG_PATHS`（逗号/分号分隔）
4) env 覆盖：`FOUNDRY_SANDBOX_WORKSPACE_ROOT` → `workspace.root`
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from foundry_sandbox.config.defaults import load_default_config_dict
from foundry_sandbox.config.loader import SandboxConfig, load_config_dicts

ENV_FILE_VAR = "FOUNDRY_SANDBOX_ENV_FILE"
CONFIG_PATHS_VAR = "FOUNDRY_SANDBOX_CONFIG_PATHS"
WORKSPACE_ROOT_VAR = "FOUNDRY_SANDBOX_WORKSPACE_ROOT"


def _get_env_nonempty(key: str, *, env: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """
    读取 env 并返回非空白字符串（否则视为未设置）。

    参数：
    - key：环境变量名
    """

    v = (env if env is not None else os.environ).get(key)
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _split_paths(raw: str) -> list[str]:
    """将逗号/分号分隔的路径串切分为片段列表（去空白、去空项、保序）。"""

    parts: list[str] = []
    for chunk in raw.replace(";", ",").split(","):
        s = chunk.strip()
        if s:
            parts.append(s)
    return parts


def _parse_env_text(text: str) -> Dict[str, str]:
    """解析 `.env` 风格文本为键值字典（best-effort）。

    支持的最小语法：
    - 忽略空行与 `#` 注释行
    - 可选前缀 `export `
    - `KEY=VALUE`，并去掉 VALUE 两侧的单/双引号
    """
    out: Dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        if "=" not in line:
            continue
        k, v = line.split("=", 1)
        k = k.strip()
        v = v.strip()
        if not k:
            continue
        if (v.startswith('"') and v.endswith('"')) or (v.startswith("'") and v.endswith("'")):
            v = v[1:-1]
        out[k] = v
    return out


def load_dotenv_if_present(*, app_root: Path, override: bool = False) -> Tuple[Optional[Path], Dict[str, str]]:
    """
    约定发现并解析 `.env`：
    1) 若设置 `FOUNDRY_SANDBOX_ENV_FILE`，加载其指向的文件（相对路径相对 app_root）
    2) 否则若 `<app_root>/.env` 存在，加载之

    返回：
    - (env_file_path_or_none, env_vars_to_inject)

    说明：
    - 本函数不修改 `os.environ`；调用方决定是否注入。
    - `override=False` 时，已存在于 `os.environ` 的键不会出现在返回值中。
    """

    root = Path(app_root).resolve()
    env_path: Optional[Path] = None
    p = _get_env_nonempty(ENV_FILE_VAR)
    if p:
        env_path = Path(p).expanduser()
        if not env_path.is_absolute():
            env_path = (root / env_path).resolve()
        if not env_path.exists():
            raise ValueError(f"env file not found: {env_path}")
    else:
        candidate = (root / ".env").resolve()
        if candidate.exists():
            env_path = candidate

    if env_path is None:
        return None, {}
    data = _parse_env_text(env_path.read_text(encoding="utf-8"))
    if not override:
        data = {k: v for k, v in data.items() if k not in os.environ}
    return env_path, data


def apply_dotenv(*, app_root: Path) -> Optional[Path]:
    """把发现的 `.env` 注入 `os.environ`（不覆盖已有键）；返回加载的文件路径，未加载时为 None。"""

    env_path, data = load_dotenv_if_present(app_root=app_root, override=False)
    os.environ.update(data)
    return env_path


def discover_overlay_paths(*, app_root: Path, env: Optional[Mapping[str, str]] = None) -> list[Path]:
    """
    overlay 路径发现（顺序稳定，按 canonical path 去重）：
    1) `<app_root>/config/sandbox.yaml`（存在时）
    2) `FOUNDRY_SANDBOX_CONFIG_PATHS`
    """

    root = Path(app_root).resolve()
    overlays: list[Path] = []

    default_overlay = (root / "config" / "sandbox.yaml").resolve()
    if default_overlay.exists():
        overlays.append(default_overlay)

    raw = _get_env_nonempty(CONFIG_PATHS_VAR, env=env) or ""
    for p in _split_paths(raw):
        pp = Path(p).expanduser()
        pp = (root / pp).resolve() if not pp.is_absolute() else pp.resolve()
        overlays.append(pp)

    seen: set[Path] = set()
    uniq: list[Path] = []
    for p in overlays:
        if p in seen:
            continue
        seen.add(p)
        uniq.append(p)
    return uniq


def _load_yaml_mapping(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件并确保根节点是 mapping(dict)；文件缺失或根节点类型错误时抛 ValueError。"""

    if not path.exists():
        raise ValueError(f"overlay config not found: {path}")
    obj = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(obj, dict):
        raise ValueError(f"overlay config root must be a mapping(dict): {path}")
    return obj


@dataclass(frozen=True)
class ResolvedSandboxConfig:
    """bootstrap 解析结果：有效配置 + 参与合并的 overlay 路径 + 已加载的 `.env`。"""

    config: SandboxConfig
    overlay_paths: list[str]
    env_file: Optional[str]


def resolve_sandbox_config(
    *, app_root: Path, env: Optional[Mapping[str, str]] = None, env_file: Optional[Path] = None
) -> ResolvedSandboxConfig:
    """
    解析有效配置（env > overlays > 内置默认）。

    参数：
    - app_root：应用根目录（overlay 与 `.env` 的相对路径锚点）
    - env：用于读取 `FOUNDRY_SANDBOX_*` 的环境映射（默认 os.environ）
    - env_file：调用方已加载的 `.env` 路径（仅用于回显）
    """

    source_env = env if env is not None else os.environ
    overlay_paths = discover_overlay_paths(app_root=app_root, env=source_env)
    dicts: list[Dict[str, Any]] = [load_default_config_dict()]
    for p in overlay_paths:
        dicts.append(_load_yaml_mapping(p))

    ws_root = _get_env_nonempty(WORKSPACE_ROOT_VAR, env=source_env)
    if ws_root:
        dicts.append({"workspace": {"root": ws_root}})

    return ResolvedSandboxConfig(
        config=load_config_dicts(dicts),
        overlay_paths=[str(p) for p in overlay_paths],
        env_file=str(env_file) if env_file is not None else None,
    )


def load_sandbox_config(*, app_root: Path, env: Optional[Mapping[str, str]] = None) -> SandboxConfig:
    """便捷入口：只返回校验后的 `SandboxConfig`。"""

    return resolve_sandbox_config(app_root=app_root, env=env).config
