"""
执行环境（不可变 env 值对象）。

约定：
- 每条命令在 spawn 前构造一次 `ExecutionEnvironment`，显式传给子进程；
- 构造规则：基础 env（继承全部服务端 env，或最小集合 + 白名单透传）→ PATH 前置工具链 bin 目录 → 静态覆盖；
- 构造结果只读，调用方不得原地修改。
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterator, Mapping, Optional, Sequence

_MINIMAL_BASE_KEYS = ("HOME", "USER", "LOGNAME", "LANG", "LC_ALL", "PATH", "TERM", "SHELL", "TMPDIR")


@dataclass(frozen=True)
class ExecutionEnvironment(Mapping[str, str]):
    """只读环境变量映射（可直接作为 `subprocess.Popen(env=...)` 的来源）。"""

    variables: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """冻结内部映射（拷贝一份，避免调用方持有可变引用）。"""

        object.__setattr__(self, "variables", MappingProxyType({str(k): str(v) for k, v in self.variables.items()}))

    def __getitem__(self, key: str) -> str:
        """按键读取。"""

        return self.variables[key]

    def __iter__(self) -> Iterator[str]:
        """遍历键。"""

        return iter(self.variables)

    def __len__(self) -> int:
        """变量个数。"""

        return len(self.variables)

    def as_dict(self) -> Dict[str, str]:
        """返回可变拷贝（spawn 时使用）。"""

        return dict(self.variables)

    def with_overrides(self, overrides: Mapping[str, str]) -> "ExecutionEnvironment":
        """返回叠加 overrides 后的新环境（原对象不变）。"""

        merged = dict(self.variables)
        merged.update({str(k): str(v) for k, v in overrides.items()})
        return ExecutionEnvironment(merged)


def _expand_home(path: str, *, home: Optional[str]) -> str:
    """按给定 HOME 展开 `~` 前缀；HOME 缺失时退回 `os.path.expanduser`。"""

    if not path.startswith("~"):
        return path
    if home and (path == "~" or path.startswith("~/")):
        return home.rstrip("/") + path[1:]
    return os.path.expanduser(path)


def build_execution_environment(
    *,
    toolchain_bin_dir: str,
    inherit_env: bool = True,
    passthrough: Sequence[str] = (),
    overrides: Optional[Mapping[str, str]] = None,
    base: Optional[Mapping[str, str]] = None,
) -> ExecutionEnvironment:
    """
    构造一次命令执行所用的环境。

    参数：
    - toolchain_bin_dir：工具链二进制目录（支持 `~`，相对执行用户 HOME 展开），前置到 PATH
    - inherit_env：true 时以完整 base 为起点；false 时只保留最小集合与 `passthrough` 中声明的变量
    - passthrough：需要透传的 secrets/RPC 变量名（例如 `ETH_RPC_URL`）；base 中不存在的名字忽略
    - overrides：静态覆盖（最后应用）
    - base：服务端环境（默认 `os.environ`）
    """

    source = base if base is not None else os.environ
    if inherit_env:
        env: Dict[str, str] = {str(k): str(v) for k, v in source.items()}
    else:
        env = {}
        for key in list(_MINIMAL_BASE_KEYS) + [str(k) for k in passthrough]:
            if key in source:
                env[key] = str(source[key])

    bin_dir = _expand_home(str(toolchain_bin_dir or "").strip(), home=env.get("HOME") or source.get("HOME"))
    if bin_dir:
        current = env.get("PATH", "")
        parts = [p for p in current.split(os.pathsep) if p]
        if bin_dir not in parts:
            env["PATH"] = os.pathsep.join([bin_dir] + parts)

    if overrides:
        env.update({str(k): str(v) for k, v in overrides.items()})
    return ExecutionEnvironment(env)
