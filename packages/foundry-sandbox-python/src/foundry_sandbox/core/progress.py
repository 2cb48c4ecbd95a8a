"""
安装输出的进度行分类器。

安装脚本（curl / foundryup）会把下载进度写到 stderr；这些行不是错误。
分类规则是启发式的：任一 pattern（正则）命中即视为进度行。pattern 可注入，便于测试与扩展。
"""

from __future__ import annotations

import re
from typing import Iterable, Sequence

DEFAULT_PROGRESS_PATTERNS: Sequence[str] = (
    r"%",
    r"#",
    r"[▀-▟]",
)


class ProgressClassifier:
    """按正则 pattern 判断一行输出是否是进度指示。"""

    def __init__(self, patterns: Iterable[str] = DEFAULT_PROGRESS_PATTERNS) -> None:
        """
        编译 pattern 列表。

        异常：
        - ValueError：任一 pattern 不是合法正则
        """

        compiled = []
        for p in patterns:
            try:
                compiled.append(re.compile(p))
            except re.error as exc:
                raise ValueError(f"invalid progress pattern {p!r}: {exc}") from exc
        self._patterns = tuple(compiled)

    @property
    def patterns(self) -> tuple[str, ...]:
        """当前生效的 pattern 源串。"""

        return tuple(p.pattern for p in self._patterns)

    def is_progress(self, line: str) -> bool:
        """一行文本是否为进度行；空白行不算进度。"""

        if not line or not line.strip():
            return False
        return any(p.search(line) for p in self._patterns)
