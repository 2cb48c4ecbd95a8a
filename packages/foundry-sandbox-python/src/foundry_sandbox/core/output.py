"""
输出 sink 协议（核心 → 传输层）。

约定：
- `chunk(stream, text)`：子进程输出片段；`stream` 取 `stdout` / `stderr`；
- `signal(event, **fields)`：带外信号（`replStarting` / `replReady` / `replClosed` / `foundryInstalled` 等）；
- 实现方可以在队列满时阻塞调用线程（背压），但不得抛出异常；连接已断开时应静默丢弃。
"""

from __future__ import annotations

from typing import Any, List, Protocol, Tuple, runtime_checkable

STDOUT = "stdout"
STDERR = "stderr"


@runtime_checkable
class OutputSink(Protocol):
    """命令/REPL 输出的接收方。"""

    def chunk(self, stream: str, text: str) -> None:
        """接收一段输出。"""

        ...

    def signal(self, event: str, **fields: Any) -> None:
        """接收一个带外信号。"""

        ...


class CollectingSink:
    """把输出按到达顺序收集到内存（测试使用）。"""

    def __init__(self) -> None:
        """创建空的收集器。"""

        self.chunks: List[Tuple[str, str]] = []
        self.signals: List[Tuple[str, dict]] = []

    def chunk(self, stream: str, text: str) -> None:
        """记录一段输出。"""

        self.chunks.append((stream, text))

    def signal(self, event: str, **fields: Any) -> None:
        """记录一个信号。"""

        self.signals.append((event, dict(fields)))

    def text(self, stream: str) -> str:
        """拼接某个 stream 的全部输出。"""

        return "".join(t for s, t in self.chunks if s == stream)

    def events(self) -> List[str]:
        """已收到的信号名列表。"""

        return [e for e, _ in self.signals]
