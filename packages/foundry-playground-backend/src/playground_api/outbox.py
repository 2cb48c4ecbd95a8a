"""
连接出站队列（worker 线程 → asyncio 事件循环）。

背压策略：
- 来自 worker 线程（命令 reader / REPL reader / 安装线程）的消息占用一个名额，名额上限为 `max_messages`；
- 名额用尽时 worker 线程阻塞，进而停止读取子进程管道，子进程在写满管道后自然阻塞；
- 事件循环线程内产生的消息（commandComplete、错误提示）不占名额，避免阻塞事件循环；
- 连接关闭后所有消息被静默丢弃，阻塞中的 worker 线程随即返回。
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Dict, Optional, Tuple

from foundry_sandbox.core.output import STDERR

logger = logging.getLogger(__name__)

_SLOT_POLL_SEC = 0.1
_CLOSED = object()


class ConnectionOutbox:
    """
    单个连接的有界出站队列，同时实现 `OutputSink` 协议。

    参数：
    - loop：连接所在的事件循环
    - max_messages：worker 线程侧允许积压的最大消息数
    """

    def __init__(self, *, loop: asyncio.AbstractEventLoop, max_messages: int = 256) -> None:
        """在事件循环线程中创建。"""

        if max_messages < 1:
            raise ValueError("max_messages must be >= 1")
        self._loop = loop
        self._loop_thread_id = threading.get_ident()
        self._queue: asyncio.Queue[Tuple[Any, bool]] = asyncio.Queue()
        self._slots = threading.BoundedSemaphore(max_messages)
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        """连接是否已关闭。"""

        return self._closed.is_set()

    def put_threadsafe(self, message: Dict[str, Any]) -> bool:
        """
        从任意线程投递消息。

        返回：
        - True：已入队；False：连接已关闭，消息被丢弃
        """

        if self._closed.is_set():
            return False
        if threading.get_ident() == self._loop_thread_id:
            self._queue.put_nowait((message, False))
            return True
        while not self._slots.acquire(timeout=_SLOT_POLL_SEC):
            if self._closed.is_set():
                return False
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, (message, True))
        except RuntimeError:
            # 事件循环已关闭
            self._slots.release()
            self._closed.set()
            return False
        return True

    async def put(self, message: Dict[str, Any]) -> None:
        """在事件循环线程中投递消息（不占名额）。"""

        if self._closed.is_set():
            return
        self._queue.put_nowait((message, False))

    async def get(self) -> Optional[Dict[str, Any]]:
        """取下一条消息；队列被关闭时返回 None。"""

        message, counted = await self._queue.get()
        if counted:
            self._slots.release()
        if message is _CLOSED:
            return None
        return message

    def close(self) -> None:
        """关闭队列：之后的投递被丢弃，`get` 在取完已入队消息后返回 None。"""

        if self._closed.is_set():
            return
        self._closed.set()
        if threading.get_ident() == self._loop_thread_id:
            self._queue.put_nowait((_CLOSED, False))
            return
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, (_CLOSED, False))
        except RuntimeError:
            logger.debug("outbox closed after event loop shutdown")

    # ---- OutputSink ----

    def chunk(self, stream: str, text: str) -> None:
        """stdout → `{output}`，stderr → `{error}`。"""

        key = "error" if stream == STDERR else "output"
        self.put_threadsafe({key: text})

    def signal(self, event: str, **fields: Any) -> None:
        """带外信号 → `{type: event, ...}`。"""

        self.put_threadsafe({"type": event, **fields})
