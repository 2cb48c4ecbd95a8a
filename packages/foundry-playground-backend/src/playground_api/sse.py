from __future__ import annotations

import asyncio
import json
import logging
import threading
from typing import Any, AsyncIterator, Dict

from fastapi import Request

from foundry_sandbox.core.errors import SandboxError
from foundry_sandbox.core.runtime import SandboxRuntime

from playground_api.outbox import ConnectionOutbox

logger = logging.getLogger(__name__)


def _format_sse_event(*, event: str, data_json: str) -> str:
    """
    格式化一条 SSE 消息。

    约束：
    - event：事件名（字符串）
    - data：单行 JSON 字符串
    """

    return f"event: {event}\n" f"data: {data_json}\n\n"


def _event_name(message: Dict[str, Any]) -> str:
    """消息 → SSE 事件名：带 `type` 的取 type，否则按 `error`/`output` 区分。"""

    if "type" in message:
        return str(message["type"])
    return "error" if "error" in message else "output"


def stream_command_as_sse(
    *,
    request: Request,
    runtime: SandboxRuntime,
    token: str,
    command: str,
    max_messages: int = 256,
    poll_interval_sec: float = 0.2,
) -> AsyncIterator[bytes]:
    """
    在 worker 线程中执行一次性命令，并把输出转换为 SSE 流。

    事件：
    - `output` / `error`：数据为 `{"output": ...}` / `{"error": ...}`
    - `commandComplete`：数据为 `{"type": "commandComplete", "exitCode": N}`，随后流结束

    终止条件：
    - 命令结束
    - 或客户端断开连接（此时终止命令进程组）

    说明：
    - 前置条件（session/安装/命令合法性）应由调用方在返回响应前校验；这里仍会把异常转成 `error` 事件。
    """

    async def _gen() -> AsyncIterator[bytes]:
        """SSE 主循环。"""

        loop = asyncio.get_running_loop()
        outbox = ConnectionOutbox(loop=loop, max_messages=max_messages)
        cancelled = threading.Event()

        def _work() -> None:
            """worker 线程：执行命令并投递结束事件。"""

            try:
                code = runtime.run_streaming(token, command, outbox, cancel_checker=cancelled.is_set)
            except SandboxError as e:
                outbox.chunk("stderr", e.message)
                code = 1
            except Exception as e:
                logger.exception("streaming command failed: %s", token)
                outbox.chunk("stderr", str(e))
                code = 1
            outbox.signal("commandComplete", exitCode=code)
            outbox.close()

        worker = threading.Thread(target=_work, name=f"sse-command-{token[:8]}", daemon=True)
        worker.start()
        try:
            while True:
                try:
                    message = await asyncio.wait_for(outbox.get(), timeout=float(poll_interval_sec))
                except asyncio.TimeoutError:
                    try:
                        if await request.is_disconnected():
                            return
                    except Exception:
                        # fail-open：断连检测异常不阻断
                        pass
                    continue
                if message is None:
                    return
                data_json = json.dumps(message, ensure_ascii=False)
                yield _format_sse_event(event=_event_name(message), data_json=data_json).encode("utf-8")
        finally:
            cancelled.set()
            outbox.close()

    return _gen()
