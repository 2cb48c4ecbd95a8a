"""
WebSocket 流式通道。

协议（客户端 → 服务端）：
- `{type: 'init', sessionToken}`：把连接绑定到 session（每个连接一次；重复发送则改绑）
- `{command, sessionToken?}`：执行命令（sessionToken 缺省时使用已绑定的 token）

协议（服务端 → 客户端）：
- `{output}` / `{error}`：命令或 REPL 输出
- `{type: 'commandComplete', exitCode}`：一次性命令结束
- `{type: 'foundryInstalled'}` / `{type: 'foundryInstallFailed', error}`：安装终态
- `{type: 'replStarting'}` / `{type: 'replReady'}` / `{type: 'replClosed'}`：REPL 状态
- 非 JSON 输入 → `{error: 'Invalid JSON format'}`，不改变任何状态

并发：
- REPL 输入按接收顺序逐条处理（await 完成后才读取下一条消息；单条写入受 `repl.write_timeout_ms` 限制）；
- 一次性命令在后台任务中运行，允许同一连接上并发多条（例如长时间运行的 anvil）；
- 连接断开：取消该连接启动的一次性命令（终止进程组），关闭绑定到该连接的 REPL。
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Set

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect

from foundry_sandbox.core.errors import SandboxError, SessionInvalidError
from foundry_sandbox.core.runtime import ROUTE_REPL, SandboxRuntime
from foundry_sandbox.core.sessions import InstallStatus

from playground_api.outbox import ConnectionOutbox

logger = logging.getLogger(__name__)

INVALID_JSON = "Invalid JSON format"


@dataclass
class ConnectionContext:
    """单个连接的显式上下文（绑定的 session、出站队列、取消信号、后台任务）。"""

    connection_id: str
    outbox: ConnectionOutbox
    session_token: Optional[str] = None
    cancelled: threading.Event = field(default_factory=threading.Event)
    unsubscribe: Optional[Callable[[], None]] = None
    tasks: Set["asyncio.Task[None]"] = field(default_factory=set)


def _install_listener(outbox: ConnectionOutbox) -> Callable[[InstallStatus, str], None]:
    """构造安装终态监听者：把状态转成对应的带外信号。"""

    def _listener(status: InstallStatus, error: str) -> None:
        """installed → foundryInstalled；failed → foundryInstallFailed。"""

        if status is InstallStatus.INSTALLED:
            outbox.signal("foundryInstalled")
        elif status is InstallStatus.FAILED:
            outbox.signal("foundryInstallFailed", error=error)

    return _listener


async def _pump_outbox(websocket: WebSocket, outbox: ConnectionOutbox) -> None:
    """把出站队列中的消息依次发送给客户端；发送失败即停止。"""

    while True:
        message = await outbox.get()
        if message is None:
            return
        try:
            await websocket.send_json(message)
        except Exception:
            logger.debug("websocket send failed; stop pumping")
            outbox.close()
            return


async def _bind(ctx: ConnectionContext, runtime: SandboxRuntime, token: Any) -> None:
    """处理 init：绑定 session 并订阅安装通知（已安装时立即收到 foundryInstalled）。"""

    if ctx.unsubscribe is not None:
        ctx.unsubscribe()
        ctx.unsubscribe = None
    if not isinstance(token, str) or not token:
        ctx.session_token = None
        await ctx.outbox.put({"error": SessionInvalidError().message})
        return
    ctx.session_token = token
    try:
        ctx.unsubscribe = runtime.subscribe_install(token, _install_listener(ctx.outbox))
    except SessionInvalidError as e:
        await ctx.outbox.put({"error": e.message})


async def _run_command(ctx: ConnectionContext, runtime: SandboxRuntime, token: str, command: str) -> None:
    """后台任务：在线程中执行一次性命令，结束后发送 commandComplete。"""

    try:
        code = await asyncio.to_thread(
            runtime.dispatch,
            token,
            command,
            ctx.outbox,
            owner=ctx.connection_id,
            cancel_checker=ctx.cancelled.is_set,
        )
    except SandboxError as e:
        await ctx.outbox.put({"error": e.message})
        return
    except Exception as e:
        logger.exception("command failed: %s", token)
        await ctx.outbox.put({"error": str(e)})
        return
    if code is not None:
        await ctx.outbox.put({"type": "commandComplete", "exitCode": code})


async def _handle_command(ctx: ConnectionContext, runtime: SandboxRuntime, message: Dict[str, Any]) -> None:
    """处理一条命令消息：校验 → 路由 → REPL 同步处理 / 一次性命令后台执行。"""

    token = message.get("sessionToken") or ctx.session_token
    command = message.get("command")
    try:
        route = runtime.route(token, command)
    except SandboxError as e:
        await ctx.outbox.put({"error": e.message})
        return

    if route == ROUTE_REPL:
        try:
            await asyncio.to_thread(runtime.dispatch, token, command, ctx.outbox, owner=ctx.connection_id)
        except SandboxError as e:
            await ctx.outbox.put({"error": e.message})
        return

    task = asyncio.create_task(_run_command(ctx, runtime, token, command))
    ctx.tasks.add(task)
    task.add_done_callback(ctx.tasks.discard)


async def _cleanup(ctx: ConnectionContext, runtime: SandboxRuntime) -> None:
    """连接断开：取消命令、关闭 REPL、退订、关闭出站队列。"""

    ctx.cancelled.set()
    if ctx.unsubscribe is not None:
        ctx.unsubscribe()
        ctx.unsubscribe = None
    try:
        closed = await asyncio.to_thread(runtime.release_connection, ctx.connection_id)
        if closed:
            logger.info("closed %s repl(s) for disconnected connection %s", closed, ctx.connection_id)
    except Exception:
        logger.exception("release_connection failed: %s", ctx.connection_id)
    ctx.outbox.close()
    if ctx.tasks:
        await asyncio.gather(*list(ctx.tasks), return_exceptions=True)


async def serve_channel(websocket: WebSocket, runtime: SandboxRuntime, *, max_messages: int = 256) -> None:
    """
    WebSocket 连接主循环。

    参数：
    - websocket：已路由到本 handler 的连接（尚未 accept）
    - runtime：沙箱运行时
    - max_messages：出站队列上限（背压）
    """

    await websocket.accept()
    loop = asyncio.get_running_loop()
    ctx = ConnectionContext(
        connection_id=uuid.uuid4().hex,
        outbox=ConnectionOutbox(loop=loop, max_messages=max_messages),
    )
    sender = asyncio.create_task(_pump_outbox(websocket, ctx.outbox))
    try:
        while True:
            try:
                raw = await websocket.receive_text()
            except (WebSocketDisconnect, RuntimeError, KeyError):
                break
            try:
                message = json.loads(raw)
            except ValueError:
                await ctx.outbox.put({"error": INVALID_JSON})
                continue
            if not isinstance(message, dict):
                await ctx.outbox.put({"error": INVALID_JSON})
                continue

            if message.get("type") == "init":
                await _bind(ctx, runtime, message.get("sessionToken"))
            elif "command" in message:
                await _handle_command(ctx, runtime, message)
            else:
                await ctx.outbox.put({"error": "Unknown message"})
    finally:
        await _cleanup(ctx, runtime)
        try:
            await asyncio.wait_for(sender, timeout=1.0)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            sender.cancel()
