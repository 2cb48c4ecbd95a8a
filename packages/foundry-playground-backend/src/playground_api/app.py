from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import Body, FastAPI, Request, Response, WebSocket
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from foundry_sandbox import bootstrap as sandbox_bootstrap
from foundry_sandbox.core.errors import InvalidInputError, SandboxError
from foundry_sandbox.core.runtime import ROUTE_REPL, SandboxRuntime
from foundry_sandbox.core.sessions import InstallStatus

from playground_api.channel import serve_channel
from playground_api.errors import http_error, http_error_from
from playground_api.sse import stream_command_as_sse

logger = logging.getLogger(__name__)


def _resolve_app_root_from_env() -> Path:
    """
    解析 app_root。

    约定：
    - 若设置 `FOUNDRY_PLAYGROUND_APP_ROOT`，使用其作为 app root（测试/多实例隔离）。
    - 否则使用当前进程工作目录。
    """

    env = (os.getenv("FOUNDRY_PLAYGROUND_APP_ROOT") or "").strip()
    if env:
        return Path(env).resolve()
    return Path.cwd().resolve()


_APP_ROOT = _resolve_app_root_from_env()

# 约定：服务启动时加载 `.env`（若存在）；不覆盖进程外已注入的 env
_loaded_env_file = sandbox_bootstrap.apply_dotenv(app_root=_APP_ROOT)

_RESOLVED = sandbox_bootstrap.resolve_sandbox_config(app_root=_APP_ROOT, env_file=_loaded_env_file)
_CONFIG = _RESOLVED.config
_RUNTIME = SandboxRuntime(_CONFIG)


@asynccontextmanager
async def _lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """启动时准备 workspace root 与 reaper；退出时关闭所有 REPL。"""

    _RUNTIME.start()
    try:
        yield
    finally:
        await asyncio.to_thread(_RUNTIME.close)


app = FastAPI(title="foundry-playground", version="0.1.0", lifespan=_lifespan)


class ExecuteReq(BaseModel):
    """`command` 保持 Any：类型校验由运行时给出统一的 invalid_input 错误。"""

    command: Any = None


class FileWriteReq(BaseModel):
    """文件写入请求体。"""

    content: str = Field(default="")


def _presented_token(request: Request) -> Optional[str]:
    """请求携带的 session token（header 优先于 cookie）。"""

    server = _CONFIG.server
    header = (request.headers.get(server.token_header) or "").strip()
    if header:
        return header
    cookie = (request.cookies.get(server.cookie_name) or "").strip()
    return cookie or None


def _refresh_token(response: Response, token: str) -> None:
    """回写 session cookie（滑动过期）与 header。"""

    server = _CONFIG.server
    response.set_cookie(
        key=server.cookie_name,
        value=token,
        max_age=int(_CONFIG.reaper.retention_sec),
        httponly=True,
        samesite="lax",
        secure=bool(server.cookie_secure),
    )
    response.headers[server.token_header] = token


@app.get("/api/health")
async def health() -> Dict[str, Any]:
    """存活检查。"""

    return {
        "ok": True,
        "workspaceRoot": str(_RUNTIME.workspaces.root),
        "sessions": len(_RUNTIME.registry),
        "envFile": str(_loaded_env_file) if _loaded_env_file else None,
    }


@app.get("/api/session")
async def get_session(request: Request, response: Response) -> Dict[str, Any]:
    """解析/创建 session，并回写 cookie 与 header。"""

    try:
        resolved = await asyncio.to_thread(_RUNTIME.resolve_session, _presented_token(request))
        snap = _RUNTIME.session_status(resolved.token)
    except SandboxError as e:
        raise http_error_from(e)
    _refresh_token(response, resolved.token)
    return {
        "sessionToken": resolved.token,
        "foundryInstalled": snap.install_status is InstallStatus.INSTALLED,
    }


@app.get("/api/session/status")
async def get_session_status(request: Request) -> Dict[str, Any]:
    """session 诊断信息（安装状态、REPL 是否存活）。"""

    try:
        snap = _RUNTIME.session_status(_presented_token(request))
    except SandboxError as e:
        raise http_error_from(e)
    return {
        "sessionToken": snap.token,
        "installStatus": snap.install_status.value,
        "installError": snap.install_error or None,
        "installAttempts": snap.install_attempts,
        "replActive": snap.repl_active,
        "activeCommands": snap.active_commands,
        "createdAt": snap.created_at,
    }


@app.post("/api/session/install/retry")
async def retry_install(request: Request) -> Dict[str, Any]:
    """安装失败后原地重试。"""

    token = _presented_token(request)
    try:
        status = _RUNTIME.retry_install(token or "")
    except SandboxError as e:
        raise http_error_from(e)
    return {"sessionToken": token, "installStatus": status.value}


@app.delete("/api/session", status_code=204)
async def delete_session(request: Request) -> Response:
    """关闭 REPL 并删除 workspace。"""

    try:
        await asyncio.to_thread(_RUNTIME.delete_session, _presented_token(request) or "")
    except SandboxError as e:
        raise http_error_from(e)
    response = Response(status_code=204)
    response.delete_cookie(_CONFIG.server.cookie_name)
    return response


@app.post("/api/execute")
async def execute(request: Request, body: ExecuteReq = Body(default_factory=ExecuteReq)) -> Dict[str, Any]:
    """请求/响应模式执行一次性命令。"""

    try:
        result = await asyncio.to_thread(_RUNTIME.execute, _presented_token(request), body.command)
    except SandboxError as e:
        raise http_error_from(e)
    return result.to_response()


@app.post("/api/execute/stream")
async def execute_stream(request: Request, body: ExecuteReq = Body(default_factory=ExecuteReq)) -> StreamingResponse:
    """以 SSE 流式执行一次性命令（REPL 只走 WebSocket）。"""

    token = _presented_token(request)
    try:
        route = _RUNTIME.route(token, body.command)
        if route == ROUTE_REPL:
            raise InvalidInputError("Interactive commands require the WebSocket channel.")
    except SandboxError as e:
        raise http_error_from(e)

    gen = stream_command_as_sse(
        request=request,
        runtime=_RUNTIME,
        token=str(token),
        command=str(body.command),
        max_messages=_CONFIG.server.outbox_max_messages,
    )
    return StreamingResponse(
        gen,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.get("/api/file/{name:path}")
async def read_file(name: str, request: Request) -> Dict[str, Any]:
    """读取 workspace 内文件。"""

    try:
        content = _RUNTIME.read_file(_presented_token(request), name)
    except SandboxError as e:
        raise http_error_from(e)
    except (FileNotFoundError, IsADirectoryError):
        raise http_error("not_found", "File not found.", status_code=404, details={"name": name})
    except (OSError, UnicodeDecodeError) as e:
        raise http_error("not_found", "File could not be read.", status_code=404, details={"name": name, "reason": str(e)})
    return {"content": content}


@app.post("/api/file/{name:path}")
async def write_file(name: str, request: Request, body: FileWriteReq) -> Dict[str, Any]:
    """写入 workspace 内文件。"""

    try:
        _RUNTIME.write_file(_presented_token(request), name, body.content)
    except SandboxError as e:
        raise http_error_from(e)
    except OSError as e:
        logger.warning("file write failed: %s (%s)", name, e)
        raise http_error("io_error", "Failed to save file.", status_code=500, details={"name": name, "reason": str(e)})
    return {"success": True, "message": "File saved successfully."}


@app.get("/api/workspace/source-file")
async def source_file(request: Request) -> Dict[str, Any]:
    """workspace 根目录下的第一个项目源文件。"""

    try:
        filename = _RUNTIME.find_source_file(_presented_token(request))
    except SandboxError as e:
        raise http_error_from(e)
    except FileNotFoundError:
        raise http_error("not_found", "No source file in workspace.", status_code=404)
    return {"filename": filename}


@app.websocket("/ws")
async def ws_channel(websocket: WebSocket) -> None:
    """WebSocket 流式通道（见 `playground_api.channel`）。"""

    await serve_channel(websocket, _RUNTIME, max_messages=_CONFIG.server.outbox_max_messages)
