from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import HTTPException

from foundry_sandbox.core.errors import SandboxError

_STATUS_BY_CODE: Dict[str, int] = {
    "SESSION_INVALID": 401,
    "INSTALL_PENDING": 409,
    "INSTALL_FAILED": 409,
    "INVALID_INPUT": 400,
    "INVALID_PATH": 400,
    "SPAWN_FAILURE": 500,
    "REPL_PROCESS_ERROR": 500,
    "WORKSPACE_PROVISION_FAILED": 500,
}


def http_error(
    kind: str,
    message: str,
    *,
    status_code: int,
    details: Optional[Dict[str, Any]] = None,
) -> HTTPException:
    """
    构造统一的 HTTP 错误响应。

    参数：
    - kind：错误类型（前端区分场景；例如 not_found/validation/session_invalid）
    - message：人类可读的错误信息
    - status_code：HTTP 状态码
    - details：结构化详情（用于排障；不得包含 secrets）
    """

    return HTTPException(
        status_code=int(status_code),
        detail={
            "kind": str(kind),
            "message": str(message),
            "details": details or {},
        },
    )


def http_error_from(exc: SandboxError) -> HTTPException:
    """把沙箱异常映射为 HTTP 错误（kind 取错误码的小写形式）。"""

    status = _STATUS_BY_CODE.get(exc.code, 500)
    return http_error(exc.code.lower(), exc.message, status_code=status, details=exc.details)
