"""
Foundry Playground CLI（serve/sweep/config）。

约束：
- 使用 argparse（不引入第三方 CLI 依赖）
- `sweep` / `config` 的 stdout 输出机器可读 JSON；失败时也输出 JSON
"""

from __future__ import annotations

import argparse
import json
import logging
import os
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from pydantic import ValidationError

from foundry_sandbox import bootstrap as sandbox_bootstrap
from foundry_sandbox.core.errors import SandboxError
from foundry_sandbox.core.runtime import SandboxRuntime


APP_ROOT_VAR = "FOUNDRY_PLAYGROUND_APP_ROOT"


def _dump_json_to_stdout(obj: Dict[str, Any], *, pretty: bool) -> None:
    """
    将 dict 输出为 JSON 到 stdout（末尾包含换行）。

    参数：
    - obj：待输出对象（必须可 JSON dumps）
    - pretty：是否启用 pretty-print（indent=2）
    """

    if pretty:
        text = json.dumps(obj, ensure_ascii=False, indent=2)
    else:
        text = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    print(text)


def _build_parser() -> argparse.ArgumentParser:
    """构建 CLI argparse parser。"""

    parser = argparse.ArgumentParser(
        prog="foundry-playground",
        description="Foundry Playground CLI（serve/sweep/config）。",
    )
    root_sub = parser.add_subparsers(dest="command", required=True)

    def _add_common_flags(p: argparse.ArgumentParser) -> None:
        """为子命令添加公共 flags。"""

        p.add_argument("--app-root", default=".", help="Application root directory (default: .)")
        p.add_argument("--no-dotenv", action="store_true", help="Disable loading .env from app root.")

    serve = root_sub.add_parser("serve", help="Run the HTTP/WebSocket server")
    _add_common_flags(serve)
    serve.add_argument("--host", default=None, help="Bind host (default: server.host from config)")
    serve.add_argument("--port", type=int, default=None, help="Bind port (default: server.port from config)")
    serve.add_argument("--log-level", default="info", help="Log level (default: info)")

    sweep = root_sub.add_parser("sweep", help="Run one reaper sweep and print the report")
    _add_common_flags(sweep)
    sweep.add_argument("--no-orphans", action="store_true", help="Do not remove directories of unknown sessions.")
    sweep.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")

    config = root_sub.add_parser("config", help="Print the effective configuration")
    _add_common_flags(config)
    config.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")

    return parser


def _resolve(args: argparse.Namespace) -> sandbox_bootstrap.ResolvedSandboxConfig:
    """按 CLI 参数加载 `.env` 并解析有效配置。"""

    app_root = Path(args.app_root).expanduser().resolve()
    env_file: Optional[Path] = None
    if not args.no_dotenv:
        env_file = sandbox_bootstrap.apply_dotenv(app_root=app_root)
    return sandbox_bootstrap.resolve_sandbox_config(app_root=app_root, env_file=env_file)


def _config_error_payload(exc: Exception) -> Dict[str, Any]:
    """配置解析失败时的 JSON 输出。"""

    return {"ok": False, "error": {"code": "CONFIG_INVALID", "message": "Config is invalid.", "details": {"reason": str(exc)}}}


def _handle_serve(args: argparse.Namespace) -> int:
    """启动 uvicorn（app 模块在导入时按 app_root 解析配置）。"""

    import uvicorn

    logging.basicConfig(
        level=str(args.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app_root = Path(args.app_root).expanduser().resolve()
    os.environ[APP_ROOT_VAR] = str(app_root)
    try:
        resolved = _resolve(args)
    except (ValueError, ValidationError) as exc:
        _dump_json_to_stdout(_config_error_payload(exc), pretty=True)
        return 2

    server = resolved.config.server
    uvicorn.run(
        "playground_api.app:app",
        host=args.host or server.host,
        port=int(args.port or server.port),
        log_level=str(args.log_level).lower(),
    )
    return 0


def _handle_sweep(args: argparse.Namespace) -> int:
    """执行一轮回收（包含孤儿目录，除非 `--no-orphans`）。"""

    try:
        resolved = _resolve(args)
    except (ValueError, ValidationError) as exc:
        _dump_json_to_stdout(_config_error_payload(exc), pretty=args.pretty)
        return 2

    runtime = SandboxRuntime(resolved.config)
    try:
        runtime.workspaces.ensure_root()
    except SandboxError as exc:
        _dump_json_to_stdout({"ok": False, "error": asdict(exc.to_issue())}, pretty=args.pretty)
        return 1
    report = runtime.sweep(include_orphans=not args.no_orphans)
    payload = {"ok": not report.errors, "workspaceRoot": str(runtime.workspaces.root), "report": report.to_dict()}
    _dump_json_to_stdout(payload, pretty=args.pretty)
    return 0 if not report.errors else 1


def _handle_config(args: argparse.Namespace) -> int:
    """输出有效配置与参与合并的 overlay。"""

    try:
        resolved = _resolve(args)
    except (ValueError, ValidationError) as exc:
        _dump_json_to_stdout(_config_error_payload(exc), pretty=args.pretty)
        return 2

    payload = {
        "ok": True,
        "config": resolved.config.model_dump(mode="json"),
        "overlayPaths": list(resolved.overlay_paths),
        "envFile": resolved.env_file,
    }
    _dump_json_to_stdout(payload, pretty=args.pretty)
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI 入口函数（用于 console_scripts 与测试）。

    参数：
    - argv：命令行参数列表（不含程序名）；为 None 时读取 sys.argv[1:]。

    返回：
    - int：exit code（不会直接 sys.exit，便于测试）。
    """

    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        code = getattr(exc, "code", 2)
        if code is None:
            return 2
        return int(code)

    if args.command == "serve":
        return _handle_serve(args)
    if args.command == "sweep":
        return _handle_sweep(args)
    if args.command == "config":
        return _handle_config(args)
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
