import importlib
import os
import shlex
import sys
from pathlib import Path
from typing import Any, Dict, List

from fastapi.testclient import TestClient

_FAKE_REPL = (
    "import sys\n"
    "print('Welcome to Chisel!', flush=True)\n"
    "for raw in sys.stdin:\n"
    "    line = raw.strip()\n"
    "    if line == '!quit':\n"
    "        sys.exit(0)\n"
    "    print('echo: ' + line, flush=True)\n"
)


def _load_app(tmp_path: Path):
    script = tmp_path / "fake_chisel.py"
    script.write_text(_FAKE_REPL, encoding="utf-8")
    repl_cmd = f"exec {shlex.quote(sys.executable)} {shlex.quote(str(script))}"
    cfg_dir = tmp_path / "config"
    cfg_dir.mkdir(parents=True, exist_ok=True)
    (cfg_dir / "sandbox.yaml").write_text(
        "\n".join(
            [
                "workspace:",
                f"  root: {tmp_path / 'ws'}",
                "toolchain:",
                "  probe_command: 'true'",
                "repl:",
                f"  command: {repl_cmd!r}",
                "  exit_grace_ms: 300",
                "reaper:",
                "  enabled: false",
                "",
            ]
        ),
        encoding="utf-8",
    )
    os.environ["FOUNDRY_PLAYGROUND_APP_ROOT"] = str(tmp_path)
    if "playground_api.app" in sys.modules:
        importlib.reload(sys.modules["playground_api.app"])
    else:
        import playground_api.app  # noqa: F401
    import playground_api.app as mod
    return mod


def _receive_until(ws, predicate) -> List[Dict[str, Any]]:  # type: ignore[no-untyped-def]
    seen: List[Dict[str, Any]] = []
    while True:
        msg = ws.receive_json()
        seen.append(msg)
        if predicate(msg):
            return seen


def test_invalid_json_does_not_close_the_channel(tmp_path: Path) -> None:
    mod = _load_app(tmp_path)
    with TestClient(mod.app) as client:
        token = client.get("/api/session").json()["sessionToken"]
        mod._RUNTIME.registry.wait_for_install(token, timeout=10)
        with client.websocket_connect("/ws") as ws:
            ws.send_text("{not json")
            assert ws.receive_json() == {"error": "Invalid JSON format"}
            ws.send_text("[1, 2]")
            assert ws.receive_json() == {"error": "Invalid JSON format"}
            ws.send_json({"type": "init", "sessionToken": token})
            assert ws.receive_json() == {"type": "foundryInstalled"}


def test_init_with_unknown_token_reports_invalid_session(tmp_path: Path) -> None:
    mod = _load_app(tmp_path)
    with TestClient(mod.app) as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "init", "sessionToken": "0" * 32})
            assert ws.receive_json() == {"error": "Invalid session. Please refresh the page."}


def test_command_streams_output_then_completion(tmp_path: Path) -> None:
    mod = _load_app(tmp_path)
    with TestClient(mod.app) as client:
        token = client.get("/api/session").json()["sessionToken"]
        mod._RUNTIME.registry.wait_for_install(token, timeout=10)
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "init", "sessionToken": token})
            assert ws.receive_json() == {"type": "foundryInstalled"}

            ws.send_json({"command": "echo hi; echo oops 1>&2; exit 4", "sessionToken": token})
            seen = _receive_until(ws, lambda m: m.get("type") == "commandComplete")
            assert seen[-1] == {"type": "commandComplete", "exitCode": 4}
            out = "".join(m.get("output", "") for m in seen)
            err = "".join(m.get("error", "") for m in seen)
            assert out == "hi\n"
            assert err == "oops\n"

            # 已绑定 token 时可省略 sessionToken
            ws.send_json({"command": "echo bound"})
            seen = _receive_until(ws, lambda m: m.get("type") == "commandComplete")
            assert {"output": "bound\n"} in seen


def test_command_errors_are_reported_inline(tmp_path: Path) -> None:
    mod = _load_app(tmp_path)
    with TestClient(mod.app) as client:
        token = client.get("/api/session").json()["sessionToken"]
        mod._RUNTIME.registry.wait_for_install(token, timeout=10)
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"command": "", "sessionToken": token})
            assert ws.receive_json() == {"error": "Command must not be empty."}
            ws.send_json({"command": "echo hi", "sessionToken": "0" * 32})
            assert ws.receive_json() == {"error": "Invalid session. Please refresh the page."}


def test_repl_lifecycle_over_websocket(tmp_path: Path) -> None:
    mod = _load_app(tmp_path)
    with TestClient(mod.app) as client:
        token = client.get("/api/session").json()["sessionToken"]
        mod._RUNTIME.registry.wait_for_install(token, timeout=10)
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "init", "sessionToken": token})
            assert ws.receive_json() == {"type": "foundryInstalled"}

            ws.send_json({"command": "chisel", "sessionToken": token})
            seen = _receive_until(ws, lambda m: m.get("type") == "replReady")
            assert seen[0] == {"type": "replStarting"}

            ws.send_json({"command": "uint256 a = 1", "sessionToken": token})
            seen = _receive_until(ws, lambda m: "echo: uint256 a = 1" in m.get("output", ""))
            assert all(m.get("type") != "commandComplete" for m in seen)

            ws.send_json({"command": "exit", "sessionToken": token})
            _receive_until(ws, lambda m: m.get("type") == "replClosed")
            assert mod._RUNTIME.repl.state(token) is None


def test_disconnect_closes_the_connection_repl(tmp_path: Path) -> None:
    mod = _load_app(tmp_path)
    with TestClient(mod.app) as client:
        token = client.get("/api/session").json()["sessionToken"]
        mod._RUNTIME.registry.wait_for_install(token, timeout=10)
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"command": "chisel", "sessionToken": token})
            _receive_until(ws, lambda m: m.get("type") == "replReady")
            handle = mod._RUNTIME.registry.get_repl(token)
            assert handle is not None
        assert handle.exited.wait(timeout=10)
        assert mod._RUNTIME.repl.state(token) is None
