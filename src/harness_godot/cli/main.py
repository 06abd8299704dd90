import json
import logging
import os
import signal
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer

from harness_godot import __version__
from harness_godot.bridge.client import DEFAULT_BRIDGE_URL, BridgeClient, BridgeClientError
from harness_godot.bridge.config import BridgeConfig
from harness_godot.bridge.godot_runner import GodotRunError
from harness_godot.bridge.operations import configure
from harness_godot.bridge.protocol import ERROR_CODES, PROTOCOL_VERSION
from harness_godot.bridge.server import run_bridge_server

app = typer.Typer(add_completion=False, help="Bridge-first CLI for Godot automation")
bridge_app = typer.Typer(add_completion=False, help="Bridge lifecycle")
godot_path_app = typer.Typer(add_completion=False, help="Godot executable configuration")
editor_app = typer.Typer(add_completion=False, help="Editor commands")
project_app = typer.Typer(add_completion=False, help="Project commands")
scene_app = typer.Typer(add_completion=False, help="Scene commands")
resource_app = typer.Typer(add_completion=False, help="Resource commands")

app.add_typer(bridge_app, name="bridge")
app.add_typer(godot_path_app, name="godot-path")
app.add_typer(editor_app, name="editor")
app.add_typer(project_app, name="project")
app.add_typer(scene_app, name="scene")
app.add_typer(resource_app, name="resource")


def _print(payload: Dict[str, Any]) -> None:
    typer.echo(json.dumps(payload, indent=2))


def _ok(command: str, data: Dict[str, Any]) -> None:
    if isinstance(data, dict):
        if "changed" in data and "idempotent" not in data:
            data["idempotent"] = False
        data.setdefault("warnings", [])
    _print({"ok": True, "protocolVersion": PROTOCOL_VERSION, "command": command, "data": data})


def _fail(
    command: str, code: str, message: str, retryable: bool = False, suggestions: Optional[List[str]] = None
) -> None:
    _print(
        {
            "ok": False,
            "protocolVersion": PROTOCOL_VERSION,
            "command": command,
            "error": {"code": code, "message": message, "retryable": retryable, "suggestions": suggestions or []},
        }
    )
    raise SystemExit(ERROR_CODES.get(code, ERROR_CODES["ERROR"]))


def _bridge_client() -> BridgeClient:
    from_env = os.getenv("HARNESS_GODOT_BRIDGE_URL")
    if from_env:
        return BridgeClient(from_env)
    url_file = _bridge_url_file()
    if url_file.exists():
        return BridgeClient(url_file.read_text(encoding="utf-8").strip())
    return BridgeClient(DEFAULT_BRIDGE_URL)


def _call_bridge(command: str, method: str, params: Dict[str, Any], timeout_seconds: float = 30) -> Dict[str, Any]:
    client = _bridge_client()
    try:
        return client.call(method, params, timeout_seconds=timeout_seconds)
    except BridgeClientError as exc:
        _fail(command, exc.code, exc.message, retryable=exc.code == "BRIDGE_UNAVAILABLE", suggestions=exc.suggestions)
    except Exception as exc:
        _fail(command, "ERROR", str(exc))
    raise RuntimeError("unreachable")


def _bridge_state_dir() -> Path:
    root = Path(os.getenv("LOCALAPPDATA", Path.home()))
    state_dir = root / "harness-godot"
    state_dir.mkdir(parents=True, exist_ok=True)
    return state_dir


def _bridge_pid_file() -> Path:
    return _bridge_state_dir() / "bridge.pid"


def _bridge_url_file() -> Path:
    return _bridge_state_dir() / "bridge.url"


def _setup_logging(debug: bool) -> None:
    handler = logging.StreamHandler(stream=sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
    root = logging.getLogger("harness_godot")
    root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    root.propagate = False


@bridge_app.command("serve")
def bridge_serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(41751, "--port"),
    godot_path: Optional[str] = typer.Option(None, "--godot-path", help="Explicit Godot executable"),
    strict: Optional[bool] = typer.Option(None, "--strict/--permissive", help="Fail startup without a valid Godot"),
    debug: Optional[bool] = typer.Option(None, "--debug/--no-debug"),
) -> None:
    config = BridgeConfig.from_env().with_overrides(godot_path=godot_path, strict_path_validation=strict, debug=debug)
    _setup_logging(config.debug)
    context = configure(config)
    try:
        context.locator.resolve()
    except GodotRunError as exc:
        logging.getLogger("harness_godot").error("Failed initial Godot path detection: %s", exc.message)
        logging.getLogger("harness_godot").error("Strict path validation enabled; bridge cannot start.")
        raise SystemExit(ERROR_CODES[exc.code])
    run_bridge_server(host, port)


@bridge_app.command("start")
def bridge_start(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(41751, "--port"),
    godot_path: Optional[str] = typer.Option(None, "--godot-path"),
    strict: Optional[bool] = typer.Option(None, "--strict/--permissive", help="Defaults to HARNESS_GODOT_STRICT_PATH"),
) -> None:
    pid_file = _bridge_pid_file()
    if pid_file.exists():
        try:
            pid = int(pid_file.read_text(encoding="utf-8").strip())
            os.kill(pid, 0)
            _ok("bridge.start", {"status": "already-running", "pid": pid, "host": host, "port": port})
            return
        except (OSError, ValueError):
            pid_file.unlink(missing_ok=True)

    creationflags = 0
    if os.name == "nt":
        creationflags = subprocess.CREATE_NEW_PROCESS_GROUP | subprocess.DETACHED_PROCESS
    cmd = [sys.executable, "-m", "harness_godot", "bridge", "serve", "--host", host, "--port", str(port)]
    if godot_path:
        cmd.extend(["--godot-path", godot_path])
    if strict is not None:
        cmd.append("--strict" if strict else "--permissive")
    log_file = (_bridge_state_dir() / "bridge.log").open("a", encoding="utf-8")
    process = subprocess.Popen(
        cmd,
        stdout=subprocess.DEVNULL,
        stderr=log_file,
        creationflags=creationflags,
    )
    log_file.close()
    pid_file.write_text(str(process.pid), encoding="utf-8")
    url = f"http://{host}:{port}"
    os.environ["HARNESS_GODOT_BRIDGE_URL"] = url
    _bridge_url_file().write_text(url, encoding="utf-8")
    for _ in range(30):
        time.sleep(0.1)
        if process.poll() is not None:
            pid_file.unlink(missing_ok=True)
            _fail("bridge.start", "BRIDGE_UNAVAILABLE", f"Bridge process exited with code {process.returncode}")
        try:
            health = BridgeClient(url).health()
            if health.get("ok"):
                _ok("bridge.start", {"status": "started", "pid": process.pid, "host": host, "port": port})
                return
        except BridgeClientError:
            continue
    _fail("bridge.start", "BRIDGE_UNAVAILABLE", "Bridge process started but health check failed")


@bridge_app.command("stop")
def bridge_stop() -> None:
    pid_file = _bridge_pid_file()
    if not pid_file.exists():
        _ok("bridge.stop", {"status": "not-running"})
        return
    pid = int(pid_file.read_text(encoding="utf-8").strip())
    try:
        os.kill(pid, signal.SIGTERM)
    except OSError:
        pass
    pid_file.unlink(missing_ok=True)
    _bridge_url_file().unlink(missing_ok=True)
    _ok("bridge.stop", {"status": "stopped", "pid": pid})


@bridge_app.command("status")
def bridge_status() -> None:
    client = _bridge_client()
    try:
        health = client.health()
        _ok("bridge.status", {"running": True, "health": health, "url": client.url})
    except BridgeClientError as exc:
        _fail("bridge.status", exc.code, exc.message, retryable=True)


@app.command("actions")
def actions() -> None:
    _ok("actions", _call_bridge("actions", "system.actions", {}))


@app.command("doctor")
def doctor() -> None:
    data = _call_bridge("doctor", "system.doctor", {}, timeout_seconds=60)
    _ok("doctor", data)
    if not data.get("healthy", False):
        raise SystemExit(ERROR_CODES["ERROR"])


@app.command("version")
def version(godot: bool = typer.Option(False, "--godot", help="Also query the Godot executable")) -> None:
    data: Dict[str, Any] = {"harnessVersion": __version__}
    if godot:
        data["godot"] = _call_bridge("version", "system.version", {})
    _ok("version", data)


@godot_path_app.command("set")
def godot_path_set(path: str) -> None:
    _ok("godot-path.set", _call_bridge("godot-path.set", "system.set_godot_path", {"path": path}))


@editor_app.command("launch")
def editor_launch(project: Path) -> None:
    _ok("editor.launch", _call_bridge("editor.launch", "editor.launch", {"projectPath": str(project)}))


@project_app.command("run")
def project_run(project: Path, debug: bool = False) -> None:
    _ok("project.run", _call_bridge("project.run", "project.run", {"projectPath": str(project), "debug": debug}))


@project_app.command("output")
def project_output() -> None:
    _ok("project.output", _call_bridge("project.output", "project.output", {}))


@project_app.command("stop")
def project_stop() -> None:
    _ok("project.stop", _call_bridge("project.stop", "project.stop", {}))


@project_app.command("status")
def project_status() -> None:
    _ok("project.status", _call_bridge("project.status", "project.status", {}))


@project_app.command("list")
def project_list(directory: Path, recursive: bool = False) -> None:
    _ok(
        "project.list",
        _call_bridge("project.list", "project.list", {"directory": str(directory), "recursive": recursive}),
    )


@project_app.command("info")
def project_info(project: Path) -> None:
    _ok("project.info", _call_bridge("project.info", "project.info", {"projectPath": str(project)}))


@scene_app.command("create")
def scene_create(
    project: Path,
    scene_path: str,
    root_node_type: str = typer.Option("Node2D", "--root-node-type"),
    timeout_seconds: float = typer.Option(320, "--timeout-seconds"),
) -> None:
    _ok(
        "scene.create",
        _call_bridge(
            "scene.create",
            "scene.create",
            {"projectPath": str(project), "scenePath": scene_path, "rootNodeType": root_node_type},
            timeout_seconds=timeout_seconds,
        ),
    )


@scene_app.command("add-node")
def scene_add_node(
    project: Path,
    scene_path: str,
    node_type: str,
    node_name: str,
    parent: str = typer.Option("root", "--parent", help="NodePath of the parent node"),
    timeout_seconds: float = typer.Option(320, "--timeout-seconds"),
) -> None:
    _ok(
        "scene.add-node",
        _call_bridge(
            "scene.add-node",
            "scene.node.add",
            {
                "projectPath": str(project),
                "scenePath": scene_path,
                "parentNodePath": parent,
                "nodeType": node_type,
                "nodeName": node_name,
            },
            timeout_seconds=timeout_seconds,
        ),
    )


@scene_app.command("load-sprite")
def scene_load_sprite(
    project: Path,
    scene_path: str,
    node_path: str,
    texture_path: str,
    timeout_seconds: float = typer.Option(320, "--timeout-seconds"),
) -> None:
    _ok(
        "scene.load-sprite",
        _call_bridge(
            "scene.load-sprite",
            "scene.sprite.load",
            {"projectPath": str(project), "scenePath": scene_path, "nodePath": node_path, "texturePath": texture_path},
            timeout_seconds=timeout_seconds,
        ),
    )


@scene_app.command("export-mesh-library")
def scene_export_mesh_library(
    project: Path,
    scene_path: str,
    output_path: str,
    items_json: str = typer.Option(..., "--items-json", help='JSON array of mesh item names, e.g. ["Wall","Floor"]'),
    timeout_seconds: float = typer.Option(320, "--timeout-seconds"),
) -> None:
    try:
        items = json.loads(items_json)
    except json.JSONDecodeError as exc:
        _fail("scene.export-mesh-library", "PARSE_FAILURE", f"Failed to parse JSON: {exc}")
    _ok(
        "scene.export-mesh-library",
        _call_bridge(
            "scene.export-mesh-library",
            "scene.mesh_library.export",
            {"projectPath": str(project), "scenePath": scene_path, "meshItemNames": items, "outputPath": output_path},
            timeout_seconds=timeout_seconds,
        ),
    )


@scene_app.command("save")
def scene_save(
    project: Path,
    scene_path: str,
    new_path: Optional[str] = typer.Option(None, "--new-path"),
    timeout_seconds: float = typer.Option(320, "--timeout-seconds"),
) -> None:
    params: Dict[str, Any] = {"projectPath": str(project), "scenePath": scene_path}
    if new_path:
        params["newPath"] = new_path
    _ok("scene.save", _call_bridge("scene.save", "scene.save", params, timeout_seconds=timeout_seconds))


@resource_app.command("uid")
def resource_uid(
    project: Path,
    file_path: str,
    timeout_seconds: float = typer.Option(320, "--timeout-seconds"),
) -> None:
    _ok(
        "resource.uid",
        _call_bridge(
            "resource.uid",
            "resource.uid",
            {"projectPath": str(project), "filePath": file_path},
            timeout_seconds=timeout_seconds,
        ),
    )


@resource_app.command("resave")
def resource_resave(
    project: Path,
    timeout_seconds: float = typer.Option(620, "--timeout-seconds"),
) -> None:
    _ok(
        "resource.resave",
        _call_bridge("resource.resave", "resource.resave", {"projectPath": str(project)}, timeout_seconds=timeout_seconds),
    )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
