import logging
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from harness_godot import __version__
from harness_godot.bridge.classify import (
    OperationOutcome,
    classify_failure,
    classify_output,
    suggestions_for,
    text_after,
)
from harness_godot.bridge.config import BridgeConfig
from harness_godot.bridge.godot_runner import (
    GodotLocator,
    GodotRunError,
    OperationOutput,
    godot_version,
    run_operation,
)
from harness_godot.bridge.params import to_internal_form
from harness_godot.bridge.processes import ProcessManager

logger = logging.getLogger(__name__)


class BridgeOperationError(Exception):
    def __init__(
        self,
        code: str,
        message: str,
        suggestions: Optional[List[str]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestions = list(suggestions) if suggestions is not None else suggestions_for(message)
        self.details = details or {}


@dataclass
class BridgeContext:
    config: BridgeConfig
    locator: GodotLocator
    processes: ProcessManager

    @classmethod
    def create(cls, config: BridgeConfig, locator: Optional[GodotLocator] = None) -> "BridgeContext":
        locator = locator or GodotLocator(config)
        return cls(config=config, locator=locator, processes=ProcessManager(locator, config))


_CONTEXT: Optional[BridgeContext] = None
_CONTEXT_LOCK = threading.Lock()

SKIPPED_DIRS = {".git", "node_modules", ".vscode", ".godot"}
SCENE_SUFFIXES = (".tscn", ".scn")
UID_PATTERN = re.compile(r"UID: (uid://[a-zA-Z0-9]+)")


def configure(config: Optional[BridgeConfig] = None, *, locator: Optional[GodotLocator] = None) -> BridgeContext:
    """Install a fresh bridge context, shutting down any process the previous one supervised."""
    global _CONTEXT
    context = BridgeContext.create(config or BridgeConfig.from_env(), locator)
    with _CONTEXT_LOCK:
        previous = _CONTEXT
        _CONTEXT = context
    if previous is not None:
        previous.processes.shutdown()
    return context


def get_context() -> BridgeContext:
    global _CONTEXT
    with _CONTEXT_LOCK:
        if _CONTEXT is None:
            _CONTEXT = BridgeContext.create(BridgeConfig.from_env())
        return _CONTEXT


def shutdown() -> None:
    with _CONTEXT_LOCK:
        context = _CONTEXT
    if context is not None:
        context.processes.shutdown()


def validate_path(path: Any) -> bool:
    return isinstance(path, str) and bool(path) and ".." not in path


def _require(params: Dict[str, Any], *keys: str) -> None:
    missing = [key for key in keys if params.get(key) in (None, "")]
    if missing:
        raise BridgeOperationError(
            "INVALID_INPUT",
            f"Missing required parameter(s): {', '.join(missing)}",
            ["Provide " + ", ".join(f"`{key}`" for key in keys) + "."],
        )


def _text(params: Dict[str, Any], key: str, default: Optional[str] = None) -> str:
    value = params.get(key)
    if value in (None, "") and default is not None:
        return default
    if not isinstance(value, str):
        raise BridgeOperationError("INVALID_INPUT", f"{key} must be a string.")
    return value


def _project_path(params: Dict[str, Any]) -> str:
    _require(params, "projectPath")
    project = params["projectPath"]
    if not validate_path(project):
        raise BridgeOperationError("INVALID_PATH", "Invalid project path provided.")
    return str(project)


def _scene_path(value: Any, label: str = "scene path") -> str:
    if not validate_path(value) or not str(value).endswith(SCENE_SUFFIXES):
        raise BridgeOperationError(
            "INVALID_PATH", f"Invalid {label}. Must be relative, end with .tscn or .scn, and not contain \"..\"."
        )
    return str(value)


def _resource_path(value: Any, label: str, suffix: Optional[str] = None) -> str:
    ok = validate_path(value) and str(value).startswith("res://")
    if ok and suffix:
        ok = str(value).endswith(suffix)
    if not ok:
        rule = f"start with res://{f', end with {suffix}' if suffix else ''}"
        raise BridgeOperationError("INVALID_PATH", f"Invalid {label}. Must {rule} and not contain \"..\".")
    return str(value)


def _invoke(operation: str, op_params: Dict[str, Any], project: str, verb: str) -> OperationOutput:
    ctx = get_context()
    try:
        return run_operation(operation, op_params, project, locator=ctx.locator, config=ctx.config)
    except GodotRunError as exc:
        logger.error("Error running %s: %s", operation, exc.message)
        failure = classify_failure(exc)
        message = f"Failed to {verb}: {exc.message}"
        raise BridgeOperationError(exc.code, message, suggestions_for(message), details=failure.data) from exc


def _accept(outcome: OperationOutcome) -> OperationOutcome:
    if not outcome.ok:
        logger.error("%s", outcome.message)
        raise BridgeOperationError(outcome.category or "ERROR", outcome.message, outcome.suggestions)
    if not outcome.verified:
        logger.warning("%s", outcome.message)
    return outcome


def find_godot_projects(directory: Path, recursive: bool) -> List[Dict[str, str]]:
    projects: List[Dict[str, str]] = []

    def search(current: Path, depth: int) -> None:
        try:
            entries = sorted(current.iterdir(), key=lambda p: p.name)
        except OSError as exc:
            logger.error("Error searching directory %s: %s", current, exc)
            return
        for entry in entries:
            if entry.is_dir():
                if (entry / "project.godot").exists():
                    projects.append({"path": str(entry), "name": entry.name})
                    if not recursive:
                        continue
                if recursive and entry.name not in SKIPPED_DIRS:
                    search(entry, depth + 1)
            elif entry.is_file() and entry.name == "project.godot" and depth == 0:
                if not any(p["path"] == str(current) for p in projects):
                    projects.append({"path": str(current), "name": current.name})

    search(directory, 0)
    return projects


def project_structure(project: Path) -> Dict[str, List[Dict[str, str]]]:
    structure: Dict[str, List[Dict[str, str]]] = {"scenes": [], "scripts": []}

    def walk(current: Path) -> None:
        try:
            entries = sorted(current.iterdir(), key=lambda p: p.name)
        except OSError as exc:
            logger.error("Error reading directory %s: %s", current, exc)
            return
        for entry in entries:
            if entry.is_dir():
                if entry.name not in SKIPPED_DIRS:
                    walk(entry)
            elif entry.is_file():
                item = {"name": entry.name, "path": entry.relative_to(project).as_posix()}
                if entry.suffix in SCENE_SUFFIXES:
                    structure["scenes"].append(item)
                elif entry.suffix == ".gd":
                    structure["scripts"].append(item)

    walk(project)
    return structure


def _system_health(_: Dict[str, Any]) -> Dict[str, Any]:
    ctx = get_context()
    return {"ok": True, "godotVersion": godot_version(ctx.locator, ctx.config)}


def _system_version(_: Dict[str, Any]) -> Dict[str, Any]:
    ctx = get_context()
    try:
        version = godot_version(ctx.locator, ctx.config)
    except GodotRunError as exc:
        raise BridgeOperationError(exc.code, f"Failed to get Godot version: {exc.message}") from exc
    return {
        "harnessVersion": __version__,
        "version": version,
        "godotPath": ctx.locator.path,
        "message": f"Godot version: {version}",
    }


def _system_actions(_: Dict[str, Any]) -> Dict[str, Any]:
    return {"actions": ACTION_METHODS}


def _system_doctor(_: Dict[str, Any]) -> Dict[str, Any]:
    ctx = get_context()
    checks = []
    healthy = True
    try:
        path = ctx.locator.resolve()
        checks.append(
            {"name": "godot.path", "ok": not ctx.locator.fallback_used, "value": path, "fallback": ctx.locator.fallback_used}
        )
        if ctx.locator.fallback_used:
            healthy = False
    except GodotRunError as exc:
        healthy = False
        checks.append({"name": "godot.path", "ok": False, "error": exc.message})

    if healthy:
        try:
            checks.append({"name": "godot.binary", "ok": True, "value": godot_version(ctx.locator, ctx.config)})
        except GodotRunError as exc:
            healthy = False
            checks.append({"name": "godot.binary", "ok": False, "error": exc.message})

    script = Path(ctx.config.operations_script)
    script_ok = script.is_file()
    healthy = healthy and script_ok
    checks.append({"name": "operations.script", "ok": script_ok, "value": str(script)})
    checks.append({"name": "process.active", "ok": True, "value": ctx.processes.status()})
    return {"healthy": healthy, "checks": checks}


def _system_set_godot_path(params: Dict[str, Any]) -> Dict[str, Any]:
    _require(params, "path")
    ctx = get_context()
    if not ctx.locator.set_path(str(params["path"])):
        raise BridgeOperationError("INVALID_PATH", f"Not a valid Godot executable: {params['path']}")
    return {"godotPath": ctx.locator.path, "changed": True}


def _editor_launch(params: Dict[str, Any]) -> Dict[str, Any]:
    project = _project_path(params)
    handle = get_context().processes.launch(project, mode="editor")
    return {"message": "Godot editor launched successfully.", "pid": handle.pid, "mode": handle.mode}


def _project_run(params: Dict[str, Any]) -> Dict[str, Any]:
    project = _project_path(params)
    handle = get_context().processes.launch(project, mode="run", debug=bool(params.get("debug", False)))
    return {"message": f"Godot project started (PID: {handle.pid}).", "pid": handle.pid, "mode": handle.mode}


def _project_output(_: Dict[str, Any]) -> Dict[str, Any]:
    out = get_context().processes.poll()
    return {
        "message": f"Output lines: {len(out.stdout)}, Error lines: {len(out.stderr)}",
        "pid": out.pid,
        "output": out.stdout,
        "errors": out.stderr,
    }


def _project_stop(_: Dict[str, Any]) -> Dict[str, Any]:
    if not get_context().processes.stop():
        raise BridgeOperationError(
            "ERROR", "Failed to send stop signal to the Godot process. It might have already exited."
        )
    return {"message": "Stop signal sent to Godot project.", "stopped": True}


def _project_status(_: Dict[str, Any]) -> Dict[str, Any]:
    return get_context().processes.status()


def _project_list(params: Dict[str, Any]) -> Dict[str, Any]:
    _require(params, "directory")
    directory = params["directory"]
    if not validate_path(directory):
        raise BridgeOperationError("INVALID_PATH", "Invalid directory path provided.")
    root = Path(directory)
    if not root.is_dir():
        raise BridgeOperationError("NOT_FOUND", f"Directory not found: {directory}")
    projects = find_godot_projects(root, bool(params.get("recursive", False)))
    return {"message": f"Found {len(projects)} projects.", "projects": projects}


def _project_info(params: Dict[str, Any]) -> Dict[str, Any]:
    project = Path(_project_path(params))
    if not (project / "project.godot").exists():
        raise BridgeOperationError(
            "NOT_FOUND", f"Not a valid Godot project directory (missing project.godot): {project}"
        )
    structure = project_structure(project)
    return {
        "message": f"Found {len(structure['scenes'])} scenes and {len(structure['scripts'])} scripts.",
        "scenes": structure["scenes"],
        "scripts": structure["scripts"],
    }


def _scene_create(params: Dict[str, Any]) -> Dict[str, Any]:
    _require(params, "projectPath", "scenePath")
    project = _project_path(params)
    scene_path = _scene_path(params["scenePath"])
    op_params = {"scenePath": scene_path, "rootNodeType": params.get("rootNodeType") or "Node2D"}
    output = _invoke("create_scene", op_params, project, "create scene")
    outcome = _accept(
        classify_output(
            output.stdout,
            output.stderr,
            action="during scene creation",
            success_marker="Scene created successfully",
            success_message=lambda v: f"Scene created successfully at: {v or scene_path}",
            indeterminate_message=f"Scene creation process completed for {scene_path}. Verify the file exists.",
            extract=lambda s: text_after(s, "at: "),
        )
    )
    return {**outcome.payload(), "scenePath": outcome.value or scene_path, "changed": True}


def _scene_node_add(params: Dict[str, Any]) -> Dict[str, Any]:
    _require(params, "projectPath", "scenePath", "nodeType", "nodeName")
    project = _project_path(params)
    scene_path = _scene_path(params["scenePath"])
    parent = _text(params, "parentNodePath", "root")
    if ".." in parent:
        raise BridgeOperationError("INVALID_PATH", "Invalid parent node path.")
    node_type = _text(params, "nodeType")
    node_name = _text(params, "nodeName")
    if "/" in node_name or "\\" in node_name:
        raise BridgeOperationError("INVALID_INPUT", "Invalid node name.")
    op_params = {
        "scenePath": scene_path,
        "parentNodePath": parent,
        "nodeType": node_type,
        "nodeName": node_name,
    }
    output = _invoke("add_node", op_params, project, "add node")
    outcome = _accept(
        classify_output(
            output.stdout,
            output.stderr,
            action="while adding node",
            success_marker="Node added successfully",
            success_message=lambda v: (
                f"Node '{node_name}' added successfully{f' at path: {v}' if v else ''}. Remember to save the scene."
            ),
            indeterminate_message=f"Add node process completed for {node_name}. Verify and save the scene.",
            extract=lambda s: text_after(s, "at path: "),
        )
    )
    return {**outcome.payload(), "nodePath": outcome.value, "changed": True}


def _scene_sprite_load(params: Dict[str, Any]) -> Dict[str, Any]:
    _require(params, "projectPath", "scenePath", "nodePath", "texturePath")
    project = _project_path(params)
    scene_path = _scene_path(params["scenePath"])
    node_path = _text(params, "nodePath")
    if ".." in node_path:
        raise BridgeOperationError("INVALID_PATH", "Invalid node path.")
    texture_path = _resource_path(params["texturePath"], "texture path")
    op_params = {"scenePath": scene_path, "nodePath": node_path, "texturePath": texture_path}
    output = _invoke("load_sprite", op_params, project, "load sprite")
    outcome = _accept(
        classify_output(
            output.stdout,
            output.stderr,
            action="while loading sprite",
            success_marker="Sprite loaded successfully",
            success_message=lambda _: (
                f"Sprite texture '{texture_path}' loaded onto node '{node_path}' successfully. Remember to save the scene."
            ),
            indeterminate_message=f"Load sprite process completed for {node_path}. Verify and save the scene.",
        )
    )
    return {**outcome.payload(), "changed": True}


def _scene_mesh_library_export(params: Dict[str, Any]) -> Dict[str, Any]:
    _require(params, "projectPath", "scenePath", "meshItemNames", "outputPath")
    project = _project_path(params)
    scene_path = _scene_path(params["scenePath"])
    names = params["meshItemNames"]
    if not isinstance(names, list) or not names:
        raise BridgeOperationError("INVALID_INPUT", "meshItemNames must be a non-empty array of names.")
    if any(not isinstance(n, str) or not n or "/" in n or "\\" in n or ".." in n for n in names):
        raise BridgeOperationError("INVALID_INPUT", "Invalid mesh item name found in the array.")
    output_path = _resource_path(params["outputPath"], "output path", suffix=".meshlib")
    op_params = {"scenePath": scene_path, "meshItemNames": names, "outputPath": output_path}
    output = _invoke("export_mesh_library", op_params, project, "export mesh library")
    outcome = _accept(
        classify_output(
            output.stdout,
            output.stderr,
            action="during mesh library export",
            success_marker="MeshLibrary exported successfully",
            success_message=lambda v: f"MeshLibrary exported successfully to: {v or output_path}",
            indeterminate_message=f"MeshLibrary export process completed for {output_path}. Verify the file.",
            extract=lambda s: text_after(s, "to: "),
        )
    )
    return {**outcome.payload(), "outputPath": outcome.value or output_path, "changed": True}


def _scene_save(params: Dict[str, Any]) -> Dict[str, Any]:
    _require(params, "projectPath", "scenePath")
    project = _project_path(params)
    scene_path = _scene_path(params["scenePath"])
    op_params = {"scenePath": scene_path}
    new_path = params.get("newPath")
    if new_path:
        op_params["newPath"] = _scene_path(new_path, "new scene path for saving")
    target = new_path or scene_path
    output = _invoke("save_scene", op_params, project, "save scene")
    outcome = _accept(
        classify_output(
            output.stdout,
            output.stderr,
            action="while saving scene",
            success_marker="Scene saved successfully",
            success_message=lambda v: f"Scene saved successfully to: {v or target}",
            indeterminate_message=f"Save scene process completed for {target}.",
            extract=lambda s: text_after(s, "to: "),
        )
    )
    return {**outcome.payload(), "savedPath": outcome.value or target, "changed": True}


def _resource_uid(params: Dict[str, Any]) -> Dict[str, Any]:
    _require(params, "projectPath", "filePath")
    project = _project_path(params)
    file_path = _resource_path(params["filePath"], "file path")
    output = _invoke("get_uid", {"filePath": file_path}, project, "get UID")
    if "UID not found" in output.stderr:
        logger.debug("UID not found for path: %s", file_path)
        return {"message": f"UID not found for resource: {file_path}", "uid": None, "verified": True, "warnings": []}

    def extract(text: str) -> Optional[str]:
        match = UID_PATTERN.search(text)
        return match.group(1) if match else None

    outcome = _accept(
        classify_output(
            output.stdout,
            output.stderr,
            action="while getting UID",
            success_marker="UID: uid://",
            success_message=lambda v: f"UID for {file_path}: {v}",
            indeterminate_message=f"Could not extract UID for resource: {file_path}. It might not exist or have a UID.",
            extract=extract,
        )
    )
    return {**outcome.payload(), "uid": outcome.value}


def _resource_resave(params: Dict[str, Any]) -> Dict[str, Any]:
    project = _project_path(params)
    output = _invoke("resave_resources", {}, project, "resave resources")
    outcome = _accept(
        classify_output(
            output.stdout,
            output.stderr,
            action="during resource resave",
            success_marker="Resources resaved successfully",
            success_message=lambda _: "All project resources resaved successfully.",
            indeterminate_message="Resource resave process completed. Check logs for details.",
        )
    )
    return {**outcome.payload(), "changed": True}


OPERATIONS: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    "system.health": _system_health,
    "system.version": _system_version,
    "system.actions": _system_actions,
    "system.doctor": _system_doctor,
    "system.set_godot_path": _system_set_godot_path,
    "editor.launch": _editor_launch,
    "project.run": _project_run,
    "project.output": _project_output,
    "project.stop": _project_stop,
    "project.status": _project_status,
    "project.list": _project_list,
    "project.info": _project_info,
    "scene.create": _scene_create,
    "scene.node.add": _scene_node_add,
    "scene.sprite.load": _scene_sprite_load,
    "scene.mesh_library.export": _scene_mesh_library_export,
    "scene.save": _scene_save,
    "resource.uid": _resource_uid,
    "resource.resave": _resource_resave,
}

ACTION_METHODS = list(OPERATIONS)


def execute(method: str, params: Dict[str, Any]) -> Dict[str, Any]:
    operation = OPERATIONS.get(method)
    if operation is None:
        raise BridgeOperationError("INVALID_INPUT", f"Unknown method: {method}")
    if not isinstance(params, dict):
        raise BridgeOperationError("INVALID_INPUT", "params must be a JSON object")
    logger.debug("Handling %s with params %s", method, params)
    try:
        return operation(to_internal_form(params))
    except GodotRunError as exc:
        failure = classify_failure(exc)
        raise BridgeOperationError(failure.category or exc.code, failure.message, failure.suggestions, failure.data) from exc
    except KeyError as exc:
        raise BridgeOperationError("INVALID_INPUT", f"Missing required parameter: {exc}") from exc
