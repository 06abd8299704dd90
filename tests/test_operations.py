from pathlib import Path
from typing import Callable

import pytest

from harness_godot.bridge.operations import ACTION_METHODS, BridgeContext, BridgeOperationError, execute
from helpers import wait_until

BridgeFactory = Callable[..., BridgeContext]


def test_create_scene_extracts_created_path(bridge: BridgeFactory) -> None:
    bridge(
        """
        assert sys.argv[6] == "create_scene"
        params = json.loads(sys.argv[7])
        assert params == {"scene_path": "a/b.tscn", "root_node_type": "Node2D"}
        print("Scene created successfully at: /proj/a/b.tscn")
        """
    )
    result = execute("scene.create", {"projectPath": "/proj", "scenePath": "a/b.tscn", "rootNodeType": "Node2D"})
    assert result["scenePath"] == "/proj/a/b.tscn"
    assert result["verified"] is True
    assert result["message"] == "Scene created successfully at: /proj/a/b.tscn"


def test_snake_case_parameters_are_accepted(bridge: BridgeFactory) -> None:
    bridge('print("Scene created successfully at: res://x.tscn")')
    result = execute("scene.create", {"project_path": "/proj", "scene_path": "x.tscn"})
    assert result["scenePath"] == "res://x.tscn"


def test_stderr_error_with_zero_exit_is_a_failure(bridge: BridgeFactory) -> None:
    bridge(
        """
        print("Scene created successfully at: /proj/a/b.tscn")
        sys.stderr.write("ERROR: disk full\\n")
        """
    )
    with pytest.raises(BridgeOperationError) as excinfo:
        execute("scene.create", {"projectPath": "/proj", "scenePath": "a/b.tscn"})
    assert excinfo.value.code == "ENGINE_REPORTED_ERROR"
    assert "disk full" in excinfo.value.message


def test_non_zero_exit_is_reported_with_suggestions(bridge: BridgeFactory) -> None:
    bridge(
        """
        sys.stderr.write("Parse failure in script\\n")
        sys.exit(4)
        """
    )
    with pytest.raises(BridgeOperationError) as excinfo:
        execute("scene.save", {"projectPath": "/proj", "scenePath": "main.tscn"})
    err = excinfo.value
    assert err.code == "NON_ZERO_EXIT"
    assert err.message.startswith("Failed to save scene: Godot process exited with code 4")
    assert err.details["stderr"] == "Parse failure in script\n"
    assert err.suggestions


def test_missing_marker_returns_unverified_success(bridge: BridgeFactory) -> None:
    bridge('print("nothing useful")')
    result = execute("scene.save", {"projectPath": "/proj", "scenePath": "main.tscn", "newPath": "copy.tscn"})
    assert result["verified"] is False
    assert result["savedPath"] == "copy.tscn"


@pytest.mark.parametrize(
    "method,params,code",
    [
        ("scene.create", {"projectPath": "/proj"}, "INVALID_INPUT"),
        ("scene.create", {"projectPath": "/proj/../etc", "scenePath": "a.tscn"}, "INVALID_PATH"),
        ("scene.create", {"projectPath": "/proj", "scenePath": "a.txt"}, "INVALID_PATH"),
        ("scene.node.add", {"projectPath": "/p", "scenePath": "a.tscn", "nodeType": "Node", "nodeName": "a/b"}, "INVALID_INPUT"),
        ("scene.node.add", {"projectPath": "/p", "scenePath": "a.tscn", "parentNodePath": 5, "nodeType": "Node", "nodeName": "N"}, "INVALID_INPUT"),
        ("scene.node.add", {"projectPath": "/p", "scenePath": "a.tscn", "nodeType": 7, "nodeName": "N"}, "INVALID_INPUT"),
        ("scene.sprite.load", {"projectPath": "/p", "scenePath": "a.tscn", "nodePath": ["root"], "texturePath": "res://icon.png"}, "INVALID_INPUT"),
        ("scene.sprite.load", {"projectPath": "/p", "scenePath": "a.tscn", "nodePath": "root/S", "texturePath": "icon.png"}, "INVALID_PATH"),
        ("scene.mesh_library.export", {"projectPath": "/p", "scenePath": "a.tscn", "meshItemNames": [], "outputPath": "res://x.meshlib"}, "INVALID_INPUT"),
        ("scene.mesh_library.export", {"projectPath": "/p", "scenePath": "a.tscn", "meshItemNames": ["A"], "outputPath": "res://x.tres"}, "INVALID_PATH"),
        ("resource.uid", {"projectPath": "/p", "filePath": "res://../secret"}, "INVALID_PATH"),
        ("nope.method", {}, "INVALID_INPUT"),
    ],
)
def test_input_validation(bridge: BridgeFactory, method: str, params: dict, code: str) -> None:
    bridge("sys.exit(99)")
    with pytest.raises(BridgeOperationError) as excinfo:
        execute(method, params)
    assert excinfo.value.code == code


def test_add_node_reports_node_path(bridge: BridgeFactory) -> None:
    bridge(
        """
        params = json.loads(sys.argv[7])
        assert params["parent_node_path"] == "root"
        print("Node added successfully at path: Player")
        """
    )
    result = execute(
        "scene.node.add", {"projectPath": "/p", "scenePath": "a.tscn", "nodeType": "Sprite2D", "nodeName": "Player"}
    )
    assert result["nodePath"] == "Player"
    assert "Remember to save the scene" in result["message"]


def test_uid_lookup(bridge: BridgeFactory) -> None:
    bridge('print("UID: uid://c8x7y6z5")')
    result = execute("resource.uid", {"projectPath": "/p", "filePath": "res://icon.svg"})
    assert result["uid"] == "uid://c8x7y6z5"


def test_uid_not_found_is_not_an_error(bridge: BridgeFactory) -> None:
    bridge('sys.stderr.write("ERROR: UID not found for res://icon.svg\\n")')
    result = execute("resource.uid", {"projectPath": "/p", "filePath": "res://icon.svg"})
    assert result["uid"] is None


def test_mesh_library_and_resave(bridge: BridgeFactory) -> None:
    bridge(
        """
        if sys.argv[6] == "export_mesh_library":
            assert json.loads(sys.argv[7])["mesh_item_names"] == ["Wall", "Floor"]
            print("MeshLibrary exported successfully to: res://tiles.meshlib")
        else:
            print("Resources resaved successfully")
        """
    )
    exported = execute(
        "scene.mesh_library.export",
        {"projectPath": "/p", "scenePath": "kit.tscn", "meshItemNames": ["Wall", "Floor"], "outputPath": "res://tiles.meshlib"},
    )
    assert exported["outputPath"] == "res://tiles.meshlib"
    resaved = execute("resource.resave", {"projectPath": "/p"})
    assert resaved["message"] == "All project resources resaved successfully."


def test_run_output_and_stop(bridge: BridgeFactory) -> None:
    bridge(
        """
        print("hello from game", flush=True)
        time.sleep(30)
        """
    )
    started = execute("project.run", {"projectPath": "/p"})
    assert "PID" in started["message"]
    with pytest.raises(BridgeOperationError) as excinfo:
        execute("editor.launch", {"projectPath": "/p"})
    assert excinfo.value.code == "ALREADY_RUNNING"
    assert wait_until(lambda: execute("project.output", {})["output"] == ["hello from game"])
    assert execute("project.stop", {})["stopped"] is True
    with pytest.raises(BridgeOperationError) as excinfo:
        execute("project.output", {})
    assert excinfo.value.code == "NO_ACTIVE_PROCESS"
    assert excinfo.value.suggestions


def test_project_list_and_info(bridge: BridgeFactory, tmp_path: Path) -> None:
    bridge("")
    root = tmp_path / "workspace"
    game = root / "game"
    (game / "scenes").mkdir(parents=True)
    (game / ".godot").mkdir()
    (game / "project.godot").write_text("[application]\n", encoding="utf-8")
    (game / "scenes" / "main.tscn").write_text("", encoding="utf-8")
    (game / "player.gd").write_text("", encoding="utf-8")
    (game / ".godot" / "cached.tscn").write_text("", encoding="utf-8")
    nested = root / "tools" / "editor_plugin"
    nested.mkdir(parents=True)
    (nested / "project.godot").write_text("", encoding="utf-8")

    flat = execute("project.list", {"directory": str(root)})
    assert flat["projects"] == [{"path": str(game), "name": "game"}]
    deep = execute("project.list", {"directory": str(root), "recursive": True})
    assert {p["name"] for p in deep["projects"]} == {"game", "editor_plugin"}

    info = execute("project.info", {"projectPath": str(game)})
    assert info["scenes"] == [{"name": "main.tscn", "path": "scenes/main.tscn"}]
    assert info["scripts"] == [{"name": "player.gd", "path": "player.gd"}]

    with pytest.raises(BridgeOperationError) as excinfo:
        execute("project.info", {"projectPath": str(root)})
    assert excinfo.value.code == "NOT_FOUND"


def test_system_methods(bridge: BridgeFactory, tmp_path: Path) -> None:
    context = bridge("")
    assert "scene.create" in execute("system.actions", {})["actions"]
    assert set(ACTION_METHODS) >= {"project.run", "project.stop", "resource.resave"}
    version = execute("system.version", {})
    assert version["version"] == "4.2.2.stable.official"
    assert version["godotPath"] == context.config.godot_path
    with pytest.raises(BridgeOperationError) as excinfo:
        execute("system.set_godot_path", {"path": str(tmp_path / "missing")})
    assert excinfo.value.code == "INVALID_PATH"
    assert context.locator.path == context.config.godot_path
