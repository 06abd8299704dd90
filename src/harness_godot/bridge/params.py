import re
from typing import Any, Dict

# snake_case keys used by godot_operations.gd -> camelCase keys used by handlers
PARAMETER_MAPPINGS: Dict[str, str] = {
    "project_path": "projectPath",
    "scene_path": "scenePath",
    "root_node_type": "rootNodeType",
    "parent_node_path": "parentNodePath",
    "node_type": "nodeType",
    "node_name": "nodeName",
    "texture_path": "texturePath",
    "node_path": "nodePath",
    "output_path": "outputPath",
    "mesh_item_names": "meshItemNames",
    "new_path": "newPath",
    "file_path": "filePath",
    "directory": "directory",
    "recursive": "recursive",
    "scene": "scene",
}

REVERSE_PARAMETER_MAPPINGS: Dict[str, str] = {camel: snake for snake, camel in PARAMETER_MAPPINGS.items()}

_UPPER = re.compile(r"[A-Z]")


def _internal_key(key: str) -> str:
    if "_" in key and key in PARAMETER_MAPPINGS:
        return PARAMETER_MAPPINGS[key]
    return key


def _external_key(key: str) -> str:
    mapped = REVERSE_PARAMETER_MAPPINGS.get(key)
    if mapped is not None:
        return mapped
    return _UPPER.sub(lambda m: "_" + m.group(0).lower(), key)


def to_internal_form(params: Any) -> Any:
    """Rename snake_case keys to their camelCase equivalents, recursing into nested dicts.

    Lists are treated as opaque values. Keys missing from the table pass through.
    """
    if not isinstance(params, dict):
        return params
    return {_internal_key(str(k)): to_internal_form(v) for k, v in params.items()}


def to_external_form(params: Any) -> Any:
    """Rename camelCase keys to snake_case for the helper script."""
    if not isinstance(params, dict):
        return params
    return {_external_key(str(k)): to_external_form(v) for k, v in params.items()}
