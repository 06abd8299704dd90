"""Turn raw Godot output and runner failures into structured outcomes.

Detection is substring based: a case-insensitive ``error`` in stderr means
failure, and each helper-script operation prints a known marker on success.
Godot may write diagnostics to stderr and still exit 0, so stderr is checked
before the exit status is trusted.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from harness_godot.bridge.godot_runner import GodotRunError

_ERROR_LINE = re.compile(r"ERROR: (.+)")

SUGGESTIONS: List[Tuple[Tuple[str, ...], List[str]]] = [
    (
        ("Could not find a valid Godot executable", "Godot executable path not found"),
        [
            "Ensure Godot is installed and accessible.",
            "Set the GODOT_PATH environment variable to the full path of the Godot executable.",
            "Provide the correct --godot-path (or HARNESS_GODOT_BIN) in the bridge configuration.",
        ],
    ),
    (
        ("Invalid project path", "ENOENT", "No such file or directory", "missing project.godot"),
        [
            "Verify the provided projectPath is correct and exists.",
            "Ensure the bridge has permissions to access the project directory.",
        ],
    ),
    (
        ("Failed to parse JSON",),
        [
            "Check the format of the parameters being sent to the Godot script.",
            "Ensure proper escaping of arguments passed via the command line.",
        ],
    ),
    (
        ("Godot process exited with code",),
        [
            "Check the Godot stderr output in the bridge logs for specific errors from the engine or script.",
            "Ensure the godot_operations.gd script is correctly placed and has no syntax errors.",
            "Verify file paths and permissions within the Godot project.",
        ],
    ),
    (
        ("timed out",),
        [
            "Check whether the project opens cleanly in the Godot editor.",
            "Raise HARNESS_GODOT_OPERATION_TIMEOUT for long-running operations.",
        ],
    ),
    (
        ("already running",),
        ["Stop the running process with project.stop before launching another."],
    ),
    (
        ("No active Godot project",),
        ["Start a project with project.run or editor.launch first."],
    ),
]


@dataclass
class OperationOutcome:
    ok: bool
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    category: Optional[str] = None
    suggestions: List[str] = field(default_factory=list)
    verified: bool = True
    warnings: List[str] = field(default_factory=list)
    value: Optional[str] = None

    def payload(self) -> Dict[str, Any]:
        out = dict(self.data)
        out["message"] = self.message
        out["verified"] = self.verified
        out["warnings"] = list(self.warnings)
        return out


def suggestions_for(message: str) -> List[str]:
    for needles, suggestions in SUGGESTIONS:
        if any(needle in message for needle in needles):
            return list(suggestions)
    return []


def find_error_detail(stderr: str) -> Optional[str]:
    """Return the first error detail in stderr, or None when it reports nothing."""
    if not stderr or "error" not in stderr.lower():
        return None
    match = _ERROR_LINE.search(stderr)
    if match:
        return match.group(1).strip()
    for line in stderr.splitlines():
        if "error" in line.lower():
            return line.strip()
    return stderr.strip()


def text_after(stdout: str, delimiter: str) -> Optional[str]:
    if delimiter not in stdout:
        return None
    lines = stdout.split(delimiter, 1)[1].splitlines()
    value = lines[0].strip() if lines else ""
    return value or None


def classify_output(
    stdout: str,
    stderr: str,
    *,
    action: str,
    success_marker: str,
    success_message: Callable[[Optional[str]], str],
    indeterminate_message: str,
    extract: Optional[Callable[[str], Optional[str]]] = None,
) -> OperationOutcome:
    detail = find_error_detail(stderr)
    if detail is not None:
        message = f"Godot reported an error {action}: {detail}"
        return OperationOutcome(
            ok=False,
            message=message,
            category="ENGINE_REPORTED_ERROR",
            suggestions=suggestions_for(message),
        )

    if success_marker in stdout:
        value = extract(stdout[stdout.index(success_marker) :]) if extract else None
        return OperationOutcome(ok=True, message=success_message(value), value=value)

    return OperationOutcome(
        ok=True,
        message=indeterminate_message,
        verified=False,
        warnings=["Success marker not found in Godot output; verify the result externally."],
    )


def classify_failure(exc: BaseException) -> OperationOutcome:
    data: Dict[str, Any] = {}
    if isinstance(exc, GodotRunError):
        category = exc.code
        message = exc.message
        if exc.returncode is not None:
            data = {"exitCode": exc.returncode, "stderr": exc.stderr or ""}
    elif isinstance(exc, json.JSONDecodeError):
        category = "PARSE_FAILURE"
        message = f"Failed to parse JSON: {exc}"
    else:
        category = "ERROR"
        message = str(exc)
    return OperationOutcome(
        ok=False, message=message, data=data, category=category, suggestions=suggestions_for(message)
    )
