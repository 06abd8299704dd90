import json
import logging
import os
import subprocess
import sys
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from harness_godot.bridge.config import BridgeConfig
from harness_godot.bridge.params import to_external_form

logger = logging.getLogger(__name__)

# Bare executable name resolved through PATH at spawn time.
PATH_SENTINEL = "godot"


class GodotRunError(Exception):
    def __init__(self, code: str, message: str, *, returncode: Optional[int] = None, stderr: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.returncode = returncode
        self.stderr = stderr


@dataclass(frozen=True)
class OperationOutput:
    stdout: str
    stderr: str


def normalize_candidate(path: str) -> str:
    """Resolve separators and relative segments against the working directory.

    Only the bare sentinel from the platform list stays unresolved; a configured
    ``./godot`` must not turn into a PATH lookup.
    """
    return os.path.abspath(os.path.normpath(path))


def platform_candidates(platform: str, environ: Mapping[str, str]) -> List[str]:
    candidates = [PATH_SENTINEL]
    home = environ.get("HOME")
    if platform == "darwin":
        candidates.extend(
            [
                "/Applications/Godot.app/Contents/MacOS/Godot",
                "/Applications/Godot_4.app/Contents/MacOS/Godot",
            ]
        )
        if home:
            candidates.extend(
                [
                    f"{home}/Applications/Godot.app/Contents/MacOS/Godot",
                    f"{home}/Applications/Godot_4.app/Contents/MacOS/Godot",
                ]
            )
    elif platform == "win32":
        candidates.extend(
            [
                r"C:\Program Files\Godot\Godot.exe",
                r"C:\Program Files (x86)\Godot\Godot.exe",
                r"C:\Program Files\Godot_4\Godot.exe",
                r"C:\Program Files (x86)\Godot_4\Godot.exe",
            ]
        )
        profile = environ.get("USERPROFILE")
        if profile:
            candidates.append(f"{profile}\\Godot\\Godot.exe")
    elif platform.startswith("linux"):
        candidates.extend(["/usr/bin/godot", "/usr/local/bin/godot", "/snap/bin/godot"])
        if home:
            candidates.append(f"{home}/.local/bin/godot")
    return candidates


def default_path(platform: str) -> str:
    if platform == "win32":
        return r"C:\Program Files\Godot\Godot.exe"
    if platform == "darwin":
        return "/Applications/Godot.app/Contents/MacOS/Godot"
    return "/usr/bin/godot"


class PathValidator:
    """Memoized check that a path points at a runnable Godot binary.

    Verdicts are never invalidated; fixing an installation needs a bridge restart.
    """

    def __init__(self, probe_timeout_seconds: float = 10.0):
        self.probe_timeout_seconds = probe_timeout_seconds
        self.probe_count = 0
        self._cache: Dict[str, bool] = {}
        self._lock = threading.Lock()

    def is_cached(self, path: str) -> bool:
        with self._lock:
            return path in self._cache

    def validate(self, path: str) -> bool:
        with self._lock:
            cached = self._cache.get(path)
            if cached is not None:
                return cached
            verdict = self._probe(path)
            self._cache[path] = verdict
            return verdict

    def _probe(self, path: str) -> bool:
        logger.debug("Validating Godot path: %s", path)
        if path != PATH_SENTINEL and not os.path.exists(path):
            logger.debug("Path does not exist: %s", path)
            return False
        self.probe_count += 1
        try:
            proc = subprocess.run(
                [path, "--version"],
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.probe_timeout_seconds,
                stdin=subprocess.DEVNULL,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.debug("Invalid Godot path: %s, error: %s", path, exc)
            return False
        if proc.returncode != 0:
            logger.debug("Invalid Godot path: %s, exit code %s", path, proc.returncode)
            return False
        logger.debug("Valid Godot path: %s", path)
        return True


class GodotLocator:
    def __init__(
        self,
        config: BridgeConfig,
        validator: Optional[PathValidator] = None,
        *,
        platform: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.config = config
        self.validator = validator or PathValidator(config.probe_timeout_seconds)
        self.platform = platform or sys.platform
        self.environ = environ if environ is not None else os.environ
        self.fallback_used = False
        self._path: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def path(self) -> Optional[str]:
        return self._path

    def candidates(self) -> List[str]:
        explicit: List[str] = []
        if self.config.godot_path:
            explicit.append(self.config.godot_path)
        env_path = self.environ.get("GODOT_PATH")
        if env_path:
            explicit.append(env_path)
        raw = [normalize_candidate(candidate) for candidate in explicit]
        for candidate in platform_candidates(self.platform, self.environ):
            raw.append(candidate if candidate == PATH_SENTINEL else normalize_candidate(candidate))
        ordered: List[str] = []
        for normalized in raw:
            if normalized not in ordered:
                ordered.append(normalized)
        return ordered

    def resolve(self) -> str:
        with self._lock:
            if self._path is not None:
                return self._path
            for candidate in self.candidates():
                if self.validator.validate(candidate):
                    self._path = candidate
                    self.fallback_used = False
                    logger.debug("Using Godot executable: %s", candidate)
                    return candidate

            logger.warning("Could not find Godot in common locations for %s", self.platform)
            logger.warning("Set GODOT_PATH=/path/to/godot or pass --godot-path to specify the executable.")
            if self.config.strict_path_validation:
                raise GodotRunError(
                    "NO_EXECUTABLE_FOUND",
                    "Could not find a valid Godot executable. Set GODOT_PATH or provide a valid path in config.",
                )
            fallback = default_path(self.platform)
            self._path = fallback
            self.fallback_used = True
            logger.warning("Using default path: %s, but this may not work.", fallback)
            logger.warning(
                "This fallback will be removed in a future version. "
                "Set HARNESS_GODOT_STRICT_PATH=1 to opt in to strict validation."
            )
            return fallback

    def set_path(self, candidate: str) -> bool:
        if not candidate:
            return False
        normalized = normalize_candidate(candidate)
        if not self.validator.validate(normalized):
            logger.debug("Failed to set invalid Godot path: %s", normalized)
            return False
        with self._lock:
            self._path = normalized
            self.fallback_used = False
        logger.debug("Godot path set to: %s", normalized)
        return True


def godot_version(locator: GodotLocator, config: BridgeConfig) -> str:
    godot = locator.resolve()
    try:
        proc = subprocess.run(
            [godot, "--version"],
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=config.probe_timeout_seconds,
            stdin=subprocess.DEVNULL,
        )
    except subprocess.TimeoutExpired as exc:
        raise GodotRunError("TIMEOUT", f"Godot --version timed out after {config.probe_timeout_seconds}s") from exc
    except OSError as exc:
        raise GodotRunError("SPAWN_FAILURE", f"Failed to start Godot process: {exc}") from exc
    if proc.returncode != 0:
        msg = (proc.stderr or proc.stdout or "unknown error").strip()
        raise GodotRunError(
            "NON_ZERO_EXIT",
            f"Godot process exited with code {proc.returncode}. Stderr: {msg}",
            returncode=proc.returncode,
            stderr=proc.stderr,
        )
    return (proc.stdout or "").strip() or "unknown"


def build_operation_command(
    godot: str, operation: str, params_json: str, project_path: str, config: BridgeConfig
) -> List[str]:
    cmd = [
        godot,
        "--headless",
        "--path",
        project_path,
        "--script",
        config.operations_script,
        operation,
        params_json,
    ]
    if config.engine_debug:
        cmd.append("--debug-godot")
    return cmd


def run_operation(
    operation: str,
    params: Dict[str, Any],
    project_path: str,
    *,
    locator: GodotLocator,
    config: BridgeConfig,
) -> OperationOutput:
    """Run one helper-script operation headless and wait for it to exit.

    Arguments go through argv without a shell, so project paths and the JSON
    blob never need quoting.
    """
    godot = locator.resolve()
    external = to_external_form(params)
    params_json = json.dumps(external)
    cmd = build_operation_command(godot, operation, params_json, str(project_path), config)
    logger.debug("Executing operation %s in project %s", operation, project_path)
    logger.debug("Spawning %s with args %s", godot, json.dumps(cmd[1:]))

    try:
        proc = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=config.operation_timeout_seconds,
            stdin=subprocess.DEVNULL,
        )
    except subprocess.TimeoutExpired as exc:
        raise GodotRunError(
            "TIMEOUT", f"Godot operation '{operation}' timed out after {config.operation_timeout_seconds}s"
        ) from exc
    except OSError as exc:
        logger.error("Failed to start Godot process: %s", exc)
        raise GodotRunError("SPAWN_FAILURE", f"Failed to start Godot process: {exc}") from exc

    stdout = proc.stdout or ""
    stderr = proc.stderr or ""
    for line in stdout.splitlines():
        logger.debug("Godot stdout: %s", line)
    for line in stderr.splitlines():
        logger.info("Godot stderr: %s", line)
    logger.debug("Godot process exited with code %s", proc.returncode)

    if proc.returncode != 0:
        raise GodotRunError(
            "NON_ZERO_EXIT",
            f"Godot process exited with code {proc.returncode}. Stderr: {stderr.strip() or 'N/A'}",
            returncode=proc.returncode,
            stderr=stderr,
        )
    return OperationOutput(stdout=stdout, stderr=stderr)
