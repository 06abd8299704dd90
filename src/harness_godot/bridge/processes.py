import logging
import subprocess
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import IO, Any, Deque, Dict, List, Optional

from harness_godot.bridge.config import BridgeConfig
from harness_godot.bridge.godot_runner import GodotLocator, GodotRunError

logger = logging.getLogger(__name__)

PROCESS_MODES = ("editor", "run")


@dataclass
class ActiveProcess:
    pid: int
    mode: str
    project_path: str
    process: subprocess.Popen
    stdout: Deque[str]
    stderr: Deque[str]
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    lock: threading.Lock = field(default_factory=threading.Lock)

    def append(self, sink: Deque[str], line: str) -> None:
        with self.lock:
            sink.append(line)

    def snapshot(self) -> "ProcessOutput":
        with self.lock:
            return ProcessOutput(pid=self.pid, mode=self.mode, stdout=list(self.stdout), stderr=list(self.stderr))


@dataclass(frozen=True)
class ProcessOutput:
    pid: int
    mode: str
    stdout: List[str]
    stderr: List[str]


class ProcessSlot:
    """Holds at most one ActiveProcess.

    ``claim`` only succeeds on an empty slot, and ``release`` with a handle only
    clears the slot while it still holds that same handle.
    """

    def __init__(self) -> None:
        self._active: Optional[ActiveProcess] = None
        self._lock = threading.Lock()

    def get(self) -> Optional[ActiveProcess]:
        with self._lock:
            return self._active

    def claim(self, handle: ActiveProcess) -> bool:
        with self._lock:
            if self._active is not None:
                return False
            self._active = handle
            return True

    def release(self, handle: Optional[ActiveProcess] = None) -> Optional[ActiveProcess]:
        with self._lock:
            current = self._active
            if current is None:
                return None
            if handle is not None and current is not handle:
                return None
            self._active = None
            return current


class ProcessManager:
    def __init__(self, locator: GodotLocator, config: BridgeConfig):
        self.locator = locator
        self.config = config
        self.slot = ProcessSlot()
        self._launch_lock = threading.Lock()

    @property
    def active(self) -> Optional[ActiveProcess]:
        return self.slot.get()

    def build_command(self, godot: str, project_path: str, mode: str, debug: bool) -> List[str]:
        if mode == "editor":
            return [godot, "--editor", "--path", project_path]
        cmd = [godot, "--path", project_path]
        if debug or self.config.engine_debug:
            cmd.append("--debug")
        return cmd

    def launch(self, project_path: str, *, mode: str = "run", debug: bool = False) -> ActiveProcess:
        if mode not in PROCESS_MODES:
            raise ValueError(f"Unsupported process mode: {mode}")
        with self._launch_lock:
            if self.slot.get() is not None:
                raise GodotRunError(
                    "ALREADY_RUNNING",
                    "Another Godot process (editor or project) is already running. Stop it first using project.stop.",
                )
            godot = self.locator.resolve()
            cmd = self.build_command(godot, str(project_path), mode, debug)
            logger.debug("Spawning Godot %s process: %s", mode, cmd)
            try:
                process = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    bufsize=1,
                )
            except OSError as exc:
                logger.error("Failed to start Godot %s process: %s", mode, exc)
                raise GodotRunError("SPAWN_FAILURE", f"Failed to start Godot process: {exc}") from exc

            limit = self.config.output_max_lines
            handle = ActiveProcess(
                pid=process.pid,
                mode=mode,
                project_path=str(project_path),
                process=process,
                stdout=deque(maxlen=limit),
                stderr=deque(maxlen=limit),
            )
            self.slot.claim(handle)

        readers = [
            self._start_thread(self._pump, handle, process.stdout, handle.stdout, "stdout"),
            self._start_thread(self._pump, handle, process.stderr, handle.stderr, "stderr"),
        ]
        self._start_thread(self._watch, handle, readers)
        logger.info("Godot %s process started (PID: %s)", mode, process.pid)
        return handle

    def poll(self) -> ProcessOutput:
        handle = self.slot.get()
        if handle is None:
            raise GodotRunError("NO_ACTIVE_PROCESS", "No active Godot project is running.")
        return handle.snapshot()

    def stop(self) -> bool:
        """Send SIGTERM to the active process and forget it.

        Returns False when the process had already exited. Termination is not
        awaited; a kill follows after ``stop_grace_seconds`` if it is still alive.
        """
        handle = self.slot.release()
        if handle is None:
            raise GodotRunError("NO_ACTIVE_PROCESS", "No active Godot project is running.")
        logger.debug("Attempting to stop process with PID: %s", handle.pid)
        if handle.process.poll() is not None:
            logger.debug("Process %s had already exited", handle.pid)
            return False
        try:
            handle.process.terminate()
        except OSError as exc:
            logger.debug("Failed to send stop signal to %s: %s", handle.pid, exc)
            return False
        timer = threading.Timer(self.config.stop_grace_seconds, self._kill_if_alive, args=(handle,))
        timer.daemon = True
        timer.start()
        return True

    def shutdown(self) -> None:
        handle = self.slot.release()
        if handle is None:
            return
        logger.debug("Killing active Godot process %s", handle.pid)
        if handle.process.poll() is not None:
            return
        handle.process.terminate()
        try:
            handle.process.wait(timeout=self.config.stop_grace_seconds)
        except subprocess.TimeoutExpired:
            handle.process.kill()

    def status(self) -> Dict[str, Any]:
        handle = self.slot.get()
        if handle is None:
            return {"running": False}
        with handle.lock:
            return {
                "running": True,
                "pid": handle.pid,
                "mode": handle.mode,
                "projectPath": handle.project_path,
                "startedAt": handle.started_at,
                "outputLines": len(handle.stdout),
                "errorLines": len(handle.stderr),
            }

    @staticmethod
    def _start_thread(target: Any, *args: Any) -> threading.Thread:
        thread = threading.Thread(target=target, args=args, daemon=True)
        thread.start()
        return thread

    @staticmethod
    def _pump(handle: ActiveProcess, stream: Optional[IO[str]], sink: Deque[str], label: str) -> None:
        if stream is None:
            return
        try:
            for line in iter(stream.readline, ""):
                text = line.rstrip("\r\n")
                handle.append(sink, text)
                if label == "stderr":
                    logger.info("Project stderr: %s", text)
                else:
                    logger.debug("Project stdout: %s", text)
        except ValueError:
            # stream closed underneath us during shutdown
            pass
        finally:
            stream.close()

    def _watch(self, handle: ActiveProcess, readers: List[threading.Thread]) -> None:
        code = handle.process.wait()
        for reader in readers:
            reader.join(timeout=1.0)
        logger.debug("Godot %s process %s exited with code %s", handle.mode, handle.pid, code)
        self.slot.release(handle)

    def _kill_if_alive(self, handle: ActiveProcess) -> None:
        if handle.process.poll() is None:
            logger.warning("Godot process %s ignored SIGTERM; sending SIGKILL", handle.pid)
            handle.process.kill()
