from pathlib import Path
from typing import Callable, Iterator

import pytest

from harness_godot.bridge.config import BridgeConfig
from harness_godot.bridge.godot_runner import GodotLocator, GodotRunError
from harness_godot.bridge.processes import ProcessManager
from helpers import StaticValidator, wait_until

SLEEPER = """
time.sleep(30)
"""

CHATTY = """
for i in range(10):
    print(f"line{i}", flush=True)
sys.stderr.write("ERROR: missing texture\\n")
sys.stderr.flush()
time.sleep(30)
"""


@pytest.fixture
def manager_for(
    make_engine: Callable[..., str], bridge_config: Callable[..., BridgeConfig]
) -> Iterator[Callable[..., ProcessManager]]:
    managers = []

    def _manager(body: str, **overrides: object) -> ProcessManager:
        engine = make_engine(body)
        config = bridge_config(engine, **overrides)
        locator = GodotLocator(config, StaticValidator({engine: True}), platform="linux", environ={})
        manager = ProcessManager(locator, config)
        managers.append(manager)
        return manager

    yield _manager
    for manager in managers:
        manager.shutdown()


def test_polls_right_after_launch_return_empty_sequences(manager_for: Callable[..., ProcessManager]) -> None:
    manager = manager_for(SLEEPER)
    manager.launch("/proj")
    first = manager.poll()
    second = manager.poll()
    assert first.stdout == [] and first.stderr == []
    assert second.stdout == [] and second.stderr == []


def test_second_launch_is_rejected_until_stopped(manager_for: Callable[..., ProcessManager]) -> None:
    manager = manager_for(SLEEPER)
    handle = manager.launch("/proj")
    with pytest.raises(GodotRunError) as excinfo:
        manager.launch("/proj", mode="editor")
    assert excinfo.value.code == "ALREADY_RUNNING"
    assert manager.stop() is True
    assert manager.active is None
    replacement = manager.launch("/proj")
    assert replacement.pid != handle.pid


def test_output_streams_while_process_runs(manager_for: Callable[..., ProcessManager]) -> None:
    manager = manager_for(CHATTY)
    manager.launch("/proj")
    assert wait_until(lambda: len(manager.poll().stdout) == 10 and len(manager.poll().stderr) == 1)
    out = manager.poll()
    assert out.stdout[0] == "line0"
    assert out.stderr == ["ERROR: missing texture"]


def test_poll_returns_copies(manager_for: Callable[..., ProcessManager]) -> None:
    manager = manager_for(CHATTY)
    manager.launch("/proj")
    assert wait_until(lambda: len(manager.poll().stdout) == 10)
    snapshot = manager.poll()
    snapshot.stdout.clear()
    assert len(manager.poll().stdout) == 10


def test_buffers_are_bounded(manager_for: Callable[..., ProcessManager]) -> None:
    manager = manager_for(CHATTY, output_max_lines=3)
    manager.launch("/proj")
    assert wait_until(lambda: manager.poll().stdout[-1:] == ["line9"])
    assert manager.poll().stdout == ["line7", "line8", "line9"]


def test_natural_exit_clears_handle(manager_for: Callable[..., ProcessManager]) -> None:
    manager = manager_for('print("bye")')
    manager.launch("/proj")
    assert wait_until(lambda: manager.active is None)
    with pytest.raises(GodotRunError) as excinfo:
        manager.poll()
    assert excinfo.value.code == "NO_ACTIVE_PROCESS"
    manager.launch("/proj")


def test_stop_without_process_fails(manager_for: Callable[..., ProcessManager]) -> None:
    manager = manager_for(SLEEPER)
    with pytest.raises(GodotRunError) as excinfo:
        manager.stop()
    assert excinfo.value.code == "NO_ACTIVE_PROCESS"


def test_stop_escalates_to_kill(manager_for: Callable[..., ProcessManager]) -> None:
    body = """
    import signal
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
    print("ready", flush=True)
    time.sleep(30)
    """
    manager = manager_for(body, stop_grace_seconds=0.3)
    handle = manager.launch("/proj")
    assert wait_until(lambda: manager.poll().stdout == ["ready"])
    assert manager.stop() is True
    assert manager.active is None
    assert wait_until(lambda: handle.process.poll() is not None)


def test_commands_per_mode(manager_for: Callable[..., ProcessManager]) -> None:
    manager = manager_for(SLEEPER, engine_debug=False)
    assert manager.build_command("godot", "/p", "editor", False) == ["godot", "--editor", "--path", "/p"]
    assert manager.build_command("godot", "/p", "run", False) == ["godot", "--path", "/p"]
    assert manager.build_command("godot", "/p", "run", True) == ["godot", "--path", "/p", "--debug"]


def test_spawn_failure_leaves_slot_empty(bridge_config: Callable[..., BridgeConfig], tmp_path: Path) -> None:
    missing = str(tmp_path / "gone")
    config = bridge_config(missing)
    manager = ProcessManager(GodotLocator(config, StaticValidator({missing: True}), platform="linux", environ={}), config)
    with pytest.raises(GodotRunError) as excinfo:
        manager.launch("/proj")
    assert excinfo.value.code == "SPAWN_FAILURE"
    assert manager.active is None


def test_status_reports_active_process(manager_for: Callable[..., ProcessManager]) -> None:
    manager = manager_for(SLEEPER)
    assert manager.status() == {"running": False}
    handle = manager.launch("/proj", mode="editor")
    status = manager.status()
    assert status["running"] is True
    assert status["pid"] == handle.pid
    assert status["mode"] == "editor"
