import os
import sys
import textwrap
from pathlib import Path
from typing import Callable, Iterator

import pytest

from harness_godot.bridge import operations
from harness_godot.bridge.config import BridgeConfig

STUB_PREAMBLE = """\
import json
import os
import sys
import time

if sys.argv[1:] == ["--version"]:
    print("4.2.2.stable.official")
    sys.exit(0)
"""


@pytest.fixture
def make_engine(tmp_path: Path) -> Callable[..., str]:
    """Write an executable Python script that stands in for the Godot binary."""
    if os.name == "nt":
        pytest.skip("stub engines rely on shebang scripts")
    counter = {"n": 0}

    def _make(body: str, *, answer_version: bool = True) -> str:
        counter["n"] += 1
        path = tmp_path / f"godot-stub-{counter['n']}"
        preamble = STUB_PREAMBLE if answer_version else "import json\nimport os\nimport sys\nimport time\n"
        path.write_text(f"#!{sys.executable}\n{preamble}{textwrap.dedent(body)}\n", encoding="utf-8")
        path.chmod(0o755)
        return str(path)

    return _make


@pytest.fixture
def bridge_config(tmp_path: Path) -> Callable[..., BridgeConfig]:
    def _config(engine: str, **overrides: object) -> BridgeConfig:
        values = {
            "godot_path": engine,
            "strict_path_validation": True,
            "operations_script": str(tmp_path / "godot_operations.gd"),
            "operation_timeout_seconds": 20.0,
            "probe_timeout_seconds": 10.0,
            "stop_grace_seconds": 1.0,
        }
        values.update(overrides)
        return BridgeConfig(**values)

    return _config


@pytest.fixture
def bridge(make_engine: Callable[..., str], bridge_config: Callable[..., BridgeConfig]) -> Iterator[Callable[..., operations.BridgeContext]]:
    def _bridge(body: str, **overrides: object) -> operations.BridgeContext:
        return operations.configure(bridge_config(make_engine(body), **overrides))

    yield _bridge
    operations.shutdown()

