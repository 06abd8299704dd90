import time
from typing import Callable, Dict, List

from harness_godot.bridge.godot_runner import PathValidator


def wait_until(predicate: Callable[[], bool], timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


class StaticValidator(PathValidator):
    """PathValidator whose probe answers from a fixed table instead of spawning."""

    def __init__(self, verdicts: Dict[str, bool]):
        super().__init__()
        self.verdicts = verdicts
        self.calls: List[str] = []

    def _probe(self, path: str) -> bool:
        self.calls.append(path)
        return self.verdicts.get(path, False)
