from __future__ import annotations

import io
import threading
from typing import Any, Callable

import pytest
from PIL import Image

from datagen_engine.errors import LoadTimeout


def png_bytes(width: int = 4, height: int = 4) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), (12, 34, 56)).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeSession:
    """Scriptable control-API session that records every call it receives."""

    def __init__(self, process: "FakeProcess", dt: float = 0.5):
        self.process = process
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.options: dict[str, Any] = {}
        self.time = 0.0
        self.dt = dt
        self.ready = True
        self.failures: dict[str, Exception] = {}
        self.clear_error: Exception | None = None
        self.closed = False
        self.frame = png_bytes()

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        error = self.failures.get(name)
        if error is not None:
            raise error

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def load_preset(self, preset: str, resolution: tuple[int, int]) -> None:
        self._record("load_preset", preset, resolution)
        self.options = {"numSpecies": 2, "kineticParams": "a=1;b=2", "dt": self.dt}
        self.time = 0.0

    def await_ready(self, timeout_s: float) -> None:
        self._record("await_ready", timeout_s)
        if not self.ready:
            raise LoadTimeout("never ready")

    def set_seed(self, seed: int) -> None:
        self._record("set_seed", seed)

    def set_option(self, key: str, value: Any) -> None:
        self._record("set_option", key, value)
        self.options[key] = value

    def recompute_derived_parameters(self) -> None:
        self._record("recompute_derived_parameters")

    def reset(self) -> None:
        self._record("reset")
        self.time = 0.0

    def step(self, n: int) -> None:
        self._record("step", n)
        self.time += n * self.dt

    def render(self) -> None:
        self._record("render")

    def capture_frame(self) -> bytes:
        self._record("capture_frame")
        return self.frame

    def get_simulation_time(self) -> float:
        self._record("get_simulation_time")
        return self.time

    def get_options_snapshot(self) -> dict[str, Any]:
        self._record("get_options_snapshot")
        return dict(self.options)

    def apply_localized_edit(self, x, y, field, value, radius, shape, mode) -> None:
        self._record("apply_localized_edit", x, y, field, value, radius, shape, mode)

    def clear(self) -> None:
        self.calls.append(("clear", ()))
        if self.clear_error is not None:
            raise self.clear_error
        self.options = {}

    def close(self) -> None:
        self.closed = True


class FakeProcess:
    def __init__(self, index: int, fail_open: bool = False):
        self.index = index
        self.fail_open = fail_open
        self.sessions: list[FakeSession] = []
        self.terminated = False

    def open_session(self) -> FakeSession:
        if self.fail_open:
            raise RuntimeError("cannot open session")
        session = FakeSession(self)
        self.sessions.append(session)
        return session

    def terminate(self) -> None:
        self.terminated = True


class FakeLauncher:
    def __init__(self, fail_on: set[int] | None = None):
        self.fail_on = fail_on or set()
        self.processes: list[FakeProcess] = []
        self.attempts = 0
        self._lock = threading.Lock()

    def __call__(self) -> FakeProcess:
        with self._lock:
            index = self.attempts
            self.attempts += 1
            if index in self.fail_on:
                raise RuntimeError(f"launch {index} failed")
            process = FakeProcess(index)
            self.processes.append(process)
            return process

    @property
    def spawn_count(self) -> int:
        return len(self.processes)


@pytest.fixture
def fake_launcher() -> Callable[..., FakeLauncher]:
    def _build(fail_on: set[int] | None = None) -> FakeLauncher:
        return FakeLauncher(fail_on)

    return _build
