"""Capability-set contract between the pipeline and a renderer instance.

The pipeline only talks to renderers through these two protocols. A
transport adapter (headless browser, in-process reference solver, ...)
implements them and is handed to the worker pool as a launcher callable.
Implementations raise ``RemoteCallFailure`` for any failed or timed out call
and ``LoadTimeout`` when readiness is not signaled in time.
"""

from __future__ import annotations

from typing import Any, Callable, Protocol


class RendererSession(Protocol):
    def load_preset(self, preset: str, resolution: tuple[int, int]) -> None: ...

    def await_ready(self, timeout_s: float) -> None: ...

    def set_seed(self, seed: int) -> None: ...

    def set_option(self, key: str, value: Any) -> None: ...

    def recompute_derived_parameters(self) -> None: ...

    def reset(self) -> None: ...

    def step(self, n: int) -> None: ...

    def render(self) -> None: ...

    def capture_frame(self) -> bytes: ...

    def get_simulation_time(self) -> float: ...

    def get_options_snapshot(self) -> dict[str, Any]: ...

    def apply_localized_edit(
        self,
        x: float,
        y: float,
        field: str,
        value: float,
        radius: float,
        shape: str,
        mode: str,
    ) -> None: ...

    def clear(self) -> None:
        """Return the session to a neutral state with no preset loaded."""
        ...

    def close(self) -> None: ...


class RendererProcess(Protocol):
    def open_session(self) -> RendererSession: ...

    def terminate(self) -> None: ...


RendererLauncher = Callable[[], RendererProcess]
