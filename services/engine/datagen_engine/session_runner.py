from __future__ import annotations

import io
import logging
import time
from collections import deque
from typing import Any, Callable

from PIL import Image, UnidentifiedImageError

from .artifact_store import ArtifactStore
from .errors import DatagenError, RemoteCallFailure
from .models import FrameAnnotation, Intervention, JobSpec, SimulationMetadata
from .modules.metadata_snapshot import build_simulation_metadata
from .renderer import RendererSession

LOGGER = logging.getLogger("datagen.runner")


def describe_intervention(intervention: Intervention) -> str:
    p = intervention.params
    return (
        f"{p.shape} brush {p.action} {p.species}={p.value:.3g} "
        f"at ({p.x:.2f}, {p.y:.2f}) radius {p.radius:.3g}"
    )


class SessionRunner:
    """Runs one job against one exclusively leased session.

    The protocol is strictly sequential: load, seed, options, reset, then one
    apply/step/render/capture/annotate cycle per frame, then metadata. Any
    failure aborts the run and propagates; retrying belongs to the caller.
    """

    def __init__(
        self,
        session: RendererSession,
        store: ArtifactStore,
        *,
        ready_timeout_s: float = 30.0,
        progress_every: int = 100,
    ):
        self._session = session
        self._store = store
        self._ready_timeout_s = ready_timeout_s
        self._progress_every = max(1, progress_every)

    def run(self, spec: JobSpec) -> SimulationMetadata:
        LOGGER.info("Starting simulation %s (preset: %s)", spec.id, spec.preset)
        self._store.prepare_job(spec)

        session = self._session
        self._call("load_preset", session.load_preset, spec.preset, spec.resolution)
        self._call("await_ready", session.await_ready, self._ready_timeout_s)

        # The seed must land before anything that draws random numbers.
        if spec.randomSeed is not None:
            self._call("set_seed", session.set_seed, spec.randomSeed)

        for key, value in spec.options.items():
            self._call("set_option", session.set_option, key, value)
        self._call("recompute_derived_parameters", session.recompute_derived_parameters)
        self._call("reset", session.reset)

        pending = deque(spec.ordered_interventions())
        realized: list[Intervention] = []
        annotations: list[FrameAnnotation] = []
        captured_size: tuple[int, int] | None = None
        started = time.monotonic()

        for frame in range(spec.totalFrames):
            applied: list[Intervention] = []
            while pending and pending[0].frame == frame:
                intervention = pending.popleft()
                self._apply_intervention(intervention)
                sim_time = self._call("get_simulation_time", session.get_simulation_time)
                applied.append(intervention.model_copy(update={"simulationTime": float(sim_time)}))
            realized.extend(applied)

            self._call("step", session.step, spec.timestepsPerFrame)
            self._call("render", session.render)
            data = self._call("capture_frame", session.capture_frame)
            size = self._frame_size(data, frame)
            if captured_size is None:
                captured_size = size
            self._store.write_frame(spec, frame, data)

            sim_time = self._call("get_simulation_time", session.get_simulation_time)
            annotations.append(self._annotate(frame, float(sim_time), applied))

            if (frame + 1) % self._progress_every == 0 or frame == spec.totalFrames - 1:
                elapsed = max(time.monotonic() - started, 1e-9)
                LOGGER.info(
                    "  %s frame %d/%d (%.1f fps)", spec.id, frame + 1, spec.totalFrames, (frame + 1) / elapsed
                )

        options = self._call("get_options_snapshot", session.get_options_snapshot)
        final_time = self._call("get_simulation_time", session.get_simulation_time)

        # Interventions scheduled past the last frame are kept, unrealized.
        realized.extend(pending)
        metadata = build_simulation_metadata(
            spec,
            dict(options or {}),
            final_time=float(final_time),
            resolution=captured_size or spec.resolution,
            interventions=realized,
            annotations=annotations,
        )
        self._store.write_metadata(spec, metadata)
        LOGGER.info("Simulation %s complete", spec.id)
        return metadata

    def _apply_intervention(self, intervention: Intervention) -> None:
        if intervention.type != "brush":
            raise ValueError(f"unsupported intervention type {intervention.type!r}")
        p = intervention.params
        self._call(
            "apply_localized_edit",
            self._session.apply_localized_edit,
            p.x,
            p.y,
            p.species,
            p.value,
            p.radius,
            p.shape,
            p.action,
        )

    def _annotate(self, frame: int, sim_time: float, applied: list[Intervention]) -> FrameAnnotation:
        if not applied:
            return FrameAnnotation(frameIndex=frame, simulationTime=sim_time)
        return FrameAnnotation(
            frameIndex=frame,
            simulationTime=sim_time,
            intervention=applied[0],
            caption="; ".join(describe_intervention(item) for item in applied),
            tags=["intervention"],
        )

    def _frame_size(self, data: bytes, frame: int) -> tuple[int, int]:
        try:
            with Image.open(io.BytesIO(data)) as image:
                if image.format != "PNG":
                    raise RemoteCallFailure(f"frame {frame} is {image.format}, expected PNG")
                return image.size
        except (UnidentifiedImageError, OSError, TypeError) as exc:
            raise RemoteCallFailure(f"frame {frame} is not a decodable image: {exc}") from exc

    def _call(self, name: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return fn(*args)
        except DatagenError:
            raise
        except Exception as exc:
            raise RemoteCallFailure(f"{name} failed: {exc}") from exc
