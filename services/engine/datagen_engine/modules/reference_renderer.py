"""In-process reference renderer.

A small NumPy reaction-diffusion solver exposing the same control API as the
browser transport. It is used for tests and for quick CPU-only runs where no
headless browser is available. Fields are advanced with explicit finite
differences and rendered through a colour lookup table with Pillow.
"""

from __future__ import annotations

import io
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable

import numpy as np
from PIL import Image

from ..errors import LoadTimeout, RemoteCallFailure
from .metadata_snapshot import parse_kinetic_params

LOGGER = logging.getLogger("datagen.renderer")

SPECIES = ("u", "v", "w", "q")

Reaction = Callable[[list[np.ndarray], dict[str, float]], list[np.ndarray]]


def _gray_scott(fields: list[np.ndarray], k: dict[str, float]) -> list[np.ndarray]:
    u, v = fields
    uvv = u * v * v
    a = k.get("a", 0.037)
    b = k.get("b", 0.06)
    return [-uvv + a * (1.0 - u), uvv - (a + b) * v]


def _brusselator(fields: list[np.ndarray], k: dict[str, float]) -> list[np.ndarray]:
    u, v = fields
    a = k.get("a", 2.0)
    b = k.get("b", 4.0)
    uuv = u * u * v
    return [a - (b + 1.0) * u + uuv, b * u - uuv]


def _schnakenberg(fields: list[np.ndarray], k: dict[str, float]) -> list[np.ndarray]:
    u, v = fields
    a = k.get("a", 0.1)
    b = k.get("b", 0.9)
    uuv = u * u * v
    return [a - u + uuv, b - uuv]


def _heat(fields: list[np.ndarray], k: dict[str, float]) -> list[np.ndarray]:
    return [np.zeros_like(fields[0])]


@dataclass(frozen=True)
class ReferencePreset:
    reaction: Reaction
    options: dict[str, Any]


def _preset_options(num_species: int, **extra: Any) -> dict[str, Any]:
    base: dict[str, Any] = {
        "numSpecies": num_species,
        "dt": 0.1,
        "spatialStep": 1.0,
        "domainScale": 1.0,
        "dimension": "2",
        "timesteppingScheme": "Euler",
        "kineticParams": "",
        "colourmap": "turbo",
        "minColourValue": 0.0,
        "maxColourValue": 1.0,
        "whatToPlot": "u",
        "setSeed": False,
        "randSeed": 0,
    }
    for i in range(1, num_species + 1):
        base[f"boundaryConditions_{i}"] = "periodic"
        base[f"initCond_{i}"] = "0"
    base.update(extra)
    return base


PRESETS: dict[str, ReferencePreset] = {
    "GrayScott": ReferencePreset(
        reaction=_gray_scott,
        options=_preset_options(
            2,
            reactionStr_1="-u*v^2 + a*(1-u)",
            reactionStr_2="u*v^2 - (a+b)*v",
            diffusionStr_1_1="0.16",
            diffusionStr_2_2="0.08",
            initCond_1="1",
            initCond_2="spot",
            kineticParams="a=0.037;b=0.06",
            dt=1.0,
            whatToPlot="v",
            maxColourValue=0.5,
        ),
    ),
    "BrusselatorPDE": ReferencePreset(
        reaction=_brusselator,
        options=_preset_options(
            2,
            reactionStr_1="a - (b+1)*u + u^2*v",
            reactionStr_2="b*u - u^2*v",
            diffusionStr_1_1="1",
            diffusionStr_2_2="8",
            initCond_1="random",
            initCond_2="random",
            kineticParams="a=2;b=4",
            dt=0.02,
            maxColourValue=4.0,
        ),
    ),
    "SchnakenbergPDE": ReferencePreset(
        reaction=_schnakenberg,
        options=_preset_options(
            2,
            reactionStr_1="a - u + u^2*v",
            reactionStr_2="b - u^2*v",
            diffusionStr_1_1="1",
            diffusionStr_2_2="40",
            initCond_1="random",
            initCond_2="random",
            kineticParams="a=0.1;b=0.9",
            dt=0.005,
            maxColourValue=2.0,
        ),
    ),
    "heatEquation": ReferencePreset(
        reaction=_heat,
        options=_preset_options(
            1,
            reactionStr_1="0",
            diffusionStr_1_1="1",
            initCond_1="spot",
            dt=0.2,
            colourmap="greyscale",
        ),
    ),
}

_COLOUR_ANCHORS: dict[str, list[tuple[int, int, int]]] = {
    "turbo": [(48, 18, 59), (70, 134, 251), (27, 229, 181), (164, 252, 60), (251, 185, 56), (122, 4, 3)],
    "viridis": [(68, 1, 84), (59, 82, 139), (33, 145, 140), (94, 201, 98), (253, 231, 37)],
    "greyscale": [(0, 0, 0), (255, 255, 255)],
}


def colour_lut(name: str) -> np.ndarray:
    anchors = np.asarray(_COLOUR_ANCHORS.get(name, _COLOUR_ANCHORS["turbo"]), dtype=np.float32)
    positions = np.linspace(0.0, 1.0, len(anchors))
    samples = np.linspace(0.0, 1.0, 256)
    channels = [np.interp(samples, positions, anchors[:, c]) for c in range(3)]
    return np.stack(channels, axis=1).astype(np.uint8)


def _laplacian(field: np.ndarray, boundary: str, h: float) -> np.ndarray:
    if boundary == "periodic":
        total = (
            np.roll(field, 1, axis=0)
            + np.roll(field, -1, axis=0)
            + np.roll(field, 1, axis=1)
            + np.roll(field, -1, axis=1)
        )
    else:
        mode = "edge" if boundary == "neumann" else "constant"
        padded = np.pad(field, 1, mode=mode)
        total = padded[:-2, 1:-1] + padded[2:, 1:-1] + padded[1:-1, :-2] + padded[1:-1, 2:]
    return (total - 4.0 * field) / (h * h)


class ReferenceSession:
    def __init__(self, process: "ReferenceRendererProcess"):
        self._process = process
        self._closed = False
        self._preset: ReferencePreset | None = None
        self._options: dict[str, Any] = {}
        self._shape: tuple[int, int] = (0, 0)
        self._seed: int | None = None
        self._kinetic: dict[str, float] = {}
        self._diffusion: list[float] = []
        self._fields: list[np.ndarray] = []
        self._time = 0.0
        self._frame: np.ndarray | None = None

    def load_preset(self, preset: str, resolution: tuple[int, int]) -> None:
        self._check_alive()
        definition = PRESETS.get(preset)
        if definition is None:
            raise RemoteCallFailure(f"unknown preset {preset!r}")
        width, height = resolution
        self._preset = definition
        self._options = dict(definition.options)
        self._shape = (int(height), int(width))
        self._seed = None
        self._fields = []
        self._time = 0.0
        self._frame = None
        self.recompute_derived_parameters()

    def await_ready(self, timeout_s: float) -> None:
        self._check_alive()
        if self._preset is None:
            raise LoadTimeout(f"renderer did not signal ready within {timeout_s:.1f}s")

    def set_seed(self, seed: int) -> None:
        self._check_loaded()
        self._seed = int(seed)
        self._options["setSeed"] = True
        self._options["randSeed"] = int(seed)

    def set_option(self, key: str, value: Any) -> None:
        self._check_loaded()
        self._options[key] = value

    def recompute_derived_parameters(self) -> None:
        self._check_loaded()
        options = self._options
        try:
            dt = float(options["dt"])
            h = float(options["spatialStep"])
            count = int(options["numSpecies"])
            diffusion = [float(options.get(f"diffusionStr_{i}_{i}") or 0.0) for i in range(1, count + 1)]
        except (KeyError, TypeError, ValueError) as exc:
            raise RemoteCallFailure(f"invalid solver options: {exc}") from exc
        if dt <= 0 or h <= 0:
            raise RemoteCallFailure("dt and spatialStep must be positive")
        self._kinetic = parse_kinetic_params(options.get("kineticParams"))
        self._diffusion = diffusion

    def reset(self) -> None:
        self._check_loaded()
        rng = np.random.default_rng(self._seed)
        height, width = self._shape
        fields: list[np.ndarray] = []
        for i in range(1, len(self._diffusion) + 1):
            fields.append(self._initial_field(str(self._options.get(f"initCond_{i}", "0")), rng, height, width))
        self._fields = fields
        self._time = 0.0
        self._frame = None

    def step(self, n: int) -> None:
        self._check_running()
        dt = float(self._options["dt"])
        scheme = str(self._options.get("timesteppingScheme") or "Euler")
        for _ in range(int(n)):
            if scheme == "Mid":
                half = [f + 0.5 * dt * d for f, d in zip(self._fields, self._rates(self._fields))]
                self._fields = [f + dt * d for f, d in zip(self._fields, self._rates(half))]
            else:
                self._fields = [f + dt * d for f, d in zip(self._fields, self._rates(self._fields))]
            self._time += dt
        if not all(np.isfinite(f).all() for f in self._fields):
            raise RemoteCallFailure(f"solution diverged at t={self._time:.4g}")

    def render(self) -> None:
        self._check_running()
        target = str(self._options.get("whatToPlot") or "u")
        index = SPECIES.index(target) if target in SPECIES[: len(self._fields)] else 0
        low = float(self._options.get("minColourValue", 0.0))
        high = float(self._options.get("maxColourValue", 1.0))
        span = high - low if high > low else 1.0
        scaled = np.clip((self._fields[index] - low) / span, 0.0, 1.0)
        lut = colour_lut(str(self._options.get("colourmap") or "turbo"))
        self._frame = lut[(scaled * 255.0).astype(np.uint8)]

    def capture_frame(self) -> bytes:
        self._check_running()
        if self._frame is None:
            raise RemoteCallFailure("capture requested before render")
        buffer = io.BytesIO()
        Image.fromarray(self._frame).save(buffer, format="PNG")
        return buffer.getvalue()

    def get_simulation_time(self) -> float:
        self._check_loaded()
        return self._time

    def get_options_snapshot(self) -> dict[str, Any]:
        self._check_loaded()
        return dict(self._options)

    def apply_localized_edit(
        self,
        x: float,
        y: float,
        field: str,
        value: float,
        radius: float,
        shape: str,
        mode: str,
    ) -> None:
        self._check_running()
        if field not in SPECIES[: len(self._fields)]:
            raise RemoteCallFailure(f"field {field!r} is not simulated by this preset")
        target = self._fields[SPECIES.index(field)]
        height, width = target.shape
        scale = float(self._options.get("domainScale") or 1.0)
        r_px = max(radius / scale * max(width, height), 0.5)
        rows, cols = np.ogrid[:height, :width]
        cx, cy = x * (width - 1), y * (height - 1)
        if shape == "square":
            mask = (np.abs(cols - cx) <= r_px) & (np.abs(rows - cy) <= r_px)
        else:
            mask = (cols - cx) ** 2 + (rows - cy) ** 2 <= r_px * r_px
        if mode == "add":
            target[mask] += value
        else:
            target[mask] = value

    def clear(self) -> None:
        self._check_alive()
        self._preset = None
        self._options = {}
        self._seed = None
        self._kinetic = {}
        self._diffusion = []
        self._fields = []
        self._time = 0.0
        self._frame = None

    def close(self) -> None:
        self._closed = True

    def _rates(self, fields: list[np.ndarray]) -> list[np.ndarray]:
        assert self._preset is not None
        h = float(self._options["spatialStep"])
        reactions = self._preset.reaction(fields, self._kinetic)
        rates: list[np.ndarray] = []
        for i, (f, d, r) in enumerate(zip(fields, self._diffusion, reactions), start=1):
            boundary = str(self._options.get(f"boundaryConditions_{i}") or "periodic")
            rates.append(d * _laplacian(f, boundary, h) + r)
        return rates

    def _initial_field(self, spec: str, rng: np.random.Generator, height: int, width: int) -> np.ndarray:
        spec = spec.strip()
        if spec == "random":
            return rng.random((height, width))
        if spec == "spot":
            field = np.zeros((height, width))
            r = max(min(height, width) // 8, 1)
            cy, cx = height // 2, width // 2
            field[cy - r : cy + r, cx - r : cx + r] = 1.0
            return field + 0.01 * rng.random((height, width))
        try:
            return np.full((height, width), float(spec))
        except ValueError as exc:
            raise RemoteCallFailure(f"unsupported initial condition {spec!r}") from exc

    def _check_alive(self) -> None:
        if self._closed:
            raise RemoteCallFailure("session is closed")
        if not self._process.alive:
            raise RemoteCallFailure("renderer process terminated")

    def _check_loaded(self) -> None:
        self._check_alive()
        if self._preset is None:
            raise RemoteCallFailure("no preset loaded")

    def _check_running(self) -> None:
        self._check_loaded()
        if not self._fields:
            raise RemoteCallFailure("simulation has not been reset")


class ReferenceRendererProcess:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._alive = True
        self._sessions: list[ReferenceSession] = []

    @property
    def alive(self) -> bool:
        return self._alive

    def open_session(self) -> ReferenceSession:
        with self._lock:
            if not self._alive:
                raise RemoteCallFailure("renderer process terminated")
            session = ReferenceSession(self)
            self._sessions.append(session)
            return session

    def terminate(self) -> None:
        with self._lock:
            self._alive = False
            sessions, self._sessions = self._sessions, []
        for session in sessions:
            session.close()
        LOGGER.debug("Reference renderer terminated")


def launch_reference_renderer() -> ReferenceRendererProcess:
    return ReferenceRendererProcess()
