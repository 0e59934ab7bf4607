from __future__ import annotations

import random
import uuid
from pathlib import Path
from typing import Sequence, TypeVar

from ..models import BrushParams, GenerateRequest, Intervention, JobSpec

T = TypeVar("T")

PRESET_CATEGORIES: dict[str, list[str]] = {
    "reaction_diffusion": [
        "GrayScott",
        "BrusselatorPDE",
        "SchnakenbergPDE",
        "GiererMeinhardt",
        "FHN",
        "Oregonator",
    ],
    "waves": [
        "waveEquation",
        "waveEquation1D",
        "dampedWaveEquation",
        "KdV",
        "sineGordon",
    ],
    "diffusion": [
        "heatEquation",
        "heatEquation1D",
        "nonlinearDiffusion",
        "chemotaxis",
    ],
    "biology": [
        "SIR",
        "SIS",
        "SEIR",
        "LotkaVolterra",
        "predatorPrey",
        "fisherKPP",
    ],
    "fluids": [
        "NavierStokes",
        "BurgersPDE",
        "KuramotoSivashinsky",
    ],
}

ALL_PRESETS: list[str] = [preset for presets in PRESET_CATEGORIES.values() for preset in presets]

SEED_CEILING = 1_000_000_000


def list_presets(category: str | None = None) -> dict[str, list[str]]:
    if category is None:
        return {name: list(presets) for name, presets in PRESET_CATEGORIES.items()}
    if category not in PRESET_CATEGORIES:
        raise KeyError(f"unknown preset category {category!r}")
    return {category: list(PRESET_CATEGORIES[category])}


def sample_presets(categories: Sequence[str], count: int, rng: random.Random | None = None) -> list[str]:
    rng = rng or random.Random()
    available: list[str] = []
    for category in categories:
        if category not in PRESET_CATEGORIES:
            raise KeyError(f"unknown preset category {category!r}")
        available.extend(PRESET_CATEGORIES[category])
    if not available:
        raise ValueError("no presets to sample from")
    return [_choice(rng, available) for _ in range(count)]


def generate_job_specs(request: GenerateRequest, rng: random.Random | None = None) -> list[JobSpec]:
    """Expand a generation request into concrete job specifications.

    With ``request.seed`` set (or a seeded ``rng``) the output is fully
    reproducible, ids included. Every spec carries an explicit seed.
    """
    rng = rng or random.Random(request.seed)
    specs: list[JobSpec] = []
    for _ in range(request.count):
        job_id = str(uuid.UUID(int=rng.getrandbits(128), version=4))
        preset = _choice(rng, request.presets)
        options: dict[str, float] = {}
        if request.randomize:
            for name, (low, high) in request.parameterRanges.items():
                options[name] = rng.uniform(low, high)
        interventions: list[Intervention] = []
        if request.randomInterventions:
            interventions = generate_random_interventions(request.framesPerSim, request.interventionFrequency, rng)

        output_dir = None
        if request.outputDir:
            output_dir = str(Path(request.outputDir) / preset / job_id)

        specs.append(
            JobSpec(
                id=job_id,
                preset=preset,
                options=options,
                totalFrames=request.framesPerSim,
                timestepsPerFrame=request.timestepsPerFrame,
                resolution=request.resolution,
                randomSeed=rng.randrange(SEED_CEILING),
                interventions=interventions,
                outputDir=output_dir,
            )
        )
    return specs


def generate_random_interventions(
    total_frames: int,
    frequency: tuple[int, int],
    rng: random.Random,
) -> list[Intervention]:
    low, high = frequency
    interventions: list[Intervention] = []
    frame = rng.randint(low, high)
    while frame < total_frames:
        interventions.append(Intervention(frame=frame, params=random_brush_params(rng)))
        frame += rng.randint(low, high)
    return interventions


def random_brush_params(rng: random.Random) -> BrushParams:
    return BrushParams(
        x=rng.uniform(0.1, 0.9),
        y=rng.uniform(0.1, 0.9),
        species=_choice(rng, ["u", "v"]),
        value=rng.uniform(0.0, 1.0),
        radius=rng.uniform(0.02, 0.1),
        shape=_choice(rng, ["circle", "square"]),
        action="replace",
    )


def _choice(rng: random.Random, items: Sequence[T]) -> T:
    return items[rng.randrange(len(items))]
