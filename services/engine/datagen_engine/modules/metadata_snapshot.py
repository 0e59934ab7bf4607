from __future__ import annotations

import re
from typing import Any

from ..models import (
    EquationSummary,
    FrameAnnotation,
    Intervention,
    JobSpec,
    ParameterSummary,
    RunSummary,
    SimulationMetadata,
    VisualizationSummary,
)

_KINETIC_PAIR = re.compile(r"(\w+)\s*=\s*([-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)")


def parse_kinetic_params(raw: Any) -> dict[str, float]:
    """Parse ``"a=0.037; b = 0.06"`` style parameter strings."""
    if not isinstance(raw, str) or not raw.strip():
        return {}
    return {name: float(value) for name, value in _KINETIC_PAIR.findall(raw)}


def _as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _num_species(options: dict[str, Any]) -> int:
    try:
        count = int(options.get("numSpecies") or 2)
    except (TypeError, ValueError):
        return 2
    return max(1, count)


def build_equations(options: dict[str, Any]) -> EquationSummary:
    count = _num_species(options)
    reaction: list[str] = []
    diffusion: list[str | float] = []
    boundary: list[str] = []
    initial: list[str] = []
    for i in range(1, count + 1):
        reaction.append(str(options.get(f"reactionStr_{i}") or "0"))
        diffusion.append(options.get(f"diffusionStr_{i}_{i}") or "0")
        boundary.append(str(options.get(f"boundaryConditions_{i}") or "periodic"))
        initial.append(str(options.get(f"initCond_{i}") or "0"))

    cross: list[list[str | float]] = []
    has_cross = False
    for i in range(1, count + 1):
        row: list[str | float] = []
        for j in range(1, count + 1):
            value = options.get(f"diffusionStr_{i}_{j}") or "0"
            if i != j and str(value).strip() not in ("", "0"):
                has_cross = True
            row.append(value)
        cross.append(row)

    return EquationSummary(
        reaction=reaction,
        diffusion=diffusion,
        crossDiffusion=cross if has_cross else None,
        boundaryConditions=boundary,
        initialConditions=initial,
    )


def build_parameters(options: dict[str, Any]) -> ParameterSummary:
    return ParameterSummary(
        kinetic=parse_kinetic_params(options.get("kineticParams")),
        dt=_as_float(options.get("dt")),
        spatialStep=_as_float(options.get("spatialStep")),
        domainScale=_as_float(options.get("domainScale")),
        timesteppingScheme=str(options.get("timesteppingScheme") or "Euler"),
        numSpecies=_num_species(options),
    )


def build_visualization(options: dict[str, Any]) -> VisualizationSummary:
    return VisualizationSummary(
        colormap=str(options.get("colourmap") or "turbo"),
        minValue=_as_float(options.get("minColourValue")),
        maxValue=_as_float(options.get("maxColourValue")),
        whatToPlot=str(options.get("whatToPlot") or "u"),
    )


def build_simulation_metadata(
    spec: JobSpec,
    options: dict[str, Any],
    *,
    final_time: float,
    resolution: tuple[int, int],
    interventions: list[Intervention],
    annotations: list[FrameAnnotation],
) -> SimulationMetadata:
    return SimulationMetadata(
        id=spec.id,
        preset=spec.preset,
        optionOverrides=dict(spec.options),
        equations=build_equations(options),
        parameters=build_parameters(options),
        simulation=RunSummary(
            totalFrames=spec.totalFrames,
            timestepsPerFrame=spec.timestepsPerFrame,
            totalTime=final_time,
            resolution=resolution,
            randomSeed=spec.randomSeed,
        ),
        visualization=build_visualization(options),
        interventions=interventions,
        frameAnnotations=annotations,
    )
