from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from .utils import seed_from_hash, utc_now_iso

GENERATOR_VERSION = "1.0.0"
DEFAULT_RESOLUTION: tuple[int, int] = (512, 512)
# Job ids and presets name directories, so each must be a single path component.
PATH_COMPONENT = r"^[A-Za-z0-9][A-Za-z0-9._-]*$"


class BrushParams(BaseModel):
    x: float = Field(ge=0.0, le=1.0)
    y: float = Field(ge=0.0, le=1.0)
    species: Literal["u", "v", "w", "q"]
    value: float
    radius: float = Field(gt=0.0)
    shape: Literal["circle", "square"] = "circle"
    action: Literal["replace", "add"] = "replace"


class Intervention(BaseModel):
    frame: int = Field(ge=0)
    type: Literal["brush"] = "brush"
    params: BrushParams
    simulationTime: float | None = None


class JobSpec(BaseModel):
    id: str = Field(pattern=PATH_COMPONENT)
    preset: str = Field(pattern=PATH_COMPONENT)
    options: dict[str, Any] = Field(default_factory=dict)
    totalFrames: int = Field(ge=0)
    timestepsPerFrame: int = Field(ge=1)
    resolution: tuple[int, int] = DEFAULT_RESOLUTION
    randomSeed: int | None = None
    interventions: list[Intervention] = Field(default_factory=list)
    outputDir: str | None = None

    @model_validator(mode="after")
    def validate_spec(self) -> "JobSpec":
        width, height = self.resolution
        if width <= 0 or height <= 0:
            raise ValueError("resolution must be positive")
        if self.randomSeed is None:
            # Every executed job carries an explicit seed.
            self.randomSeed = seed_from_hash({"id": self.id, "preset": self.preset})
        return self

    def ordered_interventions(self) -> list[Intervention]:
        return sorted(self.interventions, key=lambda item: item.frame)


class FrameAnnotation(BaseModel):
    frameIndex: int
    simulationTime: float
    intervention: Intervention | None = None
    caption: str | None = None
    tags: list[str] = Field(default_factory=list)


class JobStatus(str, Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"


class JobSummary(BaseModel):
    jobId: str
    spec: JobSpec
    status: JobStatus = JobStatus.pending
    retryCount: int = 0
    startedAt: str | None = None
    endedAt: str | None = None
    error: str | None = None
    outputPath: str | None = None


class EquationSummary(BaseModel):
    reaction: list[str]
    diffusion: list[str | float]
    crossDiffusion: list[list[str | float]] | None = None
    boundaryConditions: list[str]
    initialConditions: list[str]


class ParameterSummary(BaseModel):
    kinetic: dict[str, float] = Field(default_factory=dict)
    dt: float | None = None
    spatialStep: float | None = None
    domainScale: float | None = None
    timesteppingScheme: str = "Euler"
    numSpecies: int = 2


class RunSummary(BaseModel):
    totalFrames: int
    timestepsPerFrame: int
    totalTime: float
    resolution: tuple[int, int]
    randomSeed: int | None = None


class VisualizationSummary(BaseModel):
    colormap: str = "turbo"
    minValue: float | None = None
    maxValue: float | None = None
    whatToPlot: str = "u"


class SimulationMetadata(BaseModel):
    id: str
    preset: str
    timestamp: str = Field(default_factory=utc_now_iso)
    generatorVersion: str = GENERATOR_VERSION
    optionOverrides: dict[str, Any] = Field(default_factory=dict)
    equations: EquationSummary
    parameters: ParameterSummary
    simulation: RunSummary
    visualization: VisualizationSummary
    interventions: list[Intervention] = Field(default_factory=list)
    frameAnnotations: list[FrameAnnotation] = Field(default_factory=list)


class ErrorRecord(BaseModel):
    id: str
    error: str
    retryCount: int
    timestamp: str = Field(default_factory=utc_now_iso)


class ProgressReport(BaseModel):
    total: int
    completed: int
    failed: int
    running: int
    pending: int
    elapsedMs: float
    throughputPerSecond: float = 0.0
    estimatedRemainingMs: float | None = None


class BatchIndexEntry(BaseModel):
    id: str
    preset: str
    path: str
    status: JobStatus


class BatchIndex(BaseModel):
    generated: str = Field(default_factory=utc_now_iso)
    totalSimulations: int
    completed: int
    failed: int
    elapsedMs: float
    simulations: list[BatchIndexEntry] = Field(default_factory=list)


class GenerateRequest(BaseModel):
    count: int = Field(ge=0)
    presets: list[str] = Field(min_length=1)
    randomize: bool = False
    parameterRanges: dict[str, tuple[float, float]] = Field(default_factory=dict)
    randomInterventions: bool = False
    interventionFrequency: tuple[int, int] = (50, 150)
    framesPerSim: int = Field(default=500, ge=0)
    timestepsPerFrame: int = Field(default=100, ge=1)
    resolution: tuple[int, int] = DEFAULT_RESOLUTION
    outputDir: str | None = None
    seed: int | None = None

    @model_validator(mode="after")
    def validate_ranges(self) -> "GenerateRequest":
        low, high = self.interventionFrequency
        if low < 1 or high < low:
            raise ValueError("interventionFrequency must satisfy 1 <= min <= max")
        for name, (lower, upper) in self.parameterRanges.items():
            if upper < lower:
                raise ValueError(f"parameter range for {name} is inverted")
        return self


class BatchRequest(BaseModel):
    outputDir: str
    workers: int = Field(default=4, ge=1)
    concurrency: int | None = Field(default=None, ge=1)
    maxRetries: int = Field(default=3, ge=0)
    defaults: dict[str, Any] = Field(default_factory=dict)
    simulations: list[JobSpec] = Field(default_factory=list)
    generate: GenerateRequest | None = None

    @model_validator(mode="before")
    @classmethod
    def merge_defaults(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        defaults = data.get("defaults") or {}
        simulations = data.get("simulations") or []
        if not defaults or not simulations:
            return data
        merged: list[Any] = []
        for entry in simulations:
            if not isinstance(entry, dict):
                merged.append(entry)
                continue
            combined = {**defaults, **entry}
            combined["options"] = {**(defaults.get("options") or {}), **(entry.get("options") or {})}
            merged.append(combined)
        return {**data, "simulations": merged}

    @model_validator(mode="after")
    def validate_sources(self) -> "BatchRequest":
        if self.simulations and self.generate is not None:
            raise ValueError("provide either simulations or generate, not both")
        ids = [spec.id for spec in self.simulations]
        if len(ids) != len(set(ids)):
            raise ValueError("simulation ids must be unique within a batch")
        return self


class BatchState(str, Enum):
    queued = "queued"
    running = "running"
    completed = "completed"
    failed = "failed"


class BatchSummary(BaseModel):
    batchId: str
    status: BatchState
    outputDir: str
    message: str = ""
    progress: ProgressReport | None = None
    index: BatchIndex | None = None
    error: str | None = None
