from __future__ import annotations

import json
import os
import shutil
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from .errors import ArtifactWriteFailure
from .models import BatchIndex, ErrorRecord, JobSpec, SimulationMetadata
from .utils import ensure_dir

FRAME_DIGITS = 6


class ArtifactStore:
    """Persisted layout of one batch output root.

    ``<root>/index.json`` summarizes the batch; every job owns
    ``<root>/<preset>/<job-id>/`` (or its explicit ``outputDir``, which must
    stay inside the root) holding
    ``metadata.json``, ``frames/NNNNNN.png`` and, for permanently failed jobs,
    ``error.json``.
    """

    def __init__(self, output_root: Path):
        self.output_root = Path(output_root)

    def job_dir(self, spec: JobSpec) -> Path:
        if spec.outputDir:
            # Relative locations are taken from the batch root.
            return self.output_root / spec.outputDir
        return self.output_root / spec.preset / spec.id

    def contains(self, path: Path) -> bool:
        root = self.output_root.resolve()
        return path.resolve().is_relative_to(root)

    def frames_dir(self, spec: JobSpec) -> Path:
        return self.job_dir(spec) / "frames"

    def frame_path(self, spec: JobSpec, frame_index: int) -> Path:
        return self.frames_dir(spec) / f"{frame_index:0{FRAME_DIGITS}d}.png"

    def metadata_path(self, spec: JobSpec) -> Path:
        return self.job_dir(spec) / "metadata.json"

    def error_path(self, spec: JobSpec) -> Path:
        return self.job_dir(spec) / "error.json"

    def index_path(self) -> Path:
        return self.output_root / "index.json"

    def relative_job_path(self, spec: JobSpec) -> str:
        job_dir = self.job_dir(spec).resolve()
        root = self.output_root.resolve()
        return Path(os.path.relpath(job_dir, root)).as_posix()

    def prepare_output_root(self) -> Path:
        try:
            return ensure_dir(self.output_root)
        except OSError as exc:
            raise ArtifactWriteFailure(f"cannot create output root {self.output_root}: {exc}") from exc

    def prepare_job(self, spec: JobSpec) -> Path:
        """Truncate whatever a previous attempt left behind and recreate ``frames/``."""
        frames = self.frames_dir(spec)
        try:
            if frames.exists():
                shutil.rmtree(frames)
            for stale in (self.metadata_path(spec), self.error_path(spec)):
                stale.unlink(missing_ok=True)
            return ensure_dir(frames)
        except OSError as exc:
            raise ArtifactWriteFailure(f"cannot prepare output for job {spec.id}: {exc}") from exc

    def write_frame(self, spec: JobSpec, frame_index: int, data: bytes) -> Path:
        path = self.frame_path(spec, frame_index)
        try:
            path.write_bytes(data)
        except OSError as exc:
            raise ArtifactWriteFailure(f"cannot write frame {frame_index} of job {spec.id}: {exc}") from exc
        return path

    def list_frame_indices(self, spec: JobSpec) -> list[int]:
        frames = self.frames_dir(spec)
        if not frames.exists():
            return []
        indices: list[int] = []
        for path in frames.glob("*.png"):
            try:
                indices.append(int(path.stem))
            except ValueError:
                continue
        return sorted(indices)

    def write_metadata(self, spec: JobSpec, metadata: SimulationMetadata) -> Path:
        return self._write_model(self.metadata_path(spec), metadata)

    def write_error(self, spec: JobSpec, record: ErrorRecord) -> Path:
        return self._write_model(self.error_path(spec), record)

    def write_index(self, index: BatchIndex) -> Path:
        return self._write_model(self.index_path(), index)

    def write_json(self, path: Path, payload: dict[str, Any]) -> Path:
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            ensure_dir(path.parent)
            tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            tmp_path.replace(path)
        except OSError as exc:
            raise ArtifactWriteFailure(f"cannot write {path}: {exc}") from exc
        return path

    def _write_model(self, path: Path, model: BaseModel) -> Path:
        return self.write_json(path, model.model_dump(mode="json"))
