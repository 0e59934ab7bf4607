from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Sequence

from .artifact_store import ArtifactStore
from .errors import ArtifactWriteFailure, PoolExhausted, PoolShuttingDown
from .models import (
    BatchIndex,
    BatchIndexEntry,
    ErrorRecord,
    JobSpec,
    JobStatus,
    JobSummary,
    ProgressReport,
    SimulationMetadata,
)
from .renderer import RendererSession
from .session_runner import SessionRunner
from .utils import utc_now_iso
from .worker_pool import WorkerPool

LOGGER = logging.getLogger("datagen.orchestrator")

RunnerFactory = Callable[[RendererSession, ArtifactStore], Any]
ProgressCallback = Callable[[ProgressReport], None]


class Orchestrator:
    """Runs batches of jobs on a worker pool with bounded concurrency and retries.

    Each job is owned by exactly one retry loop, which is the only writer of
    that job's ``JobSummary``. Reads from progress reporting go through the
    same lock, so snapshots are consistent.
    """

    def __init__(
        self,
        pool: WorkerPool,
        store: ArtifactStore,
        *,
        concurrency: int = 4,
        max_retries: int = 3,
        retry_base_delay_s: float = 1.0,
        acquire_timeout_s: float | None = None,
        runner_factory: RunnerFactory | None = None,
        progress_callback: ProgressCallback | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        self._pool = pool
        self._store = store
        self._concurrency = concurrency
        self._max_retries = max_retries
        self._retry_base_delay_s = retry_base_delay_s
        self._acquire_timeout_s = acquire_timeout_s
        self._runner_factory: RunnerFactory = runner_factory or SessionRunner
        self._progress_callback = progress_callback
        self._sleep = sleep
        self._lock = threading.Lock()
        self._jobs: dict[str, JobSummary] = {}
        self._started_at = time.monotonic()

    def run_batch(
        self,
        jobs: Sequence[JobSpec],
        *,
        concurrency: int | None = None,
        max_retries: int | None = None,
    ) -> BatchIndex:
        if concurrency is not None:
            if concurrency < 1:
                raise ValueError("concurrency must be at least 1")
            self._concurrency = concurrency
        if max_retries is not None:
            if max_retries < 0:
                raise ValueError("max_retries must be non-negative")
            self._max_retries = max_retries

        ids = [spec.id for spec in jobs]
        if len(ids) != len(set(ids)):
            raise ValueError("job ids must be unique within a batch")
        self._check_job_dirs(jobs)
        if self._concurrency > self._pool.pool_size:
            LOGGER.warning(
                "Concurrency %d exceeds pool size %d; pool acquisition will be the limit",
                self._concurrency,
                self._pool.pool_size,
            )

        LOGGER.info("Starting batch of %d simulations", len(jobs))
        LOGGER.info("Concurrency: %d, max retries: %d", self._concurrency, self._max_retries)

        with self._lock:
            self._started_at = time.monotonic()
            self._jobs = {
                spec.id: JobSummary(jobId=spec.id, spec=spec, outputPath=self._store.relative_job_path(spec))
                for spec in jobs
            }
        self._store.prepare_output_root()

        with ThreadPoolExecutor(max_workers=self._concurrency, thread_name_prefix="datagen-job") as executor:
            futures = [executor.submit(self._run_with_retry, spec) for spec in jobs]
            for future in futures:
                future.result()

        index = self._build_index()
        self._store.write_index(index)
        LOGGER.info("Batch complete: %d succeeded, %d failed", index.completed, index.failed)
        return index

    def progress(self) -> ProgressReport:
        with self._lock:
            summaries = list(self._jobs.values())
            elapsed_s = time.monotonic() - self._started_at
        completed = sum(1 for job in summaries if job.status == JobStatus.completed)
        failed = sum(1 for job in summaries if job.status == JobStatus.failed)
        running = sum(1 for job in summaries if job.status == JobStatus.running)
        pending = sum(1 for job in summaries if job.status == JobStatus.pending)

        throughput = completed / elapsed_s if elapsed_s > 0 else 0.0
        remaining = len(summaries) - completed - failed
        estimate = remaining / throughput * 1000.0 if throughput > 0 else None
        return ProgressReport(
            total=len(summaries),
            completed=completed,
            failed=failed,
            running=running,
            pending=pending,
            elapsedMs=elapsed_s * 1000.0,
            throughputPerSecond=throughput,
            estimatedRemainingMs=estimate,
        )

    def job_statuses(self) -> list[JobSummary]:
        with self._lock:
            return [job.model_copy(deep=True) for job in self._jobs.values()]

    def _run_with_retry(self, spec: JobSpec) -> SimulationMetadata | None:
        self._update(spec.id, status=JobStatus.running, startedAt=utc_now_iso())
        attempts = self._max_retries + 1

        for attempt in range(attempts):
            try:
                with self._pool.lease(self._acquire_timeout_s) as session:
                    metadata = self._runner_factory(session, self._store).run(spec)
            except Exception as exc:
                error = self._record_failure(spec, exc)
                if self._pool_is_gone(exc):
                    # No session will ever come back, so stop here.
                    self._fail(spec, attempt + 1)
                    return None
                if attempt < self._max_retries:
                    LOGGER.warning(
                        "Simulation %s failed (attempt %d/%d): %s", spec.id, attempt + 1, attempts, error
                    )
                    self._sleep(self._retry_base_delay_s * (attempt + 1))
                    continue
                self._fail(spec, attempts)
                return None
            else:
                self._update(spec.id, status=JobStatus.completed, endedAt=utc_now_iso())
                self._report_progress()
                return metadata
        return None

    def _pool_is_gone(self, exc: Exception) -> bool:
        if isinstance(exc, PoolShuttingDown):
            return True
        # A plain acquire timeout is saturation and goes through the retry path.
        return isinstance(exc, PoolExhausted) and self._pool.stats().total == 0

    def _check_job_dirs(self, jobs: Sequence[JobSpec]) -> None:
        seen: dict[Path, str] = {}
        for spec in jobs:
            job_dir = self._store.job_dir(spec).resolve()
            if not self._store.contains(job_dir):
                raise ValueError(f"output of job {spec.id} falls outside {self._store.output_root}")
            if job_dir in seen:
                raise ValueError(f"jobs {seen[job_dir]} and {spec.id} share the output directory {job_dir}")
            seen[job_dir] = spec.id

    def _record_failure(self, spec: JobSpec, exc: BaseException) -> str:
        error = f"{type(exc).__name__}: {exc}"
        with self._lock:
            job = self._jobs[spec.id]
            job.retryCount += 1
            job.error = error
        return error

    def _fail(self, spec: JobSpec, attempts: int) -> None:
        with self._lock:
            job = self._jobs[spec.id]
            job.status = JobStatus.failed
            job.endedAt = utc_now_iso()
            record = ErrorRecord(id=spec.id, error=job.error or "unknown error", retryCount=job.retryCount)
        LOGGER.error("Simulation %s failed after %d attempts: %s", spec.id, attempts, record.error)
        try:
            self._store.write_error(spec, record)
        except ArtifactWriteFailure as exc:
            LOGGER.error("Could not persist error record for %s: %s", spec.id, exc)
        self._report_progress()

    def _update(self, job_id: str, **changes: Any) -> None:
        with self._lock:
            job = self._jobs[job_id]
            for key, value in changes.items():
                setattr(job, key, value)

    def _report_progress(self) -> None:
        report = self.progress()
        rate = report.throughputPerSecond
        eta = f"{report.estimatedRemainingMs / 1000.0:.0f}s" if report.estimatedRemainingMs is not None else "n/a"
        LOGGER.info(
            "Progress: %d/%d completed, %d failed (%.2f sims/s, ETA: %s)",
            report.completed,
            report.total,
            report.failed,
            rate,
            eta,
        )
        if self._progress_callback is not None:
            try:
                self._progress_callback(report)
            except Exception:
                LOGGER.exception("Progress callback raised")

    def _build_index(self) -> BatchIndex:
        report = self.progress()
        with self._lock:
            entries = [
                BatchIndexEntry(
                    id=job.jobId,
                    preset=job.spec.preset,
                    path=job.outputPath or "",
                    status=job.status,
                )
                for job in self._jobs.values()
            ]
        return BatchIndex(
            totalSimulations=report.total,
            completed=report.completed,
            failed=report.failed,
            elapsedMs=report.elapsedMs,
            simulations=entries,
        )
