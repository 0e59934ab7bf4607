from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from .batch_service import run_batch_request
from .models import BatchIndex, BatchRequest, BatchState, BatchSummary, JobSummary, ProgressReport
from .orchestrator import Orchestrator
from .renderer import RendererLauncher
from .settings import Settings

LOGGER = logging.getLogger("datagen.batches")


@dataclass
class BatchRuntimeState:
    summary: BatchSummary
    version: int = 0
    orchestrator: Orchestrator | None = None


class BatchManager:
    def __init__(self, settings: Settings, launcher: RendererLauncher | None = None, max_workers: int = 1):
        self._settings = settings
        self._launcher = launcher
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="datagen-batch")
        self._states: dict[str, BatchRuntimeState] = {}
        self._lock = threading.Lock()

    def create_batch(self, request: BatchRequest) -> BatchSummary:
        batch_id = str(uuid.uuid4())
        summary = BatchSummary(
            batchId=batch_id,
            status=BatchState.queued,
            outputDir=request.outputDir,
            message="queued",
        )
        with self._lock:
            self._states[batch_id] = BatchRuntimeState(summary=summary)
        return summary.model_copy(deep=True)

    def submit(self, batch_id: str, request: BatchRequest) -> None:
        def _runner() -> None:
            self.set_state(batch_id, status=BatchState.running, message="running")
            try:
                index = run_batch_request(
                    request,
                    self._settings,
                    launcher=self._launcher,
                    progress_callback=lambda report: self.set_state(batch_id, progress=report),
                    on_orchestrator=lambda orchestrator: self._attach(batch_id, orchestrator),
                )
            except Exception as exc:
                LOGGER.exception("Batch %s aborted", batch_id)
                self.set_state(
                    batch_id,
                    status=BatchState.failed,
                    message="failed",
                    error=f"{type(exc).__name__}: {exc}",
                )
                return
            self.set_state(
                batch_id,
                status=BatchState.completed,
                message=f"{index.completed} completed, {index.failed} failed",
                index=index,
            )

        self._executor.submit(_runner)

    def get_batch(self, batch_id: str) -> BatchSummary | None:
        with self._lock:
            state = self._states.get(batch_id)
            if state is None:
                return None
            summary = state.summary.model_copy(deep=True)
            orchestrator = state.orchestrator
        if orchestrator is not None and summary.status == BatchState.running:
            summary.progress = orchestrator.progress()
        return summary

    def job_statuses(self, batch_id: str) -> list[JobSummary] | None:
        with self._lock:
            state = self._states.get(batch_id)
            if state is None:
                return None
            orchestrator = state.orchestrator
        if orchestrator is None:
            return []
        return orchestrator.job_statuses()

    def set_state(
        self,
        batch_id: str,
        *,
        status: BatchState | None = None,
        message: str | None = None,
        progress: ProgressReport | None = None,
        index: BatchIndex | None = None,
        error: str | None = None,
    ) -> None:
        with self._lock:
            state = self._states.get(batch_id)
            if state is None:
                return
            summary = state.summary
            if status is not None:
                summary.status = status
            if message is not None:
                summary.message = message
            if progress is not None:
                summary.progress = progress
            if index is not None:
                summary.index = index
            if error is not None:
                summary.error = error
            state.version += 1

    def batch_version(self, batch_id: str) -> int:
        with self._lock:
            state = self._states.get(batch_id)
            return state.version if state else 0

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _attach(self, batch_id: str, orchestrator: Orchestrator) -> None:
        with self._lock:
            state = self._states.get(batch_id)
            if state is not None:
                state.orchestrator = orchestrator
                state.version += 1
