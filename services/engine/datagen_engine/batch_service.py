from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

from .artifact_store import ArtifactStore
from .models import BatchIndex, BatchRequest, JobSpec, ProgressReport
from .modules.preset_sampler import generate_job_specs
from .orchestrator import Orchestrator
from .renderer import RendererLauncher, RendererSession
from .session_runner import SessionRunner
from .settings import Settings
from .worker_pool import WorkerPool

LOGGER = logging.getLogger("datagen.batches")


def build_launcher(settings: Settings) -> RendererLauncher:
    if settings.renderer_backend == "reference":
        from .modules.reference_renderer import launch_reference_renderer

        return launch_reference_renderer

    from .modules.playwright_renderer import PlaywrightConfig, playwright_launcher

    if settings.html_path is None:
        raise ValueError("the playwright renderer needs DATAGEN_HTML_PATH to point at the headless page")
    return playwright_launcher(
        PlaywrightConfig(
            html_path=settings.html_path,
            width=settings.canvas_width,
            height=settings.canvas_height,
            headless=settings.headless,
            use_swiftshader=settings.use_swiftshader,
            call_timeout_s=settings.call_timeout_s,
            navigation_timeout_s=settings.navigation_timeout_s,
        )
    )


def resolve_output_dir(settings: Settings, output_dir: str) -> Path:
    """Place a batch output directory under the configured output root.

    Relative paths are taken from ``settings.output_root``; anything that
    resolves outside of it is rejected with ``ValueError``.
    """
    root = settings.output_root.expanduser().resolve()
    resolved = (root / Path(output_dir).expanduser()).resolve()
    if not resolved.is_relative_to(root):
        raise ValueError(f"output directory {output_dir!r} falls outside {root}")
    return resolved


def expand_jobs(request: BatchRequest) -> list[JobSpec]:
    if request.generate is None:
        return list(request.simulations)
    generate = request.generate
    if generate.outputDir is None:
        generate = generate.model_copy(update={"outputDir": request.outputDir})
    return generate_job_specs(generate)


def run_batch_request(
    request: BatchRequest,
    settings: Settings,
    *,
    launcher: RendererLauncher | None = None,
    progress_callback: Callable[[ProgressReport], None] | None = None,
    on_orchestrator: Callable[[Orchestrator], None] | None = None,
) -> BatchIndex:
    """Run one batch end to end: expand, spawn the pool, execute, tear down.

    ``PoolInitializationFailure`` propagates before any job is attempted.
    """
    output_dir = resolve_output_dir(settings, request.outputDir)
    request = request.model_copy(update={"outputDir": str(output_dir)})
    jobs = expand_jobs(request)
    # Fields the request leaves out fall back to the service settings.
    explicit = request.model_fields_set
    workers = request.workers if "workers" in explicit else settings.pool_size
    max_retries = request.maxRetries if "maxRetries" in explicit else settings.max_retries

    store = ArtifactStore(output_dir)
    pool = WorkerPool(
        launcher or build_launcher(settings),
        pool_size=workers,
        recycle_threshold=settings.recycle_threshold,
    )

    def runner_factory(session: RendererSession, artifact_store: ArtifactStore) -> SessionRunner:
        return SessionRunner(session, artifact_store, ready_timeout_s=settings.ready_timeout_s)

    LOGGER.info("Running batch with %d simulations on %d workers", len(jobs), workers)
    pool.initialize()
    try:
        orchestrator = Orchestrator(
            pool,
            store,
            concurrency=request.concurrency or workers,
            max_retries=max_retries,
            retry_base_delay_s=settings.retry_base_delay_s,
            acquire_timeout_s=settings.acquire_timeout_s,
            runner_factory=runner_factory,
            progress_callback=progress_callback,
        )
        if on_orchestrator is not None:
            on_orchestrator(orchestrator)
        return orchestrator.run_batch(jobs)
    finally:
        pool.shutdown(settings.shutdown_timeout_s)
