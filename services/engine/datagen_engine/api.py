from __future__ import annotations

import asyncio
import json
from typing import AsyncGenerator

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from .batch_manager import BatchManager
from .batch_service import resolve_output_dir
from .models import BatchRequest, BatchState, BatchSummary, JobSummary
from .modules.preset_sampler import list_presets
from .renderer import RendererLauncher
from .settings import Settings, configure_logging, load_settings

TERMINAL_STATES = (BatchState.completed, BatchState.failed)


def create_app(settings: Settings | None = None, launcher: RendererLauncher | None = None) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings)
    batches = BatchManager(settings, launcher=launcher)

    app = FastAPI(title="Simulation Dataset Generator", version="1.0.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.batches = batches

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/v1/presets")
    def get_presets(category: str | None = None) -> dict[str, list[str]]:
        try:
            return list_presets(category)
        except KeyError:
            raise HTTPException(status_code=404, detail="preset category not found")

    @app.post("/v1/batches", response_model=BatchSummary)
    def create_batch(request: BatchRequest) -> BatchSummary:
        try:
            output_dir = resolve_output_dir(settings, request.outputDir)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        request = request.model_copy(update={"outputDir": str(output_dir)})
        summary = batches.create_batch(request)
        batches.submit(summary.batchId, request)
        latest = batches.get_batch(summary.batchId)
        if latest is None:
            raise HTTPException(status_code=500, detail="batch not available")
        return latest

    @app.get("/v1/batches/{batch_id}", response_model=BatchSummary)
    def get_batch(batch_id: str) -> BatchSummary:
        summary = batches.get_batch(batch_id)
        if summary is None:
            raise HTTPException(status_code=404, detail="batch not found")
        return summary

    @app.get("/v1/batches/{batch_id}/jobs", response_model=list[JobSummary])
    def get_batch_jobs(batch_id: str) -> list[JobSummary]:
        jobs = batches.job_statuses(batch_id)
        if jobs is None:
            raise HTTPException(status_code=404, detail="batch not found")
        return jobs

    @app.get("/v1/batches/{batch_id}/events")
    async def stream_batch(batch_id: str) -> StreamingResponse:
        if batches.get_batch(batch_id) is None:
            raise HTTPException(status_code=404, detail="batch not found")

        async def event_gen() -> AsyncGenerator[str, None]:
            last_version = -1
            while True:
                current = batches.get_batch(batch_id)
                if current is None:
                    yield "event: error\ndata: {\"message\":\"batch not found\"}\n\n"
                    return
                version = batches.batch_version(batch_id)
                if version != last_version:
                    last_version = version
                    payload = current.model_dump(mode="json")
                    yield f"event: update\ndata: {json.dumps(payload)}\n\n"
                if current.status in TERMINAL_STATES:
                    return
                await asyncio.sleep(0.4)

        return StreamingResponse(event_gen(), media_type="text/event-stream")

    return app
