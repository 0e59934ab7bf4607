from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from datagen_engine.batch_service import build_launcher, expand_jobs, resolve_output_dir, run_batch_request
from datagen_engine.errors import PoolInitializationFailure
from datagen_engine.models import BatchRequest, JobSpec
from datagen_engine.modules.reference_renderer import launch_reference_renderer
from datagen_engine.settings import Settings


def _settings(tmp_path, **overrides) -> Settings:
    payload = {"output_root": tmp_path, "renderer_backend": "reference", "retry_base_delay_s": 0.0}
    payload.update(overrides)
    return Settings(**payload)


def _simulation(job_id: str, **extra) -> dict:
    return {"id": job_id, "preset": "GrayScott", "totalFrames": 2, "timestepsPerFrame": 1, "resolution": [8, 8], **extra}


def test_defaults_merge_into_each_simulation(tmp_path):
    request = BatchRequest(
        outputDir=str(tmp_path),
        defaults={"timestepsPerFrame": 5, "options": {"dt": 0.5, "colourmap": "viridis"}},
        simulations=[
            {"id": "a", "preset": "GrayScott", "totalFrames": 1},
            {"id": "b", "preset": "GrayScott", "totalFrames": 1, "timestepsPerFrame": 2, "options": {"dt": 0.25}},
        ],
    )

    a, b = request.simulations
    assert a.timestepsPerFrame == 5
    assert a.options == {"dt": 0.5, "colourmap": "viridis"}
    assert b.timestepsPerFrame == 2
    assert b.options == {"dt": 0.25, "colourmap": "viridis"}


def test_request_rejects_duplicate_ids_and_mixed_sources(tmp_path):
    with pytest.raises(ValidationError):
        BatchRequest(outputDir=str(tmp_path), simulations=[_simulation("x"), _simulation("x")])
    with pytest.raises(ValidationError):
        BatchRequest(
            outputDir=str(tmp_path),
            simulations=[_simulation("x")],
            generate={"count": 1, "presets": ["GrayScott"]},
        )


def test_generated_jobs_inherit_batch_output_dir(tmp_path):
    request = BatchRequest(
        outputDir=str(tmp_path),
        generate={"count": 3, "presets": ["heatEquation"], "framesPerSim": 2, "seed": 9},
    )

    jobs = expand_jobs(request)
    assert len(jobs) == 3
    for job in jobs:
        assert job.outputDir == str(tmp_path / "heatEquation" / job.id)


def test_run_batch_request_end_to_end(tmp_path):
    request = BatchRequest(
        outputDir=str(tmp_path),
        workers=2,
        simulations=[_simulation("a"), _simulation("b"), _simulation("c", preset="heatEquation")],
    )

    index = run_batch_request(request, _settings(tmp_path))

    assert index.completed == 3
    assert (tmp_path / "index.json").exists()
    assert (tmp_path / "heatEquation" / "c" / "frames" / "000001.png").exists()


def test_pool_initialization_failure_aborts_before_any_job(tmp_path, fake_launcher):
    launcher = fake_launcher(fail_on={1})
    request = BatchRequest(outputDir=str(tmp_path / "out"), workers=2, simulations=[_simulation("a")])

    with pytest.raises(PoolInitializationFailure):
        run_batch_request(request, _settings(tmp_path), launcher=launcher)

    assert launcher.processes[0].terminated
    assert not (tmp_path / "out" / "index.json").exists()
    assert launcher.processes[0].sessions[0].calls == []


def test_build_launcher_selects_backend(tmp_path):
    assert build_launcher(_settings(tmp_path)) is launch_reference_renderer
    with pytest.raises(ValueError):
        build_launcher(_settings(tmp_path, renderer_backend="playwright"))


def test_job_seed_is_derived_when_missing():
    first = JobSpec(id="same", preset="GrayScott", totalFrames=1, timestepsPerFrame=1)
    second = JobSpec(id="same", preset="GrayScott", totalFrames=1, timestepsPerFrame=1)
    other = JobSpec(id="other", preset="GrayScott", totalFrames=1, timestepsPerFrame=1)

    assert first.randomSeed is not None
    assert first.randomSeed == second.randomSeed
    assert first.randomSeed != other.randomSeed
    assert JobSpec(id="s", preset="p", totalFrames=1, timestepsPerFrame=1, randomSeed=5).randomSeed == 5


def test_omitted_workers_and_retries_fall_back_to_settings(tmp_path):
    launched = []

    def _launcher():
        process = launch_reference_renderer()
        launched.append(process)
        return process

    request = BatchRequest(outputDir=str(tmp_path), simulations=[_simulation("a", preset="Missing")])
    settings = _settings(tmp_path, pool_size=1, max_retries=0)

    index = run_batch_request(request, settings, launcher=_launcher)

    assert len(launched) == 1
    assert index.failed == 1
    error = json.loads((tmp_path / "Missing" / "a" / "error.json").read_text(encoding="utf-8"))
    assert error["retryCount"] == 1


def test_output_dir_is_confined_to_output_root(tmp_path):
    settings = _settings(tmp_path / "root")

    assert resolve_output_dir(settings, "batch-1") == (tmp_path / "root" / "batch-1").resolve()
    assert resolve_output_dir(settings, str(tmp_path / "root" / "x")) == (tmp_path / "root" / "x").resolve()
    with pytest.raises(ValueError):
        resolve_output_dir(settings, "../escape")
    with pytest.raises(ValueError):
        resolve_output_dir(settings, str(tmp_path / "other"))


def test_run_batch_request_rejects_escaping_output_before_spawning(tmp_path, fake_launcher):
    launcher = fake_launcher()
    request = BatchRequest(outputDir=str(tmp_path / "outside"), simulations=[_simulation("a")])

    with pytest.raises(ValueError):
        run_batch_request(request, _settings(tmp_path / "root"), launcher=launcher)

    assert launcher.spawn_count == 0
    assert not (tmp_path / "outside").exists()


def test_relative_request_output_dir_lands_under_output_root(tmp_path):
    request = BatchRequest(outputDir="runs/first", workers=1, simulations=[_simulation("a")])

    index = run_batch_request(request, _settings(tmp_path))

    assert index.completed == 1
    assert (tmp_path / "runs" / "first" / "index.json").exists()
    assert (tmp_path / "runs" / "first" / "GrayScott" / "a" / "metadata.json").exists()
