from __future__ import annotations

import json

import pytest

from conftest import FakeProcess, png_bytes
from datagen_engine.artifact_store import ArtifactStore
from datagen_engine.errors import LoadTimeout, RemoteCallFailure
from datagen_engine.models import BrushParams, Intervention, JobSpec
from datagen_engine.modules.reference_renderer import launch_reference_renderer
from datagen_engine.session_runner import SessionRunner


def _brush(frame: int, value: float = 1.0, species: str = "v") -> Intervention:
    return Intervention(
        frame=frame,
        params=BrushParams(x=0.5, y=0.5, species=species, value=value, radius=0.05),
    )


def _spec(**overrides) -> JobSpec:
    payload = {
        "id": "job-1",
        "preset": "GrayScott",
        "totalFrames": 3,
        "timestepsPerFrame": 4,
        "resolution": (4, 4),
        "randomSeed": 7,
    }
    payload.update(overrides)
    return JobSpec(**payload)


def _session():
    return FakeProcess(0).open_session()


def test_protocol_order_seeds_before_options_and_reset(tmp_path):
    session = _session()
    spec = _spec(options={"dt": 0.25, "colourmap": "viridis"}, totalFrames=1)

    SessionRunner(session, ArtifactStore(tmp_path)).run(spec)

    names = session.call_names()
    assert names[:7] == [
        "load_preset",
        "await_ready",
        "set_seed",
        "set_option",
        "set_option",
        "recompute_derived_parameters",
        "reset",
    ]
    assert session.calls[2] == ("set_seed", (7,))
    assert session.calls[3] == ("set_option", ("dt", 0.25))
    assert names[7:11] == ["step", "render", "capture_frame", "get_simulation_time"]


def test_frames_are_contiguous_and_metadata_written(tmp_path):
    store = ArtifactStore(tmp_path)
    session = _session()
    spec = _spec(totalFrames=5)

    metadata = SessionRunner(session, store).run(spec)

    job_dir = tmp_path / "GrayScott" / "job-1"
    assert store.list_frame_indices(spec) == [0, 1, 2, 3, 4]
    assert (job_dir / "frames" / "000004.png").read_bytes() == png_bytes()
    assert len(metadata.frameAnnotations) == 5

    payload = json.loads((job_dir / "metadata.json").read_text(encoding="utf-8"))
    assert payload["id"] == "job-1"
    assert payload["simulation"]["totalFrames"] == 5
    assert payload["simulation"]["totalTime"] == pytest.approx(5 * 4 * 0.5)
    assert payload["simulation"]["resolution"] == [4, 4]
    assert payload["simulation"]["randomSeed"] == 7
    assert payload["parameters"]["kinetic"] == {"a": 1.0, "b": 2.0}
    assert not (job_dir / "error.json").exists()


def test_interventions_applied_in_frame_order_before_stepping(tmp_path):
    session = _session()
    spec = _spec(
        totalFrames=4,
        interventions=[_brush(2, value=0.3), _brush(0, value=0.1), _brush(2, value=0.4)],
    )

    metadata = SessionRunner(session, ArtifactStore(tmp_path)).run(spec)

    edits = [args for name, args in session.calls if name == "apply_localized_edit"]
    assert [args[3] for args in edits] == [0.1, 0.3, 0.4]

    names = session.call_names()
    first_edit = names.index("apply_localized_edit")
    assert first_edit < names.index("step")

    times = [item.simulationTime for item in metadata.interventions]
    # Recorded before the frame's step: frame 0 at t=0, frame 2 after two steps of 4*0.5.
    assert times == [0.0, 4.0, 4.0]

    annotations = metadata.frameAnnotations
    assert annotations[0].intervention is not None
    assert annotations[0].tags == ["intervention"]
    assert annotations[1].intervention is None
    assert annotations[2].intervention.params.value == 0.3
    assert annotations[2].caption.count(";") == 1


def test_interventions_past_last_frame_are_kept_unapplied(tmp_path):
    session = _session()
    spec = _spec(totalFrames=2, interventions=[_brush(10)])

    metadata = SessionRunner(session, ArtifactStore(tmp_path)).run(spec)

    assert "apply_localized_edit" not in session.call_names()
    assert len(metadata.interventions) == 1
    assert metadata.interventions[0].simulationTime is None


def test_zero_frames_still_writes_metadata(tmp_path):
    store = ArtifactStore(tmp_path)
    spec = _spec(totalFrames=0)

    SessionRunner(_session(), store).run(spec)

    assert store.list_frame_indices(spec) == []
    assert store.metadata_path(spec).exists()


def test_load_timeout_propagates(tmp_path):
    session = _session()
    session.ready = False

    with pytest.raises(LoadTimeout):
        SessionRunner(session, ArtifactStore(tmp_path)).run(_spec())

    assert "step" not in session.call_names()


def test_control_api_errors_become_remote_call_failures(tmp_path):
    session = _session()
    session.failures["step"] = RuntimeError("page crashed")

    with pytest.raises(RemoteCallFailure, match="step failed"):
        SessionRunner(session, ArtifactStore(tmp_path)).run(_spec())


def test_non_png_frame_is_rejected(tmp_path):
    session = _session()
    session.frame = b"not an image"

    with pytest.raises(RemoteCallFailure):
        SessionRunner(session, ArtifactStore(tmp_path)).run(_spec())


def test_rerun_truncates_previous_attempt(tmp_path):
    store = ArtifactStore(tmp_path)
    spec = _spec(totalFrames=2)
    frames = store.frames_dir(spec)
    frames.mkdir(parents=True)
    (frames / "000007.png").write_bytes(b"stale")
    store.error_path(spec).write_text("{}", encoding="utf-8")

    SessionRunner(_session(), store).run(spec)

    assert store.list_frame_indices(spec) == [0, 1]
    assert not store.error_path(spec).exists()


def test_reference_renderer_end_to_end(tmp_path):
    process = launch_reference_renderer()
    session = process.open_session()
    store = ArtifactStore(tmp_path)
    spec = _spec(
        resolution=(16, 12),
        totalFrames=3,
        timestepsPerFrame=2,
        interventions=[_brush(1, value=0.5)],
    )

    metadata = SessionRunner(session, store).run(spec)

    assert store.list_frame_indices(spec) == [0, 1, 2]
    assert metadata.simulation.resolution == (16, 12)
    assert metadata.parameters.kinetic == {"a": 0.037, "b": 0.06}
    assert metadata.simulation.totalTime == pytest.approx(6.0)
    assert metadata.interventions[0].simulationTime == pytest.approx(2.0)
    assert metadata.equations.reaction[0] == "-u*v^2 + a*(1-u)"
    assert metadata.visualization.whatToPlot == "v"
    process.terminate()
