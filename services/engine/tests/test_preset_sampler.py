from __future__ import annotations

import random

import pytest

from datagen_engine.models import GenerateRequest
from datagen_engine.modules.preset_sampler import (
    ALL_PRESETS,
    PRESET_CATEGORIES,
    generate_job_specs,
    generate_random_interventions,
    list_presets,
    sample_presets,
)


def _request(**overrides) -> GenerateRequest:
    payload = {
        "count": 4,
        "presets": ["GrayScott", "heatEquation"],
        "framesPerSim": 400,
        "timestepsPerFrame": 10,
        "resolution": (64, 64),
        "seed": 1234,
    }
    payload.update(overrides)
    return GenerateRequest(**payload)


def test_seeded_generation_is_reproducible():
    first = generate_job_specs(_request(randomize=True, parameterRanges={"dt": (0.1, 0.2)}))
    second = generate_job_specs(_request(randomize=True, parameterRanges={"dt": (0.1, 0.2)}))

    assert [spec.model_dump() for spec in first] == [spec.model_dump() for spec in second]
    assert len({spec.id for spec in first}) == 4


def test_generated_specs_carry_request_settings():
    specs = generate_job_specs(_request(randomize=True, parameterRanges={"dt": (0.1, 0.2)}))

    for spec in specs:
        assert spec.preset in {"GrayScott", "heatEquation"}
        assert spec.totalFrames == 400
        assert spec.timestepsPerFrame == 10
        assert spec.resolution == (64, 64)
        assert spec.randomSeed is not None
        assert 0.1 <= spec.options["dt"] <= 0.2
        assert spec.interventions == []
        assert spec.outputDir is None


def test_without_randomize_options_stay_empty():
    specs = generate_job_specs(_request(parameterRanges={"dt": (0.1, 0.2)}))
    assert all(spec.options == {} for spec in specs)


def test_output_dir_nests_by_preset_and_id(tmp_path):
    specs = generate_job_specs(_request(outputDir=str(tmp_path)))
    for spec in specs:
        assert spec.outputDir == str(tmp_path / spec.preset / spec.id)


def test_random_interventions_follow_frequency_window():
    interventions = generate_random_interventions(1000, (50, 150), random.Random(5))

    frames = [item.frame for item in interventions]
    assert frames == sorted(frames)
    assert frames[0] >= 50
    assert all(frame < 1000 for frame in frames)
    gaps = [b - a for a, b in zip(frames, frames[1:])]
    assert all(50 <= gap <= 150 for gap in gaps)
    for item in interventions:
        params = item.params
        assert 0.1 <= params.x <= 0.9
        assert 0.1 <= params.y <= 0.9
        assert params.species in {"u", "v"}
        assert 0.02 <= params.radius <= 0.1
        assert params.shape in {"circle", "square"}
        assert params.action == "replace"


def test_short_runs_get_no_interventions():
    assert generate_random_interventions(10, (50, 150), random.Random(0)) == []


def test_list_presets_by_category():
    assert list_presets() == PRESET_CATEGORIES
    assert list_presets("waves") == {"waves": PRESET_CATEGORIES["waves"]}
    with pytest.raises(KeyError):
        list_presets("astrophysics")


def test_sample_presets_draws_from_selected_categories():
    sampled = sample_presets(["biology"], 20, random.Random(3))
    assert len(sampled) == 20
    assert set(sampled) <= set(PRESET_CATEGORIES["biology"])
    assert set(sampled) <= set(ALL_PRESETS)


def test_invalid_frequency_window_is_rejected():
    with pytest.raises(ValueError):
        _request(interventionFrequency=(10, 5))
