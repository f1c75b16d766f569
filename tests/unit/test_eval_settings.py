"""Tests for evaluation settings."""

from __future__ import annotations

import json

import pytest

from electrostatics import DP_EPS
from eval_settings import FORCE_EPS, EvalSettings, load_settings, settings_from_mapping


def test_defaults():
    settings = EvalSettings()
    assert settings.eweight == 100.0
    assert settings.sweight == 10.0
    assert settings.dp_eps == DP_EPS
    assert settings.force_eps == FORCE_EPS
    assert not settings.dsf
    assert settings.to_dict()["elstat_variant"] == "shift"


def test_dsf_switch():
    assert EvalSettings(elstat_variant="dsf").dsf


@pytest.mark.parametrize(
    "kwargs",
    [
        {"elstat_variant": "ewald"},
        {"eweight": -1.0},
        {"dp_cut": 0.0},
        {"force_eps": -0.1},
        {"n_threads": 0},
    ],
)
def test_invalid_values_are_rejected(kwargs):
    with pytest.raises(ValueError):
        EvalSettings(**kwargs)


def test_unknown_keys_are_rejected():
    with pytest.raises(ValueError, match="Unknown settings keys: weight"):
        settings_from_mapping({"weight": 1.0})


def test_load_from_json(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"eweight": 1.0, "compute_stress": True, "n_threads": 2}), encoding="utf-8")
    settings = load_settings(path)
    assert settings.eweight == 1.0
    assert settings.compute_stress
    assert settings.n_threads == 2


def test_load_requires_an_object(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(ValueError, match="JSON object"):
        load_settings(path)
