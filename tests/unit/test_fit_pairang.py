"""End-to-end tests of the command line driver."""

from __future__ import annotations

import json

import numpy as np
import pandas as pd
import pytest

from eval_settings import EvalSettings
from fit_pairang import load_system, main, parse_args
from potential_sync import TableFormat


def write_system(tmp_path, **potential):
    x = np.linspace(0.5, 4.0, 15)
    pot = {
        "n_types": 1,
        "columns": [
            {"x": x.tolist(), "values": ((x - 3.0) ** 2 - 1.0).tolist(), "grad": [-5.0, 2.0]},
            {"begin": 0.5, "end": 3.5, "n_knots": 5},
            {"begin": -1.0, "end": 1.0, "values": [0.0] * 5},
        ],
    }
    pot.update(potential)
    system = {
        "potential": pot,
        "configurations": [
            {"types": [0, 0], "positions": [[0.0, 0.0, 0.0], [2.5, 0.0, 0.0]], "energy": 0.1},
        ],
    }
    path = tmp_path / "system.json"
    path.write_text(json.dumps(system), encoding="utf-8")
    settings = tmp_path / "settings.json"
    settings.write_text(json.dumps({"eweight": 1.0}), encoding="utf-8")
    return path, settings


def test_load_system(tmp_path):
    path, _ = write_system(tmp_path)
    table, param, config_set, vector = load_system(path, EvalSettings())
    assert table.n_columns == 3
    assert param.format is TableFormat.DIRECT
    assert not param.elstat
    assert vector.shape == (table.values.shape[0],)
    assert len(config_set) == 1
    assert config_set.layout.n_punish == 0


def test_load_system_with_charges(tmp_path):
    path, _ = write_system(tmp_path, n_types=1, charges=[], kappa=0.2)
    _, param, _, vector = load_system(path, EvalSettings())
    assert param.elstat
    assert vector[-1] == pytest.approx(0.2)


def test_load_system_requires_both_sections(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text(json.dumps({"potential": {}}), encoding="utf-8")
    with pytest.raises(ValueError, match="configurations"):
        load_system(path, EvalSettings())


def test_parse_args_defaults():
    args = parse_args(["system.json"])
    assert args.system == "system.json"
    assert args.maxiter == 200
    assert not args.optimize and not args.mpi


def test_evaluate_and_report(tmp_path):
    path, settings = write_system(tmp_path)
    report = tmp_path / "report.csv"
    output = tmp_path / "result.json"
    main([str(path), "--settings", str(settings), "--report", str(report), "--output", str(output)])

    result = json.loads(output.read_text(encoding="utf-8"))
    assert result["residual"] == pytest.approx(2.0 + 0.475**2)
    assert result["fcalls"] == 1
    assert result["charges"] == [0.0]

    frame = pd.read_csv(report)
    assert list(frame["config"]) == [0]
    assert frame.loc[0, "energy_residual"] == pytest.approx(-0.475)
    assert frame.loc[0, "force_rms"] == pytest.approx(np.sqrt(2.0 / 6.0))


def test_optimisation_does_not_increase_the_residual(tmp_path):
    path, settings = write_system(tmp_path)
    output = tmp_path / "result.json"
    main([str(path), "--settings", str(settings), "--optimize", "--maxiter", "1", "--output", str(output)])
    result = json.loads(output.read_text(encoding="utf-8"))
    assert result["residual"] <= 2.0 + 0.475**2 + 1e-12
    assert result["fcalls"] > 1
