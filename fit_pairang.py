#!/usr/bin/env python3
"""Evaluate or fit a tabulated pair + angular + monopole potential against reference data.

The system file is a JSON object with two sections:

``potential``
    ``n_types``, ``columns`` (one per phi/f/g column, either ``{"x": [...],
    "values": [...]}`` or ``{"begin": b, "end": e, "values": [...]}`` or
    ``{"begin": b, "end": e, "n_knots": n}``; optional ``"grad": [left,
    right]`` and ``"core_shell": true``), ``format`` (0, 3, 4 or 5),
    ``functions``/``params`` for the analytic formats, ``free_index`` for
    the hybrid format, optional ``lower``/``upper`` bounds, ``ratio``,
    ``charges`` (all but the last species) and ``kappa``.

``configurations``
    a list of ``{"types", "positions", "box", "forces", "energy",
    "stress", "weight", "use_force", "use_stress", "contrib"}`` entries.

With ``--mpi`` every rank loads the system, rank 0 drives the evaluation or
the optimisation and the other ranks serve force calculations until rank 0
terminates them.
"""

from __future__ import annotations

import argparse
import json
import logging
import math
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy.optimize import minimize

from calc_forces import ControlFlag, ForceEvaluator, SerialComm, world_comm
from config_data import ConfigSet, build_config_set
from eval_settings import EvalSettings, load_settings
from potential_sync import Parametrization, TableFormat
from residual_sum import split_buffer
from spline_table import NATURAL_GRADIENT, PotentialTable, SplineColumn

logger = logging.getLogger("fit_pairang")


def _column_from_json(item: Mapping[str, Any]) -> SplineColumn:
    grad = item.get("grad", [NATURAL_GRADIENT, 0.0])
    if len(grad) != 2:
        raise ValueError("Column 'grad' must hold the left and right boundary gradients")
    core_shell = bool(item.get("core_shell", False))
    if "x" in item:
        x = np.asarray(item["x"], dtype=np.float64)
        values = item.get("values", np.zeros(x.shape[0]))
        return SplineColumn(x=x, values=values, grad_left=float(grad[0]), grad_right=float(grad[1]), core_shell=core_shell)
    if "begin" not in item or "end" not in item:
        raise ValueError("Column needs either 'x' or 'begin'/'end'")
    if "values" in item:
        values = item["values"]
    elif "n_knots" in item:
        values = np.zeros(int(item["n_knots"]))
    else:
        raise ValueError("Column needs 'values' or 'n_knots'")
    return SplineColumn.uniform(
        float(item["begin"]),
        float(item["end"]),
        values,
        grad_left=float(grad[0]),
        grad_right=float(grad[1]),
        core_shell=core_shell,
    )


def load_system(
    path: str | Path, settings: EvalSettings, show_progress: bool = False
) -> Tuple[PotentialTable, Parametrization, ConfigSet, NDArray[np.float64]]:
    with open(path, "r", encoding="utf-8") as fh:
        data = json.load(fh)
    if not isinstance(data, dict) or "potential" not in data or "configurations" not in data:
        raise ValueError("System JSON must be an object with 'potential' and 'configurations'")

    pot = data["potential"]
    n_types = int(pot["n_types"])
    table = PotentialTable.from_columns(n_types, [_column_from_json(item) for item in pot["columns"]])
    elstat = bool(pot.get("elstat", "charges" in pot))
    param = Parametrization(
        format=TableFormat(int(pot.get("format", 0))),
        n_types=n_types,
        ratio=pot.get("ratio", [1.0] * n_types),
        elstat=elstat,
        functions=tuple(pot.get("functions", ())),
        free_index=pot.get("free_index"),
        lower=pot.get("lower"),
        upper=pot.get("upper"),
    ).bind(table)
    vector = param.initial_vector(
        table,
        body=pot.get("params"),
        charges=pot.get("charges", []) if elstat else (),
        kappa=float(pot.get("kappa", 0.0)),
    )

    has_bounds = param.lower is not None or param.upper is not None
    config_set = build_config_set(
        data["configurations"],
        table,
        dp_cut=settings.dp_cut if elstat else 0.0,
        compute_stress=settings.compute_stress,
        n_punish=param.vector_length if has_bounds else 0,
        show_progress=show_progress,
    )
    return table, param, config_set, vector


def write_report(config_set: ConfigSet, forces: NDArray[np.float64], path: str | Path) -> None:
    """Per-configuration residuals as CSV."""

    layout = config_set.layout
    atom_forces, energies, stresses, _ = split_buffer(forces, layout)
    rows: List[Dict[str, Any]] = []
    for conf in config_set.configs:
        block = atom_forces[conf.first_atom : conf.first_atom + conf.n_atoms]
        row: Dict[str, Any] = {
            "config": conf.index,
            "n_atoms": conf.n_atoms,
            "weight": conf.weight,
            "force_rms": math.sqrt(float(np.mean(block * block))) if conf.n_atoms else 0.0,
            "energy_residual": float(energies[conf.index]),
        }
        if layout.stress:
            for name, value in zip(("sxx", "syy", "szz", "sxy", "syz", "szx"), stresses[conf.index]):
                row[name] = float(value)
        rows.append(row)
    pd.DataFrame(rows).to_csv(path, index=False)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("system", help="JSON system file (potential + configurations)")
    parser.add_argument("--settings", help="JSON file with evaluation settings")
    parser.add_argument("--optimize", action="store_true", help="Minimise the residual with scipy (Powell)")
    parser.add_argument("--maxiter", type=int, default=200, help="Maximum optimiser iterations (default: 200)")
    parser.add_argument("--threads", type=int, help="Threads per process for the configuration loop")
    parser.add_argument("--mpi", action="store_true", help="Distribute configurations over MPI ranks")
    parser.add_argument("--report", help="Write per-configuration residuals to this CSV file")
    parser.add_argument("--output", help="Write the final parameter vector and residual to this JSON file")
    parser.add_argument("--verbose", action="store_true", help="Debug logging and progress bars")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(name)s] %(message)s",
    )

    comm = world_comm() if args.mpi else SerialComm()
    is_root = comm.Get_rank() == 0

    settings = load_settings(args.settings) if args.settings else EvalSettings()
    if args.threads is not None:
        settings = replace(settings, n_threads=int(args.threads))

    table, param, config_set, vector = load_system(args.system, settings, show_progress=args.verbose and is_root)
    forces = config_set.new_buffer()
    evaluator = ForceEvaluator(config_set, table, param, settings, comm)

    if not evaluator.is_coordinator:
        evaluator.serve(forces)
        return

    logger.info(
        "[load] %d configurations, %d atoms, %d parameters, %d process(es)",
        len(config_set),
        config_set.layout.n_atoms,
        param.vector_length,
        evaluator.ctx.size,
    )

    if args.optimize:
        result = minimize(
            lambda x: evaluator.evaluate(x, forces),
            vector,
            method="Powell",
            options={"maxiter": int(args.maxiter)},
        )
        vector = np.asarray(result.x, dtype=np.float64)
        logger.info("[optimize] %s after %d evaluations", result.message, evaluator.ctx.fcalls)

    residual = evaluator.evaluate(vector, forces)
    evaluator.evaluate(vector, forces, ControlFlag.TERMINATE)
    logger.info("[result] residual = %.10g", residual)

    if args.report:
        write_report(config_set, forces, args.report)
        logger.info("[OK] wrote %s", args.report)
    if args.output:
        charges, kappa = param.charges(vector)
        payload = {
            "residual": residual,
            "vector": vector.tolist(),
            "charges": charges.tolist(),
            "kappa": kappa,
            "fcalls": evaluator.ctx.fcalls,
        }
        with open(args.output, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2)
        logger.info("[OK] wrote %s", args.output)


if __name__ == "__main__":
    main()
