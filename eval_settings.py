"""Runtime switches and weights of the force evaluation.

Everything that used to be a compile-time variant (electrostatic tail,
stresses, per-atom force weighting, contribution filtering) is a field
here, so every code path stays reachable from one build.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping

from electrostatics import DP_EPS, ELSTAT_VARIANTS

FORCE_EPS = 0.1


@dataclass(frozen=True)
class EvalSettings:
    eweight: float = 100.0
    sweight: float = 10.0
    dp_cut: float = 10.0
    dp_eps: float = DP_EPS
    elstat_variant: str = "shift"
    compute_stress: bool = False
    force_weighting: bool = False
    contrib_filter: bool = False
    force_eps: float = FORCE_EPS
    n_threads: int = 1

    def __post_init__(self) -> None:
        if self.elstat_variant not in ELSTAT_VARIANTS:
            raise ValueError(
                f"elstat_variant must be one of {ELSTAT_VARIANTS}, got '{self.elstat_variant}'"
            )
        if self.eweight < 0.0 or self.sweight < 0.0:
            raise ValueError("Energy and stress weights must be non-negative")
        if self.dp_cut <= 0.0:
            raise ValueError("dp_cut must be positive")
        if self.force_eps < 0.0:
            raise ValueError("force_eps must be non-negative")
        if int(self.n_threads) < 1:
            raise ValueError("n_threads must be a positive integer")

    @property
    def dsf(self) -> bool:
        return self.elstat_variant == "dsf"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def settings_from_mapping(data: Mapping[str, Any]) -> EvalSettings:
    known = {item.name for item in fields(EvalSettings)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown settings keys: {', '.join(unknown)}")
    return EvalSettings(**dict(data))


def load_settings(path: str | Path) -> EvalSettings:
    with open(path, "r", encoding="utf-8") as fh:
        data = json.load(fh)
    if not isinstance(data, dict):
        raise ValueError("Settings JSON must contain a JSON object")
    return settings_from_mapping(data)
