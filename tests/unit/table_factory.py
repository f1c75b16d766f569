"""Small potential tables built from polynomials, so splines reproduce them exactly."""

from __future__ import annotations

import copy
import threading
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union

import numpy as np

from config_data import ConfigArrays, build_configuration
from eval_settings import EvalSettings
from force_angular import angular_energy, angular_forces
from force_pair_elstat import EvalScratch, pair_elstat_forces
from spline_table import PotentialTable, columns_from_functions, n_pair_columns

Range = Tuple[float, float]


def poly(*coeffs: float) -> Callable:
    """Polynomial with coefficients from the highest power down, returning (value, derivative)."""

    c = np.asarray(coeffs, dtype=np.float64)
    dc = np.polyder(c) if c.shape[0] > 1 else np.zeros(1)

    def fn(x):
        x = np.asarray(x, dtype=np.float64)
        return np.polyval(c, x) * np.ones_like(x), np.polyval(dc, x) * np.ones_like(x)

    return fn


ZERO = poly(0.0)


def _expand(item: Union[Any, Sequence[Any]], count: int) -> List[Any]:
    if isinstance(item, (list, tuple)) and not (len(item) == 2 and isinstance(item[0], (int, float))):
        if len(item) != count:
            raise ValueError(f"expected {count} entries, got {len(item)}")
        return list(item)
    return [item] * count


def build_table(
    n_types: int = 1,
    pair=ZERO,
    f=ZERO,
    g=ZERO,
    pair_range: Union[Range, Sequence[Range]] = (0.5, 4.0),
    f_range: Union[Range, Sequence[Range]] = (0.5, 3.5),
    n_knots: int = 15,
    core_shell: Sequence[int] = (),
) -> PotentialTable:
    paircol = n_pair_columns(n_types)
    functions = _expand(pair, paircol) + _expand(f, paircol) + _expand(g, n_types)
    ranges = _expand(pair_range, paircol) + _expand(f_range, paircol) + [(-1.0, 1.0)] * n_types
    grids = [np.linspace(lo, hi, n_knots) for lo, hi in ranges]
    flags = [col in core_shell for col in range(len(functions))]
    return PotentialTable.from_columns(n_types, columns_from_functions(grids, functions, flags))


def run_kernels(
    conf: ConfigArrays,
    table: PotentialTable,
    settings: Optional[EvalSettings] = None,
    charges: Optional[Sequence[float]] = None,
    kappa: float = 0.0,
    use_stress: bool = False,
):
    """Raw energy (no self energy), forces and stress of one configuration."""

    settings = settings if settings is not None else EvalSettings()
    charges = np.zeros(table.n_types) if charges is None else np.asarray(charges, dtype=np.float64)
    forces = np.zeros((conf.n_atoms, 3))
    stress = np.zeros(6)
    scratch = EvalScratch.for_config(conf)
    energy = pair_elstat_forces(conf, table, charges, kappa, settings, forces, stress, scratch, use_stress)
    energy += angular_energy(conf, table, scratch)
    angular_forces(conf, table, scratch, forces, stress, use_stress)
    return energy, forces, stress, scratch


def cluster_energy(positions, types, table, settings=None, charges=None, kappa=0.0, cutoff=None) -> float:
    conf = build_configuration(np.asarray(positions), types, table, cutoff=cutoff)
    return run_kernels(conf, table, settings, charges, kappa)[0]


CLUSTER = np.array(
    [
        [0.0, 0.0, 0.0],
        [1.6, 0.2, -0.1],
        [0.3, 1.5, 0.4],
        [1.1, 0.9, 1.3],
    ]
)


class _Exchange:
    def __init__(self, size: int, timeout: float):
        self.size = size
        self.barrier = threading.Barrier(size, timeout=timeout)
        self.slots: List[Any] = [None] * size


class ThreadComm:
    """bcast/reduce/gather between threads, mirroring the mpi4py object API."""

    def __init__(self, exchange: _Exchange, rank: int):
        self.exchange = exchange
        self.rank = rank

    def Get_rank(self) -> int:
        return self.rank

    def Get_size(self) -> int:
        return self.exchange.size

    def bcast(self, obj, root=0):
        if self.rank == root:
            self.exchange.slots[root] = obj
        self.exchange.barrier.wait()
        value = self.exchange.slots[root]
        if self.rank != root:
            value = copy.deepcopy(value)
        self.exchange.barrier.wait()
        return value

    def gather(self, sendobj, root=0):
        self.exchange.slots[self.rank] = copy.deepcopy(sendobj)
        self.exchange.barrier.wait()
        result = list(self.exchange.slots) if self.rank == root else None
        self.exchange.barrier.wait()
        return result

    def reduce(self, sendobj, op=None, root=0):
        parts = self.gather(sendobj, root=root)
        if parts is None:
            return None
        total = parts[0]
        for part in parts[1:]:
            total = total + part
        return total


def comm_group(size: int, timeout: float = 60.0) -> List[ThreadComm]:
    exchange = _Exchange(size, timeout)
    return [ThreadComm(exchange, rank) for rank in range(size)]
