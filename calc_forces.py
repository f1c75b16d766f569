"""Distributed force evaluation: one coordinator, any number of workers.

All processes run the same code.  The coordinator (rank 0) is driven by the
optimiser through :meth:`ForceEvaluator.evaluate`; every other process calls
the same method once and stays inside it, answering commands until it is
told to terminate:

* ``TERMINATE`` (1) – every process leaves, nothing is computed.
* ``RESYNC`` (2) – workers receive the whole potential table first (knot
  positions may have changed), then compute.  Neighbour and angle lists
  keep the cutoffs they were built with; only their spline lookups are
  refreshed, and a warning is logged when a column end moves.
* anything else – broadcast the parameter vector, compute the locally owned
  configurations, sum-reduce the squares and gather the owned force, energy
  and stress segments into the coordinator's buffer.

Only the coordinator returns a residual.  A non-finite residual is replaced
by :data:`LARGE_RESIDUAL` so the optimiser never chases NaNs.

Communicators follow the lower-case ``mpi4py`` object API (``bcast``,
``reduce``, ``gather``); :class:`SerialComm` is the single-process build.
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, List, Optional

import numpy as np
from numpy.typing import NDArray

from config_data import ConfigArrays, ConfigSet, partition
from eval_settings import EvalSettings
from force_angular import angular_energy, angular_forces
from force_pair_elstat import EvalScratch, pair_elstat_forces
from potential_sync import Parametrization, sync_table
from residual_sum import add_punishment, config_residual
from spline_table import PotentialTable

logger = logging.getLogger(__name__)

LARGE_RESIDUAL = 10e10


class ControlFlag(IntEnum):
    EVALUATE = 0
    TERMINATE = 1
    RESYNC = 2


class EvaluatorState(Enum):
    AWAITING_COMMAND = "awaiting-command"
    RESYNCING = "resyncing"
    COMPUTING = "computing"
    TERMINATED = "terminated"


class SerialComm:
    """Communicator of a run without MPI: one process, collectives are identities."""

    def Get_rank(self) -> int:
        return 0

    def Get_size(self) -> int:
        return 1

    def bcast(self, obj: Any, root: int = 0) -> Any:
        return obj

    def reduce(self, sendobj: Any, op: Any = None, root: int = 0) -> Any:
        return sendobj

    def gather(self, sendobj: Any, root: int = 0) -> List[Any]:
        return [sendobj]


def world_comm():
    """``MPI.COMM_WORLD``; mpi4py is only needed for parallel runs."""

    from mpi4py import MPI

    return MPI.COMM_WORLD


@dataclass
class EvaluationContext:
    """Process-local state of the evaluation loop."""

    rank: int
    size: int
    first_conf: int
    n_conf: int
    first_atom: int
    n_atoms: int
    charges: NDArray[np.float64] = field(default_factory=lambda: np.zeros(0))
    kappa: float = 0.0
    fcalls: int = 0

    @property
    def is_coordinator(self) -> bool:
        return self.rank == 0


class ForceEvaluator:
    """State machine around one process's share of the force calculation."""

    def __init__(
        self,
        config_set: ConfigSet,
        table: PotentialTable,
        parametrization: Parametrization,
        settings: Optional[EvalSettings] = None,
        comm: Any = None,
    ):
        self.config_set = config_set
        self.table = table
        self.parametrization = parametrization.bind(table)
        self.settings = settings if settings is not None else EvalSettings()
        self.comm = comm if comm is not None else SerialComm()

        rank, size = int(self.comm.Get_rank()), int(self.comm.Get_size())
        first_conf, n_conf = partition(len(config_set), size, rank)
        owned = config_set.configs[first_conf : first_conf + n_conf]
        first_atom = owned[0].first_atom if owned else 0
        self.ctx = EvaluationContext(
            rank=rank,
            size=size,
            first_conf=first_conf,
            n_conf=n_conf,
            first_atom=first_atom,
            n_atoms=sum(conf.n_atoms for conf in owned),
            charges=np.zeros(table.n_types),
        )
        self._column_ends = np.array(table.end, dtype=np.float64)
        self.state = EvaluatorState.AWAITING_COMMAND

    @property
    def is_coordinator(self) -> bool:
        return self.ctx.is_coordinator

    @property
    def owned_configs(self) -> List[ConfigArrays]:
        return self.config_set.configs[self.ctx.first_conf : self.ctx.first_conf + self.ctx.n_conf]

    def evaluate(
        self,
        vector: Optional[NDArray[np.float64]],
        forces: NDArray[np.float64],
        flag: int = ControlFlag.EVALUATE,
    ) -> Optional[float]:
        """Residual for ``vector`` on the coordinator.

        On a worker this only returns (with ``None``) once the coordinator
        has sent ``TERMINATE``.
        """

        if not self.is_coordinator:
            self.serve(forces)
            return None
        return self.step(forces, vector, flag)

    def serve(self, forces: NDArray[np.float64]) -> None:
        while self.state is not EvaluatorState.TERMINATED:
            self.step(forces)

    def step(
        self,
        forces: NDArray[np.float64],
        vector: Optional[NDArray[np.float64]] = None,
        flag: int = ControlFlag.EVALUATE,
    ) -> Optional[float]:
        """One command: receive, branch, compute."""

        if self.state is EvaluatorState.TERMINATED:
            raise RuntimeError("Evaluator has already been terminated")
        self._check_buffer(forces)

        self.state = EvaluatorState.AWAITING_COMMAND
        flag = self.comm.bcast(int(flag) if self.is_coordinator else None, root=0)

        if flag == ControlFlag.TERMINATE:
            self.state = EvaluatorState.TERMINATED
            logger.debug("[calc_forces] rank %d terminated after %d calls", self.ctx.rank, self.ctx.fcalls)
            return None

        if flag == ControlFlag.RESYNC:
            self.state = EvaluatorState.RESYNCING
            self._resync()

        self.state = EvaluatorState.COMPUTING
        vector = self.comm.bcast(vector if self.is_coordinator else None, root=0)
        residual = self._compute(np.asarray(vector, dtype=np.float64), forces)
        self.state = EvaluatorState.AWAITING_COMMAND
        return residual

    def _check_buffer(self, forces: NDArray[np.float64]) -> None:
        size = self.config_set.layout.size
        if not isinstance(forces, np.ndarray) or forces.shape != (size,) or forces.dtype != np.float64:
            raise ValueError(f"Force buffer must be a float64 array of length {size}")
        if not forces.flags.c_contiguous:
            raise ValueError("Force buffer must be contiguous")

    def _resync(self) -> None:
        table = self.comm.bcast(self.table if self.is_coordinator else None, root=0)
        if not self.is_coordinator:
            self.table = table
        self.parametrization.bind(self.table)
        self.config_set.refresh_lookup(self.table, self.ctx.first_conf, self.ctx.n_conf)
        if not np.array_equal(self._column_ends, self.table.end):
            logger.warning(
                "[calc_forces] column ends changed on resync; "
                "neighbour and angle lists keep the cutoffs they were built with"
            )
            self._column_ends = np.array(self.table.end, dtype=np.float64)
        logger.debug("[calc_forces] rank %d resynchronised the potential table", self.ctx.rank)

    def _compute(self, vector: NDArray[np.float64], forces: NDArray[np.float64]) -> Optional[float]:
        sync_table(vector, self.table, self.parametrization)
        self.ctx.charges, self.ctx.kappa = self.parametrization.charges(vector)

        tmpsum = self._local_sum(forces)
        if self.is_coordinator:
            tmpsum += add_punishment(vector, self.parametrization, forces, self.config_set.layout)

        total = self.comm.reduce(tmpsum, root=0)
        self._gather(forces)

        if not self.is_coordinator:
            return None
        self.ctx.fcalls += 1
        if not math.isfinite(total):
            logger.debug("[calc_forces] residual is %r, returning %g", total, LARGE_RESIDUAL)
            return LARGE_RESIDUAL
        return float(total)

    def _local_sum(self, forces: NDArray[np.float64]) -> float:
        configs = self.owned_configs
        n_threads = min(int(self.settings.n_threads), max(1, len(configs)))
        if n_threads > 1:
            with ThreadPoolExecutor(max_workers=n_threads) as executor:
                partials = list(executor.map(lambda conf: self._config_sum(conf, forces), configs))
        else:
            partials = [self._config_sum(conf, forces) for conf in configs]
        tmpsum = 0.0
        for value in partials:
            tmpsum += value
        return tmpsum

    def _config_sum(self, conf: ConfigArrays, forces: NDArray[np.float64]) -> float:
        layout = self.config_set.layout
        a0, n = conf.first_atom, conf.n_atoms
        fview = forces[3 * a0 : 3 * (a0 + n)].reshape(n, 3)
        if conf.use_force:
            fview[:] = -conf.ref_forces
        else:
            fview[:] = 0.0

        use_stress = self.settings.compute_stress and conf.use_stress
        stress = np.zeros(6)
        scratch = EvalScratch.for_config(conf)
        charges, kappa = self.ctx.charges, self.ctx.kappa

        energy = pair_elstat_forces(conf, self.table, charges, kappa, self.settings, fview, stress, scratch, use_stress)
        energy += angular_energy(conf, self.table, scratch)
        if conf.use_force or use_stress:
            angular_forces(conf, self.table, scratch, fview, stress, use_stress)

        return config_residual(conf, fview, energy, stress, charges, kappa, self.settings, forces, layout)

    def _gather(self, forces: NDArray[np.float64]) -> None:
        layout = self.config_set.layout
        ctx = self.ctx
        a0, a1 = 3 * ctx.first_atom, 3 * (ctx.first_atom + ctx.n_atoms)
        e0, e1 = layout.energy_p + ctx.first_conf, layout.energy_p + ctx.first_conf + ctx.n_conf
        s0, s1 = layout.stress_p + 6 * ctx.first_conf, layout.stress_p + 6 * (ctx.first_conf + ctx.n_conf)

        if self.is_coordinator:
            # own segments are already in place
            segment = None
        else:
            segment = (
                a0,
                forces[a0:a1].copy(),
                e0,
                forces[e0:e1].copy(),
                s0,
                forces[s0:s1].copy() if layout.stress else np.zeros(0),
            )
        parts = self.comm.gather(segment, root=0)
        if not self.is_coordinator:
            return
        for part in parts[1:]:
            if part is None:
                continue
            f0, fseg, e_start, eseg, s_start, sseg = part
            forces[f0 : f0 + fseg.shape[0]] = fseg
            forces[e_start : e_start + eseg.shape[0]] = eseg
            if sseg.shape[0]:
                forces[s_start : s_start + sseg.shape[0]] = sseg
