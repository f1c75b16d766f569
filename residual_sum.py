"""Turn accumulated forces/energies/stresses into weighted squared deviations."""

from __future__ import annotations

from typing import Tuple

import numpy as np
from numpy.typing import NDArray

from config_data import ConfigArrays, ForceLayout
from electrostatics import self_energy
from eval_settings import EvalSettings
from potential_sync import Parametrization


def self_energy_sum(
    types: NDArray[np.int64], charges: NDArray[np.float64], kappa: float, settings: EvalSettings
) -> float:
    """Electrostatic self energy of all charged atoms of one configuration."""

    total = 0.0
    for type1 in types:
        charge = charges[type1]
        if charge:
            total += self_energy(charge * charge, kappa, settings.dp_cut, settings.dp_eps, settings.elstat_variant)
    return total


def config_residual(
    conf: ConfigArrays,
    forces: NDArray[np.float64],
    energy: float,
    stress: NDArray[np.float64],
    charges: NDArray[np.float64],
    kappa: float,
    settings: EvalSettings,
    buffer: NDArray[np.float64],
    layout: ForceLayout,
) -> float:
    """Finish one configuration in ``buffer`` and return its sum of squares.

    ``forces`` is the ``(n_atoms, 3)`` view of the configuration's force
    slots, already holding ``computed - reference``.
    """

    weight = conf.weight
    energy -= self_energy_sum(conf.types, charges, kappa, settings)

    if settings.force_weighting:
        forces /= (settings.force_eps + conf.absforce)[:, None]
    squares = np.sum(forces * forces, axis=1)
    if settings.contrib_filter:
        squares = squares[conf.contrib]
    tmpsum = 0.0
    for value in squares:
        tmpsum += weight * value

    e_slot = layout.energy_p + conf.index
    buffer[e_slot] = energy / conf.n_atoms - conf.ref_energy
    tmpsum += weight * settings.eweight * buffer[e_slot] ** 2

    if layout.stress:
        s_slot = layout.stress_p + 6 * conf.index
        if settings.compute_stress and conf.use_stress:
            buffer[s_slot : s_slot + 6] = stress / conf.volume - conf.ref_stress
            for value in buffer[s_slot : s_slot + 6]:
                tmpsum += weight * settings.sweight * value * value
        else:
            buffer[s_slot : s_slot + 6] = 0.0
    return tmpsum


def add_punishment(
    vector: NDArray[np.float64],
    param: Parametrization,
    buffer: NDArray[np.float64],
    layout: ForceLayout,
) -> float:
    """Soft constraint for out-of-bounds parameters; coordinator only."""

    total, per_param = param.punish(vector)
    if layout.n_punish:
        n = min(layout.n_punish, per_param.shape[0])
        buffer[layout.punish_p : layout.punish_p + n] = per_param[:n]
    return total


def split_buffer(buffer: NDArray[np.float64], layout: ForceLayout) -> Tuple[NDArray[np.float64], ...]:
    """Views of the force, energy, stress and punishment segments."""

    forces = buffer[: layout.energy_p].reshape(-1, 3)
    energies = buffer[layout.energy_p : layout.stress_p]
    stresses = buffer[layout.stress_p : layout.punish_p].reshape(-1, 6)
    punish = buffer[layout.punish_p : layout.size]
    return forces, energies, stresses, punish
