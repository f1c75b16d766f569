"""Three-body angular term ``f(r_ij) * f(r_ik) * g(cos theta_jik)``.

Two passes per configuration: the energy pass evaluates ``g``/``g'`` for
every angle record and caches them, the force pass then combines the cached
cutoff functions of both legs with ``g``/``g'``.  The forces of one triplet
sum to zero: ``dfj + dfk`` on ``i``, ``-dfj`` on ``j`` and ``-dfk`` on ``k``.
"""

from __future__ import annotations

import numpy as np
from numba import njit
from numpy.typing import NDArray

from config_data import ConfigArrays
from force_pair_elstat import EvalScratch
from spline_table import PotentialTable, splint_comb_dir


@njit(nogil=True)
def _angular_energy_numeric(
    xi,
    d2tab,
    col_end,
    angle_ptr,
    ang_j,
    ang_k,
    ang_slot,
    ang_shift,
    ang_step,
    nb_r,
    nb_col,
    f_val,
    g_val,
    g_grad,
    atom_energy,
):
    energy = 0.0
    n_atoms = angle_ptr.shape[0] - 1
    for i in range(n_atoms):
        angener_sum = 0.0
        for a in range(angle_ptr[i], angle_ptr[i + 1]):
            j = ang_j[a]
            k = ang_k[a]
            if nb_r[j] < col_end[nb_col[j, 1]] and nb_r[k] < col_end[nb_col[k, 1]]:
                # cos(theta) lies in [-1, 1] by construction, no bounds check
                g, dg = splint_comb_dir(xi, d2tab, ang_slot[a], ang_shift[a], ang_step[a])
                g_val[a] = g
                g_grad[a] = dg
                angener_sum += f_val[j] * f_val[k] * g
            else:
                g_val[a] = 0.0
                g_grad[a] = 0.0
        atom_energy[i] += angener_sum
        energy += angener_sum
    return energy


@njit(nogil=True)
def _angular_force_numeric(
    col_end,
    angle_ptr,
    ang_j,
    ang_k,
    ang_cos,
    nb_r,
    nb_col,
    nb_nr,
    nb_inv_r,
    nb_dist,
    nb_dist_r,
    f_val,
    f_grad,
    g_val,
    g_grad,
    use_force,
    use_stress,
    forces,
    stress,
):
    n_atoms = angle_ptr.shape[0] - 1
    for i in range(n_atoms):
        for a in range(angle_ptr[i], angle_ptr[i + 1]):
            j = ang_j[a]
            k = ang_k[a]
            if not (nb_r[j] < col_end[nb_col[j, 1]] and nb_r[k] < col_end[nb_col[k, 1]]):
                continue

            dV3j = g_val[a] * f_grad[j] * f_val[k]
            dV3k = g_val[a] * f_val[j] * f_grad[k]
            V3 = f_val[j] * f_val[k] * g_grad[a]

            vlj = V3 * nb_inv_r[j]
            vlk = V3 * nb_inv_r[k]
            vv3j = dV3j - vlj * ang_cos[a]
            vv3k = dV3k - vlk * ang_cos[a]

            dfj_x = vv3j * nb_dist_r[j, 0] + vlj * nb_dist_r[k, 0]
            dfj_y = vv3j * nb_dist_r[j, 1] + vlj * nb_dist_r[k, 1]
            dfj_z = vv3j * nb_dist_r[j, 2] + vlj * nb_dist_r[k, 2]

            dfk_x = vv3k * nb_dist_r[k, 0] + vlk * nb_dist_r[j, 0]
            dfk_y = vv3k * nb_dist_r[k, 1] + vlk * nb_dist_r[j, 1]
            dfk_z = vv3k * nb_dist_r[k, 2] + vlk * nb_dist_r[j, 2]

            if use_force:
                n_j = nb_nr[j]
                n_k = nb_nr[k]
                forces[i, 0] += dfj_x + dfk_x
                forces[i, 1] += dfj_y + dfk_y
                forces[i, 2] += dfj_z + dfk_z

                forces[n_j, 0] -= dfj_x
                forces[n_j, 1] -= dfj_y
                forces[n_j, 2] -= dfj_z

                forces[n_k, 0] -= dfk_x
                forces[n_k, 1] -= dfk_y
                forces[n_k, 2] -= dfk_z

            if use_stress:
                stress[0] -= nb_dist[j, 0] * dfj_x
                stress[1] -= nb_dist[j, 1] * dfj_y
                stress[2] -= nb_dist[j, 2] * dfj_z
                stress[3] -= nb_dist[j, 0] * dfj_y
                stress[4] -= nb_dist[j, 1] * dfj_z
                stress[5] -= nb_dist[j, 2] * dfj_x

                stress[0] -= nb_dist[k, 0] * dfk_x
                stress[1] -= nb_dist[k, 1] * dfk_y
                stress[2] -= nb_dist[k, 2] * dfk_z
                stress[3] -= nb_dist[k, 0] * dfk_y
                stress[4] -= nb_dist[k, 1] * dfk_z
                stress[5] -= nb_dist[k, 2] * dfk_x


def angular_energy(conf: ConfigArrays, table: PotentialTable, scratch: EvalScratch) -> float:
    """Energy pass; needs ``scratch.f_val`` from the pair pass."""

    return _angular_energy_numeric(
        table.values,
        table.d2tab,
        table.end,
        conf.angle_ptr,
        conf.ang_j,
        conf.ang_k,
        conf.ang_slot,
        conf.ang_shift,
        conf.ang_step,
        conf.nb_r,
        conf.nb_col,
        scratch.f_val,
        scratch.g_val,
        scratch.g_grad,
        scratch.atom_energy,
    )


def angular_forces(
    conf: ConfigArrays,
    table: PotentialTable,
    scratch: EvalScratch,
    forces: NDArray[np.float64],
    stress: NDArray[np.float64],
    use_stress: bool = False,
) -> None:
    """Force pass; needs the energy pass to have filled ``g_val``/``g_grad``."""

    _angular_force_numeric(
        table.end,
        conf.angle_ptr,
        conf.ang_j,
        conf.ang_k,
        conf.ang_cos,
        conf.nb_r,
        conf.nb_col,
        conf.nb_nr,
        conf.nb_inv_r,
        conf.nb_dist,
        conf.nb_dist_r,
        scratch.f_val,
        scratch.f_grad,
        scratch.g_val,
        scratch.g_grad,
        bool(conf.use_force),
        bool(use_stress),
        forces,
        stress,
    )
