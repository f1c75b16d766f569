"""Pair potential and monopole electrostatics, one configuration at a time.

For every atom ``i`` and every neighbour ``j`` of its full list:

* the pair potential adds ``0.5 * phi(r)`` to the energy and
  ``dist_r * phi'(r)`` to the force on ``i`` (the reaction on ``j`` comes
  from ``j``'s own list);
* the screened Coulomb tail adds ``0.5 * q_i q_j * tail(r)`` to the energy
  and half of the pair force to ``i``, the other half (negated) to ``j``;
* a core-shell pair inside its pair column loses the bare Coulomb energy
  and all electrostatic force;
* an atom meeting its own periodic image gets half of the electrostatic
  contribution;
* the cutoff function ``f(r)``, ``f'(r)`` is cached for the angular pass.

The tail value, gradient and curvature are computed once per neighbour
into ``EvalScratch`` before the pair loop reads them back.

Stress components are ordered ``xx, yy, zz, xy, yz, zx``.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from numba import njit
from numpy.typing import NDArray

from config_data import ConfigArrays
from electrostatics import elstat_tail
from eval_settings import EvalSettings
from spline_table import PotentialTable, splint_comb_dir, splint_dir


@dataclass
class EvalScratch:
    """Per-evaluation caches written by one pass and read by a later one."""

    f_val: NDArray[np.float64]
    f_grad: NDArray[np.float64]
    el_fn: NDArray[np.float64]
    el_grad: NDArray[np.float64]
    el_ggrad: NDArray[np.float64]
    g_val: NDArray[np.float64]
    g_grad: NDArray[np.float64]
    atom_energy: NDArray[np.float64]

    @classmethod
    def for_config(cls, conf: ConfigArrays) -> "EvalScratch":
        m, n_ang = conf.n_neighbors, conf.n_angles
        return cls(
            f_val=np.zeros(m),
            f_grad=np.zeros(m),
            el_fn=np.zeros(m),
            el_grad=np.zeros(m),
            el_ggrad=np.zeros(m),
            g_val=np.zeros(n_ang),
            g_grad=np.zeros(n_ang),
            atom_energy=np.zeros(conf.n_atoms),
        )


@njit(nogil=True)
def _elstat_tail_numeric(nb_r, kappa, dp_cut, dp_eps, dsf, el_fn, el_grad, el_ggrad):
    for j in range(nb_r.shape[0]):
        r = nb_r[j]
        if r < dp_cut:
            fn, grad, ggrad = elstat_tail(r, kappa, dp_cut, dp_eps, dsf)
            el_fn[j] = fn
            el_grad[j] = grad
            el_ggrad[j] = ggrad
        else:
            el_fn[j] = 0.0
            el_grad[j] = 0.0
            el_ggrad[j] = 0.0


@njit(nogil=True)
def _pair_elstat_numeric(
    xi,
    d2tab,
    col_end,
    cweight,
    charges,
    dp_cut,
    dp_eps,
    need_grad,
    use_force,
    use_stress,
    types,
    neigh_ptr,
    nb_nr,
    nb_type,
    nb_r,
    nb_inv_r,
    nb_dist,
    nb_dist_r,
    nb_col,
    nb_slot,
    nb_shift,
    nb_step,
    forces,
    stress,
    atom_energy,
    f_val,
    f_grad,
    el_fn,
    el_grad,
):
    energy = 0.0
    n_atoms = types.shape[0]
    for i in range(n_atoms):
        type1 = types[i]
        for j in range(neigh_ptr[i], neigh_ptr[i + 1]):
            r = nb_r[j]
            col0 = nb_col[j, 0]

            # pair potential
            if r < col_end[col0]:
                if need_grad:
                    phi_val, phi_grad = splint_comb_dir(xi, d2tab, nb_slot[j, 0], nb_shift[j, 0], nb_step[j, 0])
                else:
                    phi_val = splint_dir(xi, d2tab, nb_slot[j, 0], nb_shift[j, 0], nb_step[j, 0])
                    phi_grad = 0.0
                energy += 0.5 * phi_val
                atom_energy[i] += 0.5 * phi_val

                if need_grad:
                    fx = nb_dist_r[j, 0] * phi_grad
                    fy = nb_dist_r[j, 1] * phi_grad
                    fz = nb_dist_r[j, 2] * phi_grad
                    if use_force:
                        forces[i, 0] += fx
                        forces[i, 1] += fy
                        forces[i, 2] += fz
                    if use_stress:
                        stress[0] -= 0.5 * nb_dist[j, 0] * fx
                        stress[1] -= 0.5 * nb_dist[j, 1] * fy
                        stress[2] -= 0.5 * nb_dist[j, 2] * fz
                        stress[3] -= 0.5 * nb_dist[j, 0] * fy
                        stress[4] -= 0.5 * nb_dist[j, 1] * fz
                        stress[5] -= 0.5 * nb_dist[j, 2] * fx

            type2 = nb_type[j]
            qq = charges[type1] * charges[type2]
            if r < dp_cut and (charges[type1] != 0.0 or charges[type2] != 0.0):
                fnval = qq * el_fn[j]
                grad = qq * el_grad[j]

                # core-shell pair: the spring already carries the Coulomb term
                if cweight[col0] == 0.0 and r <= col_end[col0]:
                    fnval -= dp_eps * qq * nb_inv_r[j]
                    grad = 0.0

                if nb_nr[j] == i:
                    fnval *= 0.5
                    grad *= 0.5

                energy += 0.5 * fnval
                atom_energy[i] += 0.5 * fnval

                if need_grad:
                    tx = 0.5 * nb_dist[j, 0] * grad
                    ty = 0.5 * nb_dist[j, 1] * grad
                    tz = 0.5 * nb_dist[j, 2] * grad
                    if use_force:
                        n_j = nb_nr[j]
                        forces[i, 0] += tx
                        forces[i, 1] += ty
                        forces[i, 2] += tz
                        forces[n_j, 0] -= tx
                        forces[n_j, 1] -= ty
                        forces[n_j, 2] -= tz
                    if use_stress:
                        stress[0] -= nb_dist[j, 0] * tx
                        stress[1] -= nb_dist[j, 1] * ty
                        stress[2] -= nb_dist[j, 2] * tz
                        stress[3] -= nb_dist[j, 0] * ty
                        stress[4] -= nb_dist[j, 1] * tz
                        stress[5] -= nb_dist[j, 2] * tx

            # cutoff function, reused by every angle this neighbour takes part in
            col1 = nb_col[j, 1]
            if r < col_end[col1]:
                f, df = splint_comb_dir(xi, d2tab, nb_slot[j, 1], nb_shift[j, 1], nb_step[j, 1])
                f_val[j] = f
                f_grad[j] = df
            else:
                f_val[j] = 0.0
                f_grad[j] = 0.0
    return energy


def pair_elstat_forces(
    conf: ConfigArrays,
    table: PotentialTable,
    charges: NDArray[np.float64],
    kappa: float,
    settings: EvalSettings,
    forces: NDArray[np.float64],
    stress: NDArray[np.float64],
    scratch: EvalScratch,
    use_stress: bool = False,
) -> float:
    """Accumulate pair and electrostatic terms of ``conf``; returns its energy share.

    ``forces`` is the ``(n_atoms, 3)`` view of this configuration's force
    slots, ``stress`` a 6-vector accumulator.
    """

    use_force = bool(conf.use_force)
    # monopole tail depends on r and kappa only
    _elstat_tail_numeric(
        conf.nb_r,
        float(kappa),
        float(settings.dp_cut),
        float(settings.dp_eps),
        settings.dsf,
        scratch.el_fn,
        scratch.el_grad,
        scratch.el_ggrad,
    )
    return _pair_elstat_numeric(
        table.values,
        table.d2tab,
        table.end,
        table.cweight,
        np.asarray(charges, dtype=np.float64),
        float(settings.dp_cut),
        float(settings.dp_eps),
        use_force or use_stress,
        use_force,
        bool(use_stress),
        conf.types,
        conf.neigh_ptr,
        conf.nb_nr,
        conf.nb_type,
        conf.nb_r,
        conf.nb_inv_r,
        conf.nb_dist,
        conf.nb_dist_r,
        conf.nb_col,
        conf.nb_slot,
        conf.nb_shift,
        conf.nb_step,
        forces,
        stress,
        scratch.atom_energy,
        scratch.f_val,
        scratch.f_grad,
        scratch.el_fn,
        scratch.el_grad,
    )
