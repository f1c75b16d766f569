"""Tests for the pair and monopole electrostatics kernel."""

from __future__ import annotations

import numpy as np
import pytest

from config_data import build_configuration
from electrostatics import DP_EPS, elstat_shift
from eval_settings import EvalSettings
from table_factory import CLUSTER, build_table, cluster_energy, poly, run_kernels

WELL = poly(1.0, -6.0, 8.0)  # (r - 3)^2 - 1
PAIR_POLYS = [poly(0.2, -1.2, 1.5), poly(0.1, -0.8, 1.4), poly(0.3, -1.5, 1.6)]
CHARGES = [0.8, -0.8]
KAPPA = 0.3


def make_dimer(table, r=2.5, **kwargs):
    positions = np.array([[0.0, 0.0, 0.0], [r, 0.0, 0.0]])
    return build_configuration(positions, kwargs.pop("types", [0, 0]), table, **kwargs)


def test_dimer_energy_and_forces():
    table = build_table(pair=WELL)
    conf = make_dimer(table)
    energy, forces, _, scratch = run_kernels(conf, table)

    assert energy == pytest.approx(-0.75)
    np.testing.assert_allclose(scratch.atom_energy, [-0.375, -0.375])
    np.testing.assert_allclose(forces, [[-1.0, 0.0, 0.0], [1.0, 0.0, 0.0]], atol=1e-12)


def test_dimer_stress_is_the_pair_virial():
    table = build_table(pair=WELL)
    conf = make_dimer(table, use_stress=True)
    _, _, stress, _ = run_kernels(conf, table, use_stress=True)
    # -r * phi'(r)
    np.testing.assert_allclose(stress, [2.5, 0.0, 0.0, 0.0, 0.0, 0.0], atol=1e-12)


def test_forces_are_skipped_when_not_fitted():
    table = build_table(pair=WELL)
    conf = make_dimer(table, use_force=False)
    energy, forces, _, _ = run_kernels(conf, table)
    assert energy == pytest.approx(-0.75)
    np.testing.assert_array_equal(forces, 0.0)


def test_pairs_beyond_the_column_end_do_not_interact():
    table = build_table(pair=WELL, pair_range=(0.5, 2.0))
    conf = make_dimer(table, cutoff=4.0)
    assert conf.n_neighbors == 2
    energy, forces, _, _ = run_kernels(conf, table)
    assert energy == 0.0
    np.testing.assert_array_equal(forces, 0.0)


@pytest.mark.parametrize("variant", ["shift", "dsf"])
def test_forces_are_minus_the_energy_gradient(variant):
    table = build_table(n_types=2, pair=PAIR_POLYS, f_range=(0.5, 1.1))
    settings = EvalSettings(dp_cut=6.0, elstat_variant=variant)
    types = [0, 1, 0, 1]
    conf = build_configuration(CLUSTER, types, table, cutoff=6.0)
    _, forces, _, _ = run_kernels(conf, table, settings, CHARGES, KAPPA)

    h = 1e-5
    for atom in range(CLUSTER.shape[0]):
        for dim in range(3):
            plus, minus = CLUSTER.copy(), CLUSTER.copy()
            plus[atom, dim] += h
            minus[atom, dim] -= h
            e_plus = cluster_energy(plus, types, table, settings, CHARGES, KAPPA, cutoff=6.0)
            e_minus = cluster_energy(minus, types, table, settings, CHARGES, KAPPA, cutoff=6.0)
            assert forces[atom, dim] == pytest.approx(-(e_plus - e_minus) / (2.0 * h), rel=1e-6, abs=1e-6)
    np.testing.assert_allclose(forces.sum(axis=0), 0.0, atol=1e-10)


def test_core_shell_pair_drops_bare_coulomb_and_force():
    settings = EvalSettings(dp_cut=6.0)
    common = dict(n_types=2, pair_range=(0.5, 2.0), f_range=(0.5, 1.1))
    plain = build_table(**common)
    shell = build_table(core_shell=(1,), **common)
    assert list(shell.cweight) == [1.0, 0.0, 1.0]

    r = 1.2
    e_plain, f_plain, _, _ = run_kernels(make_dimer(plain, r, types=[0, 1], cutoff=6.0), plain, settings, CHARGES, KAPPA)
    e_shell, f_shell, _, _ = run_kernels(make_dimer(shell, r, types=[0, 1], cutoff=6.0), shell, settings, CHARGES, KAPPA)

    qq = CHARGES[0] * CHARGES[1]
    assert e_shell - e_plain == pytest.approx(-DP_EPS * qq / r)
    assert np.any(f_plain != 0.0)
    np.testing.assert_array_equal(f_shell, 0.0)


def self_image_conf(table):
    return build_configuration(np.zeros((1, 3)), [0], table, box=3.0 * np.eye(3), dp_cut=3.5)


def test_periodic_self_image_counts_half():
    settings = EvalSettings(dp_cut=3.5)
    table = build_table(n_types=2, pair_range=(0.5, 2.0), f_range=(0.5, 1.0))
    conf = self_image_conf(table)
    assert conf.n_neighbors == 6
    assert np.all(conf.nb_nr == 0)

    charges = [0.5, -0.5]
    energy, forces, _, scratch = run_kernels(conf, table, settings, charges, KAPPA)
    fn = elstat_shift(3.0, KAPPA, 3.5, DP_EPS)[0]
    assert energy == pytest.approx(6 * 0.5 * 0.5 * 0.25 * fn)
    np.testing.assert_allclose(scratch.el_fn, fn)
    np.testing.assert_allclose(forces, 0.0, atol=1e-12)


def test_periodic_self_image_gradient_counts_half():
    settings = EvalSettings(dp_cut=3.5)
    table = build_table(n_types=2, pair_range=(0.5, 2.0), f_range=(0.5, 1.0))
    conf = build_configuration(np.zeros((1, 3)), [0], table, box=3.0 * np.eye(3), dp_cut=3.5, use_stress=True)

    _, forces, stress, scratch = run_kernels(conf, table, settings, [0.5, -0.5], KAPPA, use_stress=True)
    g = elstat_shift(3.0, KAPPA, 3.5, DP_EPS)[1]
    qq = 0.25
    np.testing.assert_allclose(scratch.el_grad, g)
    np.testing.assert_array_equal(scratch.el_ggrad, 0.0)
    np.testing.assert_allclose(forces, 0.0, atol=1e-12)
    # two images per axis, each -3 * (0.5 * 3 * 0.5 * qq * g)
    np.testing.assert_allclose(stress, [-4.5 * qq * g] * 3 + [0.0] * 3, rtol=1e-12, atol=1e-14)


def test_self_image_core_shell_correction_is_halved_as_well():
    settings = EvalSettings(dp_cut=3.5)
    table = build_table(
        n_types=2,
        pair_range=[(0.5, 3.2), (0.5, 2.0), (0.5, 2.0)],
        f_range=(0.5, 1.0),
        core_shell=(0,),
    )
    conf = self_image_conf(table)
    charges = [0.5, -0.5]
    energy, _, _, _ = run_kernels(conf, table, settings, charges, KAPPA)
    fn = elstat_shift(3.0, KAPPA, 3.5, DP_EPS)[0]
    qq = 0.25
    assert energy == pytest.approx(6 * 0.5 * 0.5 * (qq * fn - DP_EPS * qq / 3.0))


def test_neutral_species_skip_electrostatics():
    settings = EvalSettings(dp_cut=6.0)
    table = build_table(n_types=2, f_range=(0.5, 1.1))
    conf = build_configuration(CLUSTER, [0, 1, 0, 1], table, cutoff=6.0)
    energy, forces, _, _ = run_kernels(conf, table, settings, [0.0, 0.0], KAPPA)
    assert energy == 0.0
    np.testing.assert_array_equal(forces, 0.0)
