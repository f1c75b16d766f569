"""Short-range monopole electrostatics: screened Coulomb tails and self energies.

All gradients are radial derivatives divided by ``r`` so that a force is
simply ``displacement * grad``.
"""

from __future__ import annotations

import math

from numba import njit

# e^2 / (4 pi eps_0) in eV * Angstrom
DP_EPS = 14.40

ELSTAT_VARIANTS = ("shift", "dsf")


@njit(nogil=True)
def elstat_value(r, kappa, dp_eps):
    """Screened Coulomb ``eps * erfc(kappa r) / r`` with its first two reduced derivatives."""

    r2 = r * r
    k2 = kappa * kappa
    pref = 2.0 * dp_eps * kappa / math.sqrt(math.pi)
    gauss = math.exp(-r2 * k2)

    ftail = dp_eps * math.erfc(kappa * r) / r
    gtail = -(ftail + pref * gauss) / r2
    ggtail = (2.0 * k2 * pref * gauss - gtail * 3.0) / r2
    return ftail, gtail, ggtail


@njit(nogil=True)
def elstat_shift(r, kappa, dp_cut, dp_eps):
    """Tail shifted so that value and force vanish at ``dp_cut``."""

    ftail, gtail, _ = elstat_value(r, kappa, dp_eps)
    ftail_cut, gtail_cut, _ = elstat_value(dp_cut, kappa, dp_eps)
    x = r * r - dp_cut * dp_cut
    return ftail - ftail_cut - x * gtail_cut / 2.0, gtail - gtail_cut, 0.0


@njit(nogil=True)
def elstat_dsf(r, kappa, dp_cut, dp_eps):
    """Damped shifted force tail."""

    ftail, gtail, _ = elstat_value(r, kappa, dp_eps)
    ftail_cut, gtail_cut, _ = elstat_value(dp_cut, kappa, dp_eps)
    fnval = ftail - ftail_cut - (r - dp_cut) * gtail_cut * dp_cut
    grad = gtail - gtail_cut * dp_cut / r
    return fnval, grad, 0.0


@njit(nogil=True)
def elstat_tail(r, kappa, dp_cut, dp_eps, dsf):
    if dsf:
        return elstat_dsf(r, kappa, dp_cut, dp_eps)
    return elstat_shift(r, kappa, dp_cut, dp_eps)


def self_energy(qq: float, kappa: float, dp_cut: float, dp_eps: float = DP_EPS, variant: str = "shift") -> float:
    """Self-energy correction of one atom carrying ``q`` (``qq = q * q``)."""

    if variant == "dsf":
        fnval_cut, gtail_cut, _ = elstat_value(dp_cut, kappa, dp_eps)
        return qq * (dp_eps * kappa / math.sqrt(math.pi) + (fnval_cut - gtail_cut * dp_cut * dp_cut) * 0.5)
    if variant == "shift":
        return dp_eps * kappa * qq / math.sqrt(math.pi)
    raise ValueError(f"Unknown electrostatic variant '{variant}', expected one of {ELSTAT_VARIANTS}")
