"""Tabulated potential columns and cubic-spline point evaluation.

The potential is held in one flat buffer ``values`` laid out column by
column as ``[grad_left, grad_right, v_0, ..., v_{n-1}]``.  ``first[col]``
points at ``v_0`` of a column, so a neighbour only needs an absolute
``slot`` into the buffer, the fractional ``shift`` inside the knot interval
and the interval width ``step`` to evaluate a column.

Column order for ``n`` species (``paircol = n * (n + 1) / 2``):

* ``paircol`` pair potential columns ``phi_ab``
* ``paircol`` cutoff-function columns ``f_ab``
* ``n`` angular columns ``g_a`` indexed by the central atom's species

A boundary gradient of ``1e30`` or larger requests a natural spline end.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np
from numba import njit
from numpy.typing import NDArray
from scipy.interpolate import CubicSpline

NATURAL_GRADIENT = 1.0e30


def n_pair_columns(n_types: int) -> int:
    return n_types * (n_types + 1) // 2


def pair_column(type1: int, type2: int, n_types: int) -> int:
    """Symmetric pair column index: phi_AA, phi_AB, ..., phi_BB."""

    if type1 > type2:
        type1, type2 = type2, type1
    return type1 * n_types + type2 - (type1 * (type1 + 1)) // 2


def spline_second_derivatives(
    x: NDArray[np.float64],
    y: NDArray[np.float64],
    grad_left: float,
    grad_right: float,
) -> NDArray[np.float64]:
    """Second derivatives of the interpolating cubic spline at the knots ``x``.

    Non-finite knot values or gradients give a non-finite curvature table
    instead of an exception, so a bad parameter vector surfaces as a bad
    residual.
    """

    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    if x.shape[0] < 2:
        raise ValueError("A spline column needs at least two knots")
    if not (np.all(np.isfinite(y)) and np.isfinite(grad_left) and np.isfinite(grad_right)):
        return np.full(x.shape[0], np.nan)

    left = (2, 0.0) if grad_left >= 0.99 * NATURAL_GRADIENT else (1, float(grad_left))
    right = (2, 0.0) if grad_right >= 0.99 * NATURAL_GRADIENT else (1, float(grad_right))
    spline = CubicSpline(x, y, bc_type=(left, right))
    return np.asarray(spline(x, 2), dtype=np.float64)


@njit(nogil=True)
def splint_dir(xi, d2tab, slot, shift, step):
    """Spline value at ``shift`` inside the knot interval starting at ``slot``."""

    a = 1.0 - shift
    p1 = xi[slot]
    p2 = xi[slot + 1]
    d21 = d2tab[slot]
    d22 = d2tab[slot + 1]
    return a * p1 + shift * p2 + ((a * a * a - a) * d21 + (shift * shift * shift - shift) * d22) * (step * step) / 6.0


@njit(nogil=True)
def splint_comb_dir(xi, d2tab, slot, shift, step):
    """Spline value and first derivative in one go."""

    a = 1.0 - shift
    p1 = xi[slot]
    p2 = xi[slot + 1]
    d21 = d2tab[slot]
    d22 = d2tab[slot + 1]
    grad = (p2 - p1) / step + ((3.0 * (shift * shift) - 1.0) * d22 - (3.0 * (a * a) - 1.0) * d21) * step / 6.0
    value = a * p1 + shift * p2 + ((a * a * a - a) * d21 + (shift * shift * shift - shift) * d22) * (step * step) / 6.0
    return value, grad


@dataclass
class SplineColumn:
    """Input description of one tabulated column."""

    x: NDArray[np.float64]
    values: NDArray[np.float64]
    grad_left: float = NATURAL_GRADIENT
    grad_right: float = 0.0
    core_shell: bool = False

    def __post_init__(self) -> None:
        self.x = np.asarray(self.x, dtype=np.float64)
        self.values = np.asarray(self.values, dtype=np.float64)
        if self.x.ndim != 1 or self.x.shape != self.values.shape:
            raise ValueError("Knot coordinates and values must be 1-D arrays of equal length")
        if self.x.shape[0] < 2:
            raise ValueError("A spline column needs at least two knots")
        if np.any(np.diff(self.x) <= 0.0):
            raise ValueError("Knot coordinates must be strictly increasing")

    @classmethod
    def uniform(
        cls,
        begin: float,
        end: float,
        values: Sequence[float],
        grad_left: float = NATURAL_GRADIENT,
        grad_right: float = 0.0,
        core_shell: bool = False,
    ) -> "SplineColumn":
        values = np.asarray(values, dtype=np.float64)
        x = np.linspace(float(begin), float(end), values.shape[0])
        return cls(x=x, values=values, grad_left=grad_left, grad_right=grad_right, core_shell=core_shell)

    @property
    def equidistant(self) -> bool:
        steps = np.diff(self.x)
        return bool(np.allclose(steps, steps[0], rtol=1e-10, atol=0.0))


@dataclass
class PotentialTable:
    """Dense spline knot table shared by all kernels of one process."""

    n_types: int
    begin: NDArray[np.float64]
    end: NDArray[np.float64]
    step: NDArray[np.float64]
    first: NDArray[np.int64]
    last: NDArray[np.int64]
    equidistant: NDArray[np.bool_]
    xcoord: NDArray[np.float64]
    values: NDArray[np.float64]
    cweight: NDArray[np.float64]
    d2tab: NDArray[np.float64] = field(default=None)  # type: ignore[assignment]

    def __post_init__(self) -> None:
        if self.d2tab is None:
            self.d2tab = np.zeros_like(self.values)

    @classmethod
    def from_columns(cls, n_types: int, columns: Sequence[SplineColumn]) -> "PotentialTable":
        paircol = n_pair_columns(n_types)
        expected = 2 * paircol + n_types
        if len(columns) != expected:
            raise ValueError(
                f"{n_types} species need {expected} columns (phi, f, g), got {len(columns)}"
            )
        for col, column in enumerate(columns):
            if column.core_shell and col >= paircol:
                raise ValueError(f"Only pair columns can be flagged core-shell (column {col})")

        n_cols = len(columns)
        begin = np.empty(n_cols)
        end = np.empty(n_cols)
        step = np.empty(n_cols)
        first = np.empty(n_cols, dtype=np.int64)
        last = np.empty(n_cols, dtype=np.int64)
        equidistant = np.empty(n_cols, dtype=np.bool_)
        xcoord: List[float] = []
        values: List[float] = []
        for col, column in enumerate(columns):
            begin[col] = column.x[0]
            end[col] = column.x[-1]
            equidistant[col] = column.equidistant
            step[col] = (column.x[-1] - column.x[0]) / (column.x.shape[0] - 1)
            values.extend([column.grad_left, column.grad_right])
            xcoord.extend([0.0, 0.0])
            first[col] = len(values)
            values.extend(column.values.tolist())
            xcoord.extend(column.x.tolist())
            last[col] = len(values) - 1

        cweight = np.array(
            [0.0 if columns[col].core_shell else 1.0 for col in range(paircol)], dtype=np.float64
        )
        table = cls(
            n_types=n_types,
            begin=begin,
            end=end,
            step=step,
            first=first,
            last=last,
            equidistant=equidistant,
            xcoord=np.asarray(xcoord, dtype=np.float64),
            values=np.asarray(values, dtype=np.float64),
            cweight=cweight,
        )
        table.update_second_derivatives()
        return table

    @property
    def n_columns(self) -> int:
        return int(self.first.shape[0])

    @property
    def paircol(self) -> int:
        return n_pair_columns(self.n_types)

    def pair_col(self, type1: int, type2: int) -> int:
        return pair_column(type1, type2, self.n_types)

    def f_col(self, type1: int, type2: int) -> int:
        return self.paircol + pair_column(type1, type2, self.n_types)

    def g_col(self, type1: int) -> int:
        return 2 * self.paircol + type1

    def knots(self, col: int) -> NDArray[np.float64]:
        return self.xcoord[self.first[col] : self.last[col] + 1]

    def column_values(self, col: int) -> NDArray[np.float64]:
        return self.values[self.first[col] : self.last[col] + 1]

    def set_column(self, col: int, values: NDArray[np.float64], grad_left: float, grad_right: float) -> None:
        first, last = int(self.first[col]), int(self.last[col])
        self.values[first : last + 1] = values
        self.values[first - 2] = grad_left
        self.values[first - 1] = grad_right

    def update_second_derivatives(self) -> None:
        """Recompute the curvature table from the current knot values."""

        for col in range(self.n_columns):
            first, last = int(self.first[col]), int(self.last[col])
            self.d2tab[first : last + 1] = spline_second_derivatives(
                self.xcoord[first : last + 1],
                self.values[first : last + 1],
                float(self.values[first - 2]),
                float(self.values[first - 1]),
            )

    def lookup(self, col: int, x: float) -> Tuple[int, float, float]:
        slot, shift, step = self.lookup_many(np.array([col]), np.array([x], dtype=np.float64))
        return int(slot[0]), float(shift[0]), float(step[0])

    def lookup_many(
        self, cols: NDArray[np.int64], x: NDArray[np.float64]
    ) -> Tuple[NDArray[np.int64], NDArray[np.float64], NDArray[np.float64]]:
        """Spline lookup coordinates (slot, shift, step) for points ``x`` in columns ``cols``.

        The knot interval is clamped to the column, so points outside the
        grid extrapolate from the boundary interval.
        """

        cols = np.asarray(cols, dtype=np.int64)
        x = np.asarray(x, dtype=np.float64)
        slot = np.zeros(x.shape[0], dtype=np.int64)
        shift = np.zeros(x.shape[0], dtype=np.float64)
        step = np.ones(x.shape[0], dtype=np.float64)
        for col in np.unique(cols):
            mask = cols == col
            first = int(self.first[col])
            n_knots = int(self.last[col]) - first + 1
            if self.equidistant[col]:
                h = float(self.step[col])
                rr = x[mask] - self.begin[col]
                k = np.clip(np.floor(rr / h).astype(np.int64), 0, n_knots - 2)
                slot[mask] = first + k
                shift[mask] = (rr - k * h) / h
                step[mask] = h
            else:
                knots = self.knots(int(col))
                k = np.clip(np.searchsorted(knots, x[mask], side="right") - 1, 0, n_knots - 2)
                h = knots[k + 1] - knots[k]
                slot[mask] = first + k
                shift[mask] = (x[mask] - knots[k]) / h
                step[mask] = h
        return slot, shift, step

    def evaluate(self, col: int, x: float, with_gradient: bool = False):
        """Convenience point evaluation outside the kernels."""

        slot, shift, step = self.lookup(col, x)
        if with_gradient:
            return splint_comb_dir(self.values, self.d2tab, slot, shift, step)
        return splint_dir(self.values, self.d2tab, slot, shift, step)

    def max_cutoff(self) -> float:
        """Largest end of any pair or cutoff-function column."""

        return float(np.max(self.end[: 2 * self.paircol]))

    def copy(self) -> "PotentialTable":
        return PotentialTable(
            n_types=self.n_types,
            begin=self.begin.copy(),
            end=self.end.copy(),
            step=self.step.copy(),
            first=self.first.copy(),
            last=self.last.copy(),
            equidistant=self.equidistant.copy(),
            xcoord=self.xcoord.copy(),
            values=self.values.copy(),
            cweight=self.cweight.copy(),
            d2tab=self.d2tab.copy(),
        )


def columns_from_functions(
    grids: Sequence[Sequence[float]],
    functions: Sequence,
    core_shell: Optional[Sequence[bool]] = None,
) -> List[SplineColumn]:
    """Sample ``(value, gradient)`` callables on the given grids, clamping both ends."""

    columns: List[SplineColumn] = []
    for idx, (grid, fn) in enumerate(zip(grids, functions)):
        x = np.asarray(grid, dtype=np.float64)
        value, grad = fn(x)
        columns.append(
            SplineColumn(
                x=x,
                values=np.broadcast_to(value, x.shape).copy(),
                grad_left=float(np.broadcast_to(grad, x.shape)[0]),
                grad_right=float(np.broadcast_to(grad, x.shape)[-1]),
                core_shell=bool(core_shell[idx]) if core_shell is not None else False,
            )
        )
    return columns
