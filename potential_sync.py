"""Map the optimiser's parameter vector onto the dense spline table.

Key features
============
* **Four table formats** – ``DIRECT`` (the vector *is* the flat table),
  ``ANALYTIC_EQDIST``/``ANALYTIC_NONEQDIST`` (one closed-form function per
  column, sampled onto the column's knots) and ``HYBRID`` (a subset of free
  knot values written into a fixed dense table).
* **Electrostatic tail** – when electrostatics is active the vector ends
  with ``n_types - 1`` charges and the screening parameter ``kappa``.  The
  charge of the last species is derived so that the abundance-weighted
  total charge vanishes.
* **Soft bounds** – parameters outside their bounds are clamped for the
  mapping and punished quadratically in the residual; they are never
  rejected.

Second derivatives are recomputed on every :func:`sync_table` call, whether
or not any value changed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable, Dict, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

from spline_table import PotentialTable

APOT_PUNISH = 10.0e6

AnalyticFn = Callable[[NDArray[np.float64], NDArray[np.float64]], Tuple[NDArray[np.float64], NDArray[np.float64]]]


class TableFormat(IntEnum):
    DIRECT = 0
    ANALYTIC_EQDIST = 3
    ANALYTIC_NONEQDIST = 4
    HYBRID = 5


@dataclass(frozen=True)
class AnalyticFunction:
    name: str
    n_params: int
    evaluate: AnalyticFn


ANALYTIC_FUNCTIONS: Dict[str, AnalyticFunction] = {}


def register_function(name: str, n_params: int) -> Callable[[AnalyticFn], AnalyticFn]:
    def decorator(fn: AnalyticFn) -> AnalyticFn:
        if name in ANALYTIC_FUNCTIONS:
            raise ValueError(f"Analytic function already registered: {name}")
        ANALYTIC_FUNCTIONS[name] = AnalyticFunction(name=name, n_params=n_params, evaluate=fn)
        return fn

    return decorator


def get_function(name: str) -> AnalyticFunction:
    if name not in ANALYTIC_FUNCTIONS:
        raise KeyError(f"Unknown analytic function: {name}")
    return ANALYTIC_FUNCTIONS[name]


@register_function("lj", 2)
def _lj(x, p):
    epsilon, sigma = p
    sr6 = (sigma / x) ** 6
    return 4.0 * epsilon * (sr6 * sr6 - sr6), 4.0 * epsilon * (-12.0 * sr6 * sr6 + 6.0 * sr6) / x


@register_function("morse", 3)
def _morse(x, p):
    d_e, a, r_e = p
    e = np.exp(-a * (x - r_e))
    return d_e * ((1.0 - e) ** 2 - 1.0), 2.0 * d_e * a * e * (1.0 - e)


@register_function("buckingham", 3)
def _buckingham(x, p):
    amp, rho, c6 = p
    e = np.exp(-x / rho)
    return amp * e - c6 / x**6, -amp / rho * e + 6.0 * c6 / x**7


@register_function("power", 2)
def _power(x, p):
    amp, expo = p
    return amp * x ** (-expo), -expo * amp * x ** (-expo - 1.0)


@register_function("exp_decay", 2)
def _exp_decay(x, p):
    amp, lam = p
    value = amp * np.exp(-lam * x)
    return value, -lam * value


@register_function("cos_poly", 4)
def _cos_poly(x, p):
    c0, c1, c2, c3 = p
    return c0 + x * (c1 + x * (c2 + x * c3)), c1 + x * (2.0 * c2 + x * 3.0 * c3)


@register_function("const", 1)
def _const(x, p):
    return np.full_like(x, p[0]), np.zeros_like(x)


@dataclass
class Parametrization:
    """How a flat parameter vector maps onto a :class:`PotentialTable`."""

    format: TableFormat
    n_types: int
    ratio: NDArray[np.float64]
    elstat: bool = True
    functions: Sequence[str] = ()
    free_index: Optional[NDArray[np.int64]] = None
    lower: Optional[NDArray[np.float64]] = None
    upper: Optional[NDArray[np.float64]] = None
    body_length: int = field(init=False, default=0)

    def __post_init__(self) -> None:
        self.format = TableFormat(int(self.format))
        self.ratio = np.asarray(self.ratio, dtype=np.float64)
        if self.ratio.shape != (self.n_types,):
            raise ValueError(f"Need one abundance ratio per species ({self.n_types}), got {self.ratio.shape}")
        if self.elstat and self.ratio[-1] == 0.0:
            raise ValueError("The abundance ratio of the last species must be non-zero")
        if self.free_index is not None:
            self.free_index = np.asarray(self.free_index, dtype=np.int64)

    def bind(self, table: PotentialTable) -> "Parametrization":
        """Check the parametrization against ``table`` and fix the vector layout."""

        if table.n_types != self.n_types:
            raise ValueError("Parametrization and table disagree on the number of species")
        if self.format is TableFormat.DIRECT:
            self.body_length = int(table.values.shape[0])
        elif self.format in (TableFormat.ANALYTIC_EQDIST, TableFormat.ANALYTIC_NONEQDIST):
            if len(self.functions) != table.n_columns:
                raise ValueError(
                    f"Analytic format needs one function per column ({table.n_columns}), got {len(self.functions)}"
                )
            if self.format is TableFormat.ANALYTIC_EQDIST and not bool(np.all(table.equidistant)):
                raise ValueError("Format 3 requires equidistant columns; use format 4 for explicit knots")
            self.body_length = sum(get_function(name).n_params for name in self.functions)
        else:
            if self.free_index is None:
                raise ValueError("Hybrid format requires free_index")
            value_slots = np.zeros(table.values.shape[0], dtype=bool)
            for col in range(table.n_columns):
                value_slots[table.first[col] : table.last[col] + 1] = True
            if np.any(self.free_index < 0) or np.any(self.free_index >= table.values.shape[0]):
                raise ValueError("free_index points outside the potential table")
            if not np.all(value_slots[self.free_index]):
                raise ValueError("free_index may only select knot values, not boundary gradients")
            self.body_length = int(self.free_index.shape[0])

        n = self.vector_length
        for name in ("lower", "upper"):
            bound = getattr(self, name)
            if bound is not None:
                bound = np.asarray(bound, dtype=np.float64)
                if bound.shape != (n,):
                    raise ValueError(f"{name} bounds must have length {n}, got {bound.shape}")
                setattr(self, name, bound)
        return self

    @property
    def n_elstat(self) -> int:
        return self.n_types if self.elstat else 0

    @property
    def vector_length(self) -> int:
        return self.body_length + self.n_elstat

    def body(self, vector: NDArray[np.float64]) -> NDArray[np.float64]:
        return vector[: self.body_length]

    def charges(self, vector: NDArray[np.float64]) -> Tuple[NDArray[np.float64], float]:
        """Per-species charges (last one derived for neutrality) and ``kappa``."""

        charge = np.zeros(self.n_types, dtype=np.float64)
        if not self.elstat:
            return charge, 0.0
        tail = vector[self.body_length : self.body_length + self.n_types]
        sum_charges = 0.0
        for i in range(self.n_types - 1):
            if tail[i]:
                charge[i] = tail[i]
                sum_charges += self.ratio[i] * charge[i]
        charge[self.n_types - 1] = -sum_charges / self.ratio[self.n_types - 1]
        kappa = float(tail[self.n_types - 1]) if tail[self.n_types - 1] else 0.0
        return charge, kappa

    def clamp(self, vector: NDArray[np.float64]) -> NDArray[np.float64]:
        clamped = np.array(vector, dtype=np.float64)
        if self.lower is not None:
            clamped = np.where(clamped < self.lower, self.lower, clamped)
        if self.upper is not None:
            clamped = np.where(clamped > self.upper, self.upper, clamped)
        return clamped

    def punish(self, vector: NDArray[np.float64]) -> Tuple[float, NDArray[np.float64]]:
        """Quadratic punishment for every parameter outside its bounds."""

        vector = np.asarray(vector, dtype=np.float64)
        excess = np.zeros(vector.shape[0], dtype=np.float64)
        if self.lower is not None:
            below = vector - self.lower
            excess = np.where(below < 0.0, below, excess)
        if self.upper is not None:
            above = vector - self.upper
            excess = np.where(above > 0.0, above, excess)
        per_param = APOT_PUNISH * excess * excess
        return float(np.sum(per_param)), per_param

    def initial_vector(
        self,
        table: PotentialTable,
        body: Optional[Sequence[float]] = None,
        charges: Sequence[float] = (),
        kappa: float = 0.0,
    ) -> NDArray[np.float64]:
        """Assemble a vector from a body (default: the table itself) and the electrostatic tail."""

        if body is None:
            if self.format is TableFormat.DIRECT:
                body = table.values.copy()
            elif self.format is TableFormat.HYBRID:
                body = table.values[self.free_index].copy()
            else:
                raise ValueError("Analytic formats need explicit function parameters")
        body = np.asarray(body, dtype=np.float64)
        if body.shape != (self.body_length,):
            raise ValueError(f"Parameter body must have length {self.body_length}, got {body.shape}")
        if not self.elstat:
            return body.copy()
        if len(charges) != self.n_types - 1:
            raise ValueError(f"Need {self.n_types - 1} free charges, got {len(charges)}")
        return np.concatenate([body, np.asarray(charges, dtype=np.float64), [float(kappa)]])


def update_calc_table(body: NDArray[np.float64], table: PotentialTable, functions: Sequence[str]) -> None:
    """Sample one analytic function per column onto the column's knots."""

    offset = 0
    for col, name in enumerate(functions):
        fn = get_function(name)
        params = body[offset : offset + fn.n_params]
        offset += fn.n_params
        x = table.knots(col)
        with np.errstate(all="ignore"):
            value, grad = fn.evaluate(x, params)
        value = np.broadcast_to(value, x.shape)
        grad = np.broadcast_to(grad, x.shape)
        table.set_column(col, value, float(grad[0]), float(grad[-1]))


def sync_table(vector: NDArray[np.float64], table: PotentialTable, param: Parametrization) -> None:
    """Bring ``table`` in line with ``vector`` and refresh its curvature data."""

    vector = np.asarray(vector, dtype=np.float64)
    if vector.shape != (param.vector_length,):
        raise ValueError(f"Parameter vector must have length {param.vector_length}, got {vector.shape}")

    if param.format is TableFormat.DIRECT:
        table.values[:] = param.body(vector)
    elif param.format is TableFormat.HYBRID:
        table.values[param.free_index] = param.body(vector)
    else:
        update_calc_table(param.body(param.clamp(vector)), table, param.functions)
    table.update_second_derivatives()
