"""Reference configurations, neighbour lists and the force buffer layout.

Configurations are described by plain records (:class:`AtomRecord`,
:class:`NeighborRecord`, :class:`AngleRecord`) and then packed into flat
CSR-style arrays (:class:`ConfigArrays`) so that the numba kernels never
touch Python objects.

Neighbour lists are *full*: every pair shows up in the lists of both atoms,
with the displacement pointing from the owner to the (possibly periodic
image of the) neighbour.  An atom that sees a periodic image of itself
keeps that neighbour with ``nr`` equal to its own index.
"""

from __future__ import annotations

import itertools
import math
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray
from tqdm import tqdm

from spline_table import PotentialTable


@dataclass
class NeighborRecord:
    nr: int
    type: int
    r: float
    dist: NDArray[np.float64]
    col: Tuple[int, int]

    @property
    def inv_r(self) -> float:
        return 1.0 / self.r

    @property
    def dist_r(self) -> NDArray[np.float64]:
        return self.dist * self.inv_r


@dataclass
class AngleRecord:
    """Neighbour pair (j, k) of one atom, by position in the atom's neighbour list."""

    j: int
    k: int
    cos: float


@dataclass
class AtomRecord:
    type: int
    absforce: float = 0.0
    conf: int = 0
    contrib: bool = True
    neigh: List[NeighborRecord] = field(default_factory=list)
    angles: List[AngleRecord] = field(default_factory=list)


@dataclass
class ConfigArrays:
    """One configuration, packed for the kernels."""

    index: int
    first_atom: int
    weight: float
    volume: float
    use_force: bool
    use_stress: bool
    types: NDArray[np.int64]
    absforce: NDArray[np.float64]
    contrib: NDArray[np.bool_]
    neigh_ptr: NDArray[np.int64]
    nb_nr: NDArray[np.int64]
    nb_type: NDArray[np.int64]
    nb_r: NDArray[np.float64]
    nb_inv_r: NDArray[np.float64]
    nb_dist: NDArray[np.float64]
    nb_dist_r: NDArray[np.float64]
    nb_col: NDArray[np.int64]
    angle_ptr: NDArray[np.int64]
    ang_j: NDArray[np.int64]
    ang_k: NDArray[np.int64]
    ang_cos: NDArray[np.float64]
    ang_col: NDArray[np.int64]
    ref_forces: NDArray[np.float64]
    ref_energy: float
    ref_stress: NDArray[np.float64]
    nb_slot: NDArray[np.int64] = field(default=None)  # type: ignore[assignment]
    nb_shift: NDArray[np.float64] = field(default=None)  # type: ignore[assignment]
    nb_step: NDArray[np.float64] = field(default=None)  # type: ignore[assignment]
    ang_slot: NDArray[np.int64] = field(default=None)  # type: ignore[assignment]
    ang_shift: NDArray[np.float64] = field(default=None)  # type: ignore[assignment]
    ang_step: NDArray[np.float64] = field(default=None)  # type: ignore[assignment]

    @property
    def n_atoms(self) -> int:
        return int(self.types.shape[0])

    @property
    def n_neighbors(self) -> int:
        return int(self.nb_r.shape[0])

    @property
    def n_angles(self) -> int:
        return int(self.ang_cos.shape[0])


def refresh_lookup(config: ConfigArrays, table: PotentialTable) -> None:
    """(Re)compute spline lookup coordinates of all neighbours and angles."""

    m = config.n_neighbors
    config.nb_slot = np.zeros((m, 2), dtype=np.int64)
    config.nb_shift = np.zeros((m, 2), dtype=np.float64)
    config.nb_step = np.ones((m, 2), dtype=np.float64)
    if m:
        for which in range(2):
            slot, shift, step = table.lookup_many(config.nb_col[:, which], config.nb_r)
            config.nb_slot[:, which] = slot
            config.nb_shift[:, which] = shift
            config.nb_step[:, which] = step
    config.ang_slot, config.ang_shift, config.ang_step = table.lookup_many(config.ang_col, config.ang_cos)


def pack_configuration(
    atoms: Sequence[AtomRecord],
    table: PotentialTable,
    *,
    index: int = 0,
    first_atom: int = 0,
    weight: float = 1.0,
    volume: float = 1.0,
    use_force: bool = True,
    use_stress: bool = False,
    ref_forces: Optional[NDArray[np.float64]] = None,
    ref_energy: float = 0.0,
    ref_stress: Optional[Sequence[float]] = None,
) -> ConfigArrays:
    if not atoms:
        raise ValueError(f"Configuration {index} has no atoms")
    n = len(atoms)
    neigh_ptr = np.zeros(n + 1, dtype=np.int64)
    angle_ptr = np.zeros(n + 1, dtype=np.int64)
    nb_nr: List[int] = []
    nb_type: List[int] = []
    nb_r: List[float] = []
    nb_dist: List[NDArray[np.float64]] = []
    nb_col: List[Tuple[int, int]] = []
    ang_j: List[int] = []
    ang_k: List[int] = []
    ang_cos: List[float] = []
    ang_col: List[int] = []

    for i, atom in enumerate(atoms):
        if atom.conf != index:
            raise ValueError(f"Atom {i} belongs to configuration {atom.conf}, not {index}")
        base = len(nb_r)
        for neigh in atom.neigh:
            if not 0 <= neigh.nr < n:
                raise ValueError(
                    f"Neighbour index {neigh.nr} of atom {i} lies outside its configuration"
                )
            nb_nr.append(int(neigh.nr))
            nb_type.append(int(neigh.type))
            nb_r.append(float(neigh.r))
            nb_dist.append(np.asarray(neigh.dist, dtype=np.float64))
            nb_col.append((int(neigh.col[0]), int(neigh.col[1])))
        for angle in atom.angles:
            if not (0 <= angle.j < angle.k < len(atom.neigh)):
                raise ValueError(f"Angle record ({angle.j}, {angle.k}) of atom {i} is not an ordered neighbour pair")
            ang_j.append(base + angle.j)
            ang_k.append(base + angle.k)
            ang_cos.append(float(angle.cos))
            ang_col.append(table.g_col(atom.type))
        neigh_ptr[i + 1] = len(nb_r)
        angle_ptr[i + 1] = len(ang_cos)

    r = np.asarray(nb_r, dtype=np.float64)
    dist = np.asarray(nb_dist, dtype=np.float64).reshape(-1, 3)
    forces0 = np.zeros((n, 3)) if ref_forces is None else np.asarray(ref_forces, dtype=np.float64).reshape(n, 3)
    stress0 = np.zeros(6) if ref_stress is None else np.asarray(ref_stress, dtype=np.float64)
    if stress0.shape != (6,):
        raise ValueError("Reference stress needs six components (xx, yy, zz, xy, yz, zx)")

    config = ConfigArrays(
        index=index,
        first_atom=first_atom,
        weight=float(weight),
        volume=float(volume),
        use_force=bool(use_force),
        use_stress=bool(use_stress),
        types=np.asarray([atom.type for atom in atoms], dtype=np.int64),
        absforce=np.asarray([atom.absforce for atom in atoms], dtype=np.float64),
        contrib=np.asarray([atom.contrib for atom in atoms], dtype=np.bool_),
        neigh_ptr=neigh_ptr,
        nb_nr=np.asarray(nb_nr, dtype=np.int64),
        nb_type=np.asarray(nb_type, dtype=np.int64),
        nb_r=r,
        nb_inv_r=1.0 / r,
        nb_dist=dist,
        nb_dist_r=dist / r[:, None] if r.shape[0] else dist.copy(),
        nb_col=np.asarray(nb_col, dtype=np.int64).reshape(-1, 2),
        angle_ptr=angle_ptr,
        ang_j=np.asarray(ang_j, dtype=np.int64),
        ang_k=np.asarray(ang_k, dtype=np.int64),
        ang_cos=np.asarray(ang_cos, dtype=np.float64),
        ang_col=np.asarray(ang_col, dtype=np.int64),
        ref_forces=forces0,
        ref_energy=float(ref_energy),
        ref_stress=stress0,
    )
    refresh_lookup(config, table)
    return config


def _image_range(box: NDArray[np.float64], cutoff: float) -> List[int]:
    volume = abs(float(np.linalg.det(box)))
    counts = []
    for axis in range(3):
        other = [box[(axis + 1) % 3], box[(axis + 2) % 3]]
        height = volume / float(np.linalg.norm(np.cross(other[0], other[1])))
        counts.append(int(math.ceil(cutoff / height)))
    return counts


def build_neighbor_records(
    positions: NDArray[np.float64],
    types: Sequence[int],
    table: PotentialTable,
    cutoff: float,
    box: Optional[NDArray[np.float64]] = None,
    conf: int = 0,
) -> List[AtomRecord]:
    """Brute-force full neighbour lists (periodic images included) plus angle records."""

    pos = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
    n = pos.shape[0]
    if len(types) != n:
        raise ValueError("Need one species per atom")

    if box is None:
        shifts = np.zeros((1, 3), dtype=np.int64)
        box_arr = np.eye(3)
    else:
        box_arr = np.asarray(box, dtype=np.float64).reshape(3, 3)
        nx, ny, nz = _image_range(box_arr, cutoff)
        shifts = np.array(
            list(itertools.product(range(-nx, nx + 1), range(-ny, ny + 1), range(-nz, nz + 1))),
            dtype=np.int64,
        )
    offsets = shifts @ box_arr

    atoms: List[AtomRecord] = []
    for i in range(n):
        atom = AtomRecord(type=int(types[i]), conf=conf)
        disp = pos[None, :, :] + offsets[:, None, :] - pos[i]
        r = np.linalg.norm(disp, axis=2)
        mask = (r < cutoff) & (r > 1.0e-10)
        for s_idx, j in zip(*np.nonzero(mask)):
            type2 = int(types[j])
            atom.neigh.append(
                NeighborRecord(
                    nr=int(j),
                    type=type2,
                    r=float(r[s_idx, j]),
                    dist=disp[s_idx, j].copy(),
                    col=(table.pair_col(atom.type, type2), table.f_col(atom.type, type2)),
                )
            )
        for j, k in itertools.combinations(range(len(atom.neigh)), 2):
            neigh_j, neigh_k = atom.neigh[j], atom.neigh[k]
            if neigh_j.r < table.end[neigh_j.col[1]] and neigh_k.r < table.end[neigh_k.col[1]]:
                cos = float(np.dot(neigh_j.dist_r, neigh_k.dist_r))
                atom.angles.append(AngleRecord(j=j, k=k, cos=min(1.0, max(-1.0, cos))))
        atoms.append(atom)
    return atoms


def build_configuration(
    positions: NDArray[np.float64],
    types: Sequence[int],
    table: PotentialTable,
    *,
    box: Optional[NDArray[np.float64]] = None,
    cutoff: Optional[float] = None,
    dp_cut: float = 0.0,
    index: int = 0,
    first_atom: int = 0,
    weight: float = 1.0,
    use_force: bool = True,
    use_stress: bool = False,
    ref_forces: Optional[NDArray[np.float64]] = None,
    ref_energy: float = 0.0,
    ref_stress: Optional[Sequence[float]] = None,
    contrib: Optional[Sequence[bool]] = None,
    volume: Optional[float] = None,
) -> ConfigArrays:
    """Build neighbour/angle records from positions and pack them."""

    if cutoff is None:
        cutoff = max(table.max_cutoff(), float(dp_cut))
    atoms = build_neighbor_records(positions, types, table, cutoff, box=box, conf=index)
    n = len(atoms)
    forces0 = np.zeros((n, 3)) if ref_forces is None else np.asarray(ref_forces, dtype=np.float64).reshape(n, 3)
    for i, atom in enumerate(atoms):
        atom.absforce = float(np.linalg.norm(forces0[i]))
        if contrib is not None:
            atom.contrib = bool(contrib[i])
    if volume is None:
        volume = abs(float(np.linalg.det(np.asarray(box, dtype=np.float64).reshape(3, 3)))) if box is not None else 1.0
    return pack_configuration(
        atoms,
        table,
        index=index,
        first_atom=first_atom,
        weight=weight,
        volume=volume,
        use_force=use_force,
        use_stress=use_stress,
        ref_forces=forces0,
        ref_energy=ref_energy,
        ref_stress=ref_stress,
    )


@dataclass(frozen=True)
class ForceLayout:
    """Offsets into the flat force/energy/stress/punishment buffer."""

    n_atoms: int
    n_conf: int
    stress: bool = False
    n_punish: int = 0

    @property
    def energy_p(self) -> int:
        return 3 * self.n_atoms

    @property
    def stress_p(self) -> int:
        return self.energy_p + self.n_conf

    @property
    def punish_p(self) -> int:
        return self.stress_p + (6 * self.n_conf if self.stress else 0)

    @property
    def size(self) -> int:
        return self.punish_p + self.n_punish


class ConfigSet:
    """All configurations of a fit, their buffer layout and reference vector."""

    def __init__(self, configs: Iterable[ConfigArrays], compute_stress: bool = False, n_punish: int = 0):
        self.configs: List[ConfigArrays] = sorted(configs, key=lambda conf: conf.index)
        expected_atom = 0
        for h, conf in enumerate(self.configs):
            if conf.index != h:
                raise ValueError(f"Configuration indices must be 0..{len(self.configs) - 1}, found {conf.index}")
            if conf.first_atom != expected_atom:
                raise ValueError(
                    f"Configuration {h} starts at atom {conf.first_atom}, expected {expected_atom}"
                )
            if conf.n_atoms == 0:
                raise ValueError(f"Configuration {h} has no atoms")
            expected_atom += conf.n_atoms
        self.layout = ForceLayout(
            n_atoms=expected_atom, n_conf=len(self.configs), stress=compute_stress, n_punish=n_punish
        )
        self.force_0 = self._reference_vector()

    def __len__(self) -> int:
        return len(self.configs)

    def _reference_vector(self) -> NDArray[np.float64]:
        layout = self.layout
        ref = np.zeros(layout.size, dtype=np.float64)
        for conf in self.configs:
            a0 = 3 * conf.first_atom
            ref[a0 : a0 + 3 * conf.n_atoms] = conf.ref_forces.reshape(-1)
            ref[layout.energy_p + conf.index] = conf.ref_energy
            if layout.stress:
                s0 = layout.stress_p + 6 * conf.index
                ref[s0 : s0 + 6] = conf.ref_stress
        return ref

    def new_buffer(self) -> NDArray[np.float64]:
        return np.zeros(self.layout.size, dtype=np.float64)

    def refresh_lookup(self, table: PotentialTable, first: int = 0, count: Optional[int] = None) -> None:
        stop = len(self.configs) if count is None else first + count
        for conf in self.configs[first:stop]:
            refresh_lookup(conf, table)


def partition(n_conf: int, size: int, rank: int) -> Tuple[int, int]:
    """Contiguous block ``(first, count)`` of configurations owned by ``rank``."""

    if size < 1 or not 0 <= rank < size:
        raise ValueError(f"Invalid rank {rank} for communicator of size {size}")
    base, extra = divmod(n_conf, size)
    count = base + (1 if rank < extra else 0)
    first = rank * base + min(rank, extra)
    return first, count


def build_config_set(
    items: Sequence[dict],
    table: PotentialTable,
    *,
    dp_cut: float = 0.0,
    compute_stress: bool = False,
    n_punish: int = 0,
    show_progress: bool = False,
) -> ConfigSet:
    """Build every configuration of a system description (see ``fit_pairang``)."""

    configs: List[ConfigArrays] = []
    first_atom = 0
    for h, item in enumerate(tqdm(items, desc="Building neighbor lists", leave=False, disable=not show_progress)):
        positions = np.asarray(item["positions"], dtype=np.float64).reshape(-1, 3)
        conf = build_configuration(
            positions,
            item["types"],
            table,
            box=item.get("box"),
            dp_cut=dp_cut,
            index=h,
            first_atom=first_atom,
            weight=float(item.get("weight", 1.0)),
            use_force=bool(item.get("use_force", True)),
            use_stress=bool(item.get("use_stress", False)),
            ref_forces=item.get("forces"),
            ref_energy=float(item.get("energy", 0.0)),
            ref_stress=item.get("stress"),
            contrib=item.get("contrib"),
        )
        configs.append(conf)
        first_atom += conf.n_atoms
    return ConfigSet(configs, compute_stress=compute_stress, n_punish=n_punish)
