"""Docking conformations: rigid ligand poses, torsions, and their flat-vector projection.

A ``Conf`` holds the full pose state of a docking search (ligands with a rigid
body and rotatable bonds, plus flexible receptor side chains). A ``Change`` has
the same shape but stores the rigid rotation as a 3-component angular
differential. Both can be addressed as one flat vector so that generic numeric
optimizers (BFGS, Monte Carlo, genetic operators) can read and write them,
while every flat index can still be traced back to the node it perturbs.
"""

from __future__ import annotations

import bisect
import copy
import math
from dataclasses import dataclass, field
from functools import lru_cache
from typing import NamedTuple

import numpy as np
import torch


class ConfShapeMismatch(ValueError):
    """A conf and a change (or two confs) do not have the same shape."""


class IndexOutOfRange(IndexError):
    """Flat index outside ``[0, num_floats())``."""


# ============================================================================
# Quaternion helpers (w, x, y, z)
# ============================================================================

IDENTITY_QUATERNION = np.array([1.0, 0.0, 0.0, 0.0])


def normalize_angle(x):
    """Wrap angles into [-pi, pi)."""
    return (np.asarray(x) + math.pi) % (2.0 * math.pi) - math.pi


def quaternion_normalize(q: np.ndarray) -> np.ndarray:
    norm = np.linalg.norm(q)
    if norm == 0.0:
        return IDENTITY_QUATERNION.copy()
    return q / norm


def quaternion_multiply(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    aw, ax, ay, az = a
    bw, bx, by, bz = b
    return np.array([
        aw * bw - ax * bx - ay * by - az * bz,
        aw * bx + ax * bw + ay * bz - az * by,
        aw * by - ax * bz + ay * bw + az * bx,
        aw * bz + ax * by - ay * bx + az * bw,
    ])


def angle_to_quaternion(rotation: np.ndarray) -> np.ndarray:
    """Rotation vector (axis * angle, radians) to a unit quaternion."""
    rotation = np.asarray(rotation, dtype=np.float64)
    angle = float(np.linalg.norm(rotation))
    if angle < 1e-12:
        return IDENTITY_QUATERNION.copy()
    axis = rotation / angle
    half = 0.5 * normalize_angle(angle)
    return np.concatenate([[math.cos(half)], math.sin(half) * axis])


def quaternion_to_angle(q: np.ndarray) -> np.ndarray:
    """Unit quaternion to a rotation vector (axis * angle)."""
    q = quaternion_normalize(np.asarray(q, dtype=np.float64))
    w = min(1.0, max(-1.0, float(q[0])))
    angle = normalize_angle(2.0 * math.acos(w))
    s = math.sqrt(max(0.0, 1.0 - w * w))
    if s < 1e-12:
        return np.zeros(3)
    return float(angle) * q[1:] / s


def quaternion_increment(q: np.ndarray, rotation: np.ndarray) -> np.ndarray:
    """Apply a rotation vector to orientation ``q`` (left multiplication)."""
    return quaternion_normalize(quaternion_multiply(angle_to_quaternion(rotation), q))


def random_quaternion(rng: np.random.Generator) -> np.ndarray:
    return quaternion_normalize(rng.normal(size=4))


def _as_vector(values, length: int | None, what: str) -> np.ndarray:
    arr = np.array(values, dtype=np.float64).reshape(-1)
    if length is not None and arr.shape[0] != length:
        raise ConfShapeMismatch(f"{what} needs {length} values, got {arr.shape[0]}")
    return arr


# ============================================================================
# Rigid bodies and torsion chains
# ============================================================================

@dataclass(eq=False)
class RigidConf:
    """Rigid-body pose: position plus unit quaternion orientation.

    The flat projection reads and writes the 4 raw quaternion components
    directly; anything that needs an actual rotation should go through the
    quaternion helpers above.
    """
    position: np.ndarray = field(default_factory=lambda: np.zeros(3))
    orientation: np.ndarray = field(default_factory=lambda: IDENTITY_QUATERNION.copy())

    def __post_init__(self):
        self.position = _as_vector(self.position, 3, "position")
        self.orientation = _as_vector(self.orientation, 4, "orientation")


@dataclass(eq=False)
class RigidChange:
    """Rigid-body differential: position delta plus angular (tangent-space) delta."""
    position: np.ndarray = field(default_factory=lambda: np.zeros(3))
    orientation: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self):
        self.position = _as_vector(self.position, 3, "position")
        self.orientation = _as_vector(self.orientation, 3, "orientation")


@dataclass(eq=False)
class LigandConf:
    rigid: RigidConf = field(default_factory=RigidConf)
    torsions: np.ndarray = field(default_factory=lambda: np.zeros(0))

    def __post_init__(self):
        self.torsions = _as_vector(self.torsions, None, "torsions")


@dataclass(eq=False)
class LigandChange:
    rigid: RigidChange = field(default_factory=RigidChange)
    torsions: np.ndarray = field(default_factory=lambda: np.zeros(0))

    def __post_init__(self):
        self.torsions = _as_vector(self.torsions, None, "torsions")


@dataclass(eq=False)
class ResidueConf:
    """Flexible side chain; no rigid-body freedom."""
    torsions: np.ndarray = field(default_factory=lambda: np.zeros(0))

    def __post_init__(self):
        self.torsions = _as_vector(self.torsions, None, "torsions")


@dataclass(eq=False)
class ResidueChange:
    torsions: np.ndarray = field(default_factory=lambda: np.zeros(0))

    def __post_init__(self):
        self.torsions = _as_vector(self.torsions, None, "torsions")


# ============================================================================
# Flat layout
# ============================================================================

class Segment(NamedTuple):
    """One contiguous sub-range of the flat vector."""
    start: int
    width: int
    kind: str        # "position", "orientation" or "torsion"
    group: str       # "ligand" or "flex"
    entry: int       # index into ligands / flex
    node_start: int  # node index of the first scalar in this range


class FlatAddress(NamedTuple):
    kind: str
    group: str
    entry: int
    offset: int
    node: int


@dataclass(frozen=True)
class FlatLayout:
    segments: tuple[Segment, ...]
    starts: tuple[int, ...]
    num_floats: int
    num_nodes: int

    def locate(self, index: int) -> tuple[Segment, int]:
        if not 0 <= index < self.num_floats:
            raise IndexOutOfRange(f"flat index {index} out of range [0, {self.num_floats})")
        seg = self.segments[bisect.bisect_right(self.starts, index) - 1]
        return seg, index - seg.start


@lru_cache(maxsize=256)
def build_layout(
    ligand_torsions: tuple[int, ...],
    flex_torsions: tuple[int, ...],
    orientation_width: int,
) -> FlatLayout:
    """Tagged range table for one shape. Zero-width torsion ranges are omitted."""
    segments: list[Segment] = []
    offset = 0
    node = 0

    def _add(width, kind, group, entry, node_start):
        nonlocal offset
        if width > 0:
            segments.append(Segment(offset, width, kind, group, entry, node_start))
            offset += width

    for i, n in enumerate(ligand_torsions):
        _add(3, "position", "ligand", i, node)
        _add(orientation_width, "orientation", "ligand", i, node)
        # one node for the rigid body, then one per torsion
        _add(n, "torsion", "ligand", i, node + 1)
        node += 1 + n

    for i, n in enumerate(flex_torsions):
        _add(n, "torsion", "flex", i, node)
        node += n

    return FlatLayout(
        segments=tuple(segments),
        starts=tuple(s.start for s in segments),
        num_floats=offset,
        num_nodes=node,
    )


@dataclass(frozen=True)
class ConfSize:
    """Torsion counts per ligand and per flexible residue."""
    ligands: tuple[int, ...] = ()
    flex: tuple[int, ...] = ()

    @property
    def num_degrees_of_freedom(self) -> int:
        return sum(6 + n for n in self.ligands) + sum(self.flex)

    def make_conf(self) -> Conf:
        return Conf(
            ligands=[LigandConf(torsions=np.zeros(n)) for n in self.ligands],
            flex=[ResidueConf(torsions=np.zeros(n)) for n in self.flex],
        )

    def make_change(self) -> Change:
        return Change(
            ligands=[LigandChange(torsions=np.zeros(n)) for n in self.ligands],
            flex=[ResidueChange(torsions=np.zeros(n)) for n in self.flex],
        )


class _FlatProjection:
    """Flat-vector access shared by ``Conf`` and ``Change``."""

    ORIENTATION_WIDTH = 0
    ligands: list
    flex: list

    def size(self) -> ConfSize:
        return ConfSize(
            ligands=tuple(len(lig.torsions) for lig in self.ligands),
            flex=tuple(len(res.torsions) for res in self.flex),
        )

    @property
    def layout(self) -> FlatLayout:
        size = self.size()
        return build_layout(size.ligands, size.flex, self.ORIENTATION_WIDTH)

    def num_floats(self) -> int:
        return self.layout.num_floats

    def num_nodes(self) -> int:
        return self.layout.num_nodes

    def _segment_values(self, seg: Segment) -> np.ndarray:
        if seg.group == "flex":
            return self.flex[seg.entry].torsions
        lig = self.ligands[seg.entry]
        if seg.kind == "position":
            return lig.rigid.position
        if seg.kind == "orientation":
            return lig.rigid.orientation
        return lig.torsions

    def locate(self, index: int) -> FlatAddress:
        """Which ligand/residue, sub-range and node a flat index belongs to."""
        seg, offset = self.layout.locate(index)
        node = seg.node_start + offset if seg.kind == "torsion" else seg.node_start
        return FlatAddress(seg.kind, seg.group, seg.entry, offset, node)

    def get_with_node_idx(self, index: int) -> tuple[float, int]:
        seg, offset = self.layout.locate(index)
        node = seg.node_start + offset if seg.kind == "torsion" else seg.node_start
        return float(self._segment_values(seg)[offset]), node

    def __getitem__(self, index: int) -> float:
        seg, offset = self.layout.locate(index)
        return float(self._segment_values(seg)[offset])

    def __setitem__(self, index: int, value: float) -> None:
        seg, offset = self.layout.locate(index)
        self._segment_values(seg)[offset] = value

    def __len__(self) -> int:
        return self.num_floats()

    def to_flat(self) -> np.ndarray:
        layout = self.layout
        if not layout.segments:
            return np.zeros(0)
        return np.concatenate([self._segment_values(seg) for seg in layout.segments])

    def to_tensor(self, dtype: torch.dtype = torch.float64, device: str = "cpu") -> torch.Tensor:
        return torch.as_tensor(self.to_flat(), dtype=dtype, device=device)

    def set_flat(self, values) -> None:
        """Write a flat vector (numpy array, tensor or sequence) back into the hierarchy."""
        if isinstance(values, torch.Tensor):
            values = values.detach().cpu().numpy()
        values = np.asarray(values, dtype=np.float64).reshape(-1)
        layout = self.layout
        if values.shape[0] != layout.num_floats:
            raise ConfShapeMismatch(
                f"flat vector has {values.shape[0]} values, expected {layout.num_floats}"
            )
        for seg in layout.segments:
            self._segment_values(seg)[:] = values[seg.start:seg.start + seg.width]

    def __eq__(self, other):
        if not isinstance(other, type(self)):
            return NotImplemented
        n = self.num_floats()
        if other.num_floats() != n:
            raise ConfShapeMismatch(f"cannot compare {n} floats with {other.num_floats()}")
        return bool(np.array_equal(self.to_flat(), other.to_flat()))

    __hash__ = None

    def copy(self):
        return copy.deepcopy(self)


# ============================================================================
# Conf / Change
# ============================================================================

@dataclass(eq=False)
class Change(_FlatProjection):
    """Differential of a ``Conf`` (e.g. a gradient or a search direction)."""
    ligands: list[LigandChange] = field(default_factory=list)
    flex: list[ResidueChange] = field(default_factory=list)

    ORIENTATION_WIDTH = 3

    def clear(self) -> None:
        for lig in self.ligands:
            lig.rigid.position[:] = 0.0
            lig.rigid.orientation[:] = 0.0
            lig.torsions[:] = 0.0
        for res in self.flex:
            res.torsions[:] = 0.0


@dataclass(eq=False)
class Conf(_FlatProjection):
    """Full pose state: ligands then flexible residues."""
    ligands: list[LigandConf] = field(default_factory=list)
    flex: list[ResidueConf] = field(default_factory=list)

    ORIENTATION_WIDTH = 4

    def increment(self, change: Change, factor: float = 1.0) -> None:
        """Move along ``change`` by ``factor``: translate, rotate, and twist in place."""
        check_compatible(self, change)
        for lig, dlig in zip(self.ligands, change.ligands):
            lig.rigid.position += factor * dlig.rigid.position
            lig.rigid.orientation[:] = quaternion_increment(
                lig.rigid.orientation, factor * dlig.rigid.orientation
            )
            lig.torsions[:] = normalize_angle(lig.torsions + factor * dlig.torsions)
        for res, dres in zip(self.flex, change.flex):
            res.torsions[:] = normalize_angle(res.torsions + factor * dres.torsions)

    def randomize(
        self,
        rng: np.random.Generator,
        corner1: np.ndarray,
        corner2: np.ndarray,
    ) -> None:
        lo = np.asarray(corner1, dtype=np.float64)
        hi = np.asarray(corner2, dtype=np.float64)
        for lig in self.ligands:
            lig.rigid.position[:] = rng.uniform(lo, hi)
            lig.rigid.orientation[:] = random_quaternion(rng)
            lig.torsions[:] = rng.uniform(-math.pi, math.pi, size=len(lig.torsions))
        for res in self.flex:
            res.torsions[:] = rng.uniform(-math.pi, math.pi, size=len(res.torsions))


def check_compatible(conf: Conf, change: Change) -> None:
    """Raise ``ConfShapeMismatch`` unless ``change`` has the shape of ``conf``."""
    if len(conf.ligands) != len(change.ligands):
        raise ConfShapeMismatch(
            f"ligand count differs: conf has {len(conf.ligands)}, change has {len(change.ligands)}"
        )
    if len(conf.flex) != len(change.flex):
        raise ConfShapeMismatch(
            f"residue count differs: conf has {len(conf.flex)}, change has {len(change.flex)}"
        )
    conf_size, change_size = conf.size(), change.size()
    if conf_size != change_size:
        raise ConfShapeMismatch(f"torsion counts differ: {conf_size} vs {change_size}")
