"""dockopt inputs: grid geometry, synthetic grids and conformations, strided sub-cube offsets."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import torch

from dockopt.conf import Conf, ConfSize

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults (atom-typed density grids)
# ---------------------------------------------------------------------------
DEFAULT_REC_TYPES = 16
DEFAULT_LIG_TYPES = 19
DEFAULT_DIMENSION = 23.5   # Å, edge length of the grid cube
DEFAULT_RESOLUTION = 0.5   # Å per grid point

# ============================================================================
# Grid geometry
# ============================================================================

@dataclass
class GridSpec:
    """Channel layout and spatial extent of an input density grid.

    Channels are ordered receptor types first, then ligand types, then any
    extra channels. The receptor+ligand block is the prefix left untouched by
    post-update thresholding.
    """
    n_rec_types: int = DEFAULT_REC_TYPES
    n_lig_types: int = DEFAULT_LIG_TYPES
    n_extra_types: int = 0
    dimension: float = DEFAULT_DIMENSION
    resolution: float = DEFAULT_RESOLUTION

    @property
    def dim(self) -> int:
        return int(round(self.dimension / self.resolution)) + 1

    @property
    def n_points(self) -> int:
        return self.dim ** 3

    @property
    def n_channels(self) -> int:
        return self.n_rec_types + self.n_lig_types + self.n_extra_types

    @property
    def protected_size(self) -> int:
        return (self.n_rec_types + self.n_lig_types) * self.n_points

    def shape(self, batch_size: int = 1) -> tuple[int, ...]:
        return (batch_size, self.n_channels, self.dim, self.dim, self.dim)


def subgrid_offsets(timestep: int, dim: int, subgrid_dim: int, stride: int) -> tuple[int, int, int]:
    """(x, y, z) corner of the sub-cube visited at ``timestep``.

    Sub-cubes of edge ``subgrid_dim`` are swept with ``stride`` over a grid of
    edge ``dim``, z fastest.
    """
    if subgrid_dim > dim:
        raise ValueError(f"subgrid_dim={subgrid_dim} larger than grid dim={dim}")
    factor = (dim - subgrid_dim) // stride + 1
    if not 0 <= timestep < factor ** 3:
        raise ValueError(f"timestep {timestep} outside [0, {factor ** 3})")
    x = (timestep // (factor * factor)) * stride
    y = ((timestep // factor) % factor) * stride
    z = (timestep % factor) * stride
    return x, y, z


def num_subgrids(dim: int, subgrid_dim: int, stride: int) -> int:
    return ((dim - subgrid_dim) // stride + 1) ** 3


# ============================================================================
# Grid sources
# ============================================================================

class GridSource:
    """Supplies the input grid for a network's input layer.

    Each call returns a fresh copy so the network may mutate its input blob
    without touching the source.
    """

    def __init__(self, grid: torch.Tensor):
        self.grid = grid.detach().clone()

    @classmethod
    def from_file(cls, path: str) -> "GridSource":
        grid = torch.load(path, map_location="cpu", weights_only=True)
        logger.info(f"Loaded input grid {tuple(grid.shape)} from {path}")
        return cls(grid)

    @property
    def shape(self) -> tuple[int, ...]:
        return tuple(self.grid.shape)

    def __call__(self) -> torch.Tensor:
        return self.grid.clone()


# ============================================================================
# Synthetic data for testing
# ============================================================================

def make_synthetic_grid(
    spec: GridSpec,
    batch_size: int = 1,
    seed: int = 0,
    dtype: torch.dtype = torch.float32,
) -> torch.Tensor:
    """Non-negative random density grid shaped ``spec.shape(batch_size)``."""
    gen = torch.Generator().manual_seed(seed)
    grid = torch.rand(spec.shape(batch_size), generator=gen, dtype=dtype)
    # sparse occupancy, like atom densities
    return grid * (grid > 0.8)


def make_synthetic_conf(
    ligand_torsions: tuple[int, ...] = (3,),
    flex_torsions: tuple[int, ...] = (),
    seed: int = 0,
    box: float = 10.0,
) -> Conf:
    """Randomized conformation with the given torsion counts."""
    conf = ConfSize(ligands=tuple(ligand_torsions), flex=tuple(flex_torsions)).make_conf()
    rng = np.random.default_rng(seed)
    conf.randomize(rng, np.full(3, -box / 2), np.full(3, box / 2))
    return conf
