"""
Initial conditions for lattice runs.

All randomness comes from a ``numpy.random.Generator``; callers pass one
in or a seed, so the same seed always yields the same lattice.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Optional, Sequence, Tuple

import numpy as np

from .cell import EnergyCell
from .constraints import ConstraintProjector, ConstraintSet, check_fractions
from .fabric import Lattice
from .types import FORCES, VARS

#: Range of the raw weights used by random partitions
PARTITION_LOW = 0.5
PARTITION_HIGH = 1.5


def _rng(rng) -> np.random.Generator:
    if isinstance(rng, np.random.Generator):
        return rng
    return np.random.default_rng(rng)


@dataclass
class EnergyDistribution:
    """A cell template: total energy plus its split over variables and
    over forces within each variable."""
    total: float = 1.0
    var_pct: Tuple[float, ...] = (1.0 / VARS,) * VARS
    force_pct: Tuple[Tuple[float, ...], ...] = field(default_factory=lambda: ((1.0 / FORCES,) * FORCES,) * VARS)

    def __post_init__(self) -> None:
        if not math.isfinite(self.total) or self.total < 0.0:
            raise ValueError("distribution total must be finite and non-negative")
        if len(self.var_pct) != VARS or len(self.force_pct) != VARS:
            raise ValueError(f"distribution needs {VARS} variable entries")
        self.var_pct = check_fractions(self.var_pct, "variable percentages", 1e-9, length=VARS)
        self.force_pct = tuple(
            check_fractions(row, f"variable {v} force percentages", 1e-9) for v, row in enumerate(self.force_pct)
        )

    def to_cell(self) -> EnergyCell:
        """Allocate ``total`` according to the percentages."""
        values = self.total * np.asarray(self.var_pct)[:, None] * np.asarray(self.force_pct)
        return EnergyCell(values)


def random_partition(total: float, n: int, rng=None) -> np.ndarray:
    """Split ``total`` into ``n`` parts with weights drawn from U(0.5, 1.5)."""
    weights = _rng(rng).uniform(PARTITION_LOW, PARTITION_HIGH, size=n)
    return weights / weights.sum() * total


def sample_simplex(n: int, rng=None) -> np.ndarray:
    """Uniform sample from the ``n``-simplex; entries sum to one."""
    return _rng(rng).dirichlet(np.ones(n))


def random_energy_distribution(total: float, rng=None) -> EnergyDistribution:
    rng = _rng(rng)
    var_pct = tuple(sample_simplex(VARS, rng))
    force_pct = tuple(tuple(sample_simplex(FORCES, rng)) for _ in range(VARS))
    return EnergyDistribution(total, var_pct, force_pct)


def initialize_homogeneous(
    lattice: Lattice,
    base_energy: float,
    noise_fraction: float = 0.0,
    distribution: Optional[EnergyDistribution] = None,
    constraints: Optional[ConstraintSet] = None,
    rng=None,
) -> Lattice:
    """Fill every cell with ``base_energy * (1 + noise)`` split like ``distribution``.

    ``noise`` is drawn uniformly from ``[-noise_fraction, noise_fraction]``.
    The lattice is then projected onto ``constraints`` when given.
    Modifies and returns ``lattice``.
    """
    if not 0.0 <= noise_fraction < 1.0:
        raise ValueError("noise_fraction must lie in [0, 1)")
    template = (distribution or EnergyDistribution()).to_cell().values
    template_total = template.sum()
    if template_total <= 0.0:
        raise ValueError("distribution template holds no energy")
    sx, sy, sz = lattice.size
    noise = _rng(rng).uniform(-noise_fraction, noise_fraction, size=(sz, sy, sx))
    scale = base_energy * (1.0 + noise) / template_total
    lattice.energy[...] = scale[..., None, None] * template
    if constraints is not None:
        ConstraintProjector(constraints).project_array(lattice.energy)
    return lattice


def initialize_structured(
    lattice: Lattice,
    k: Sequence[int],
    amplitude: float,
    base_energy: float,
    distribution: Optional[EnergyDistribution] = None,
    phase: float = 0.0,
) -> Lattice:
    """Modulate cell energy by ``1 + amplitude * cos(2 pi k.r / size + phase)``.

    ``k`` holds integer wave numbers per axis so the pattern is periodic
    on the lattice. ``|amplitude|`` must not exceed one.
    """
    if abs(amplitude) > 1.0:
        raise ValueError("amplitude above one would produce negative energy")
    template = (distribution or EnergyDistribution()).to_cell().values
    template = template / max(template.sum(), 1e-300)
    sx, sy, sz = lattice.size
    z, y, x = np.meshgrid(np.arange(sz), np.arange(sy), np.arange(sx), indexing="ij")
    arg = 2.0 * np.pi * (k[0] * x / sx + k[1] * y / sy + k[2] * z / sz) + phase
    cell_energy = base_energy * (1.0 + amplitude * np.cos(arg))
    lattice.energy[...] = cell_energy[..., None, None] * template
    return lattice


def generate_lattice(seed: int, size: Tuple[int, int, int], total_energy: float) -> Lattice:
    """Random lattice with ``total_energy`` spread evenly over cells.

    Each cell's share is split across variables, then each variable's
    share across forces, with U(0.5, 1.5) weights.
    """
    rng = np.random.default_rng(seed)
    lattice = Lattice(size)
    per_cell = total_energy / lattice.n_cells
    flat = lattice.energy.reshape(-1, VARS, FORCES)
    for c in range(flat.shape[0]):
        for v, share in enumerate(random_partition(per_cell, VARS, rng)):
            flat[c, v] = random_partition(share, FORCES, rng)
    return lattice
