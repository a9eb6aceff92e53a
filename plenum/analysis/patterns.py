"""
Large-scale structure diagnostics of a lattice state.

Cells are classified by their energy density ``rho = E_cell / V``
against the lattice mean ``mu`` and standard deviation ``sigma``:

* Void      ``rho < mu - sigma``
* Wall      ``mu - sigma <= rho <= mu + sigma``
* Filament  ``rho > mu + sigma``

A uniform lattice, where sigma vanishes, is all Wall. The power spectrum
is the spherically averaged ``|delta_k|**2`` of the density contrast,
binned by the fundamental wave number of the longest axis. The
clustering dimension is the log-log slope of the mean number of
filament neighbours within radius ``r`` of a filament cell, counted with
periodic distances.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy import stats
from scipy.fft import fftfreq, fftn
from scipy.spatial import cKDTree

from ..core.fabric import Lattice
from ..core.ledger import entropy_check
from ..core.types import LatticeCoord

logger = logging.getLogger(__name__)

#: Relative sigma below which a density field counts as uniform
UNIFORM_RTOL = 1e-12

#: Number of radii used when the caller supplies none
DEFAULT_RADII = 8


@dataclass(frozen=True, eq=False)
class PatternMetrics:
    """Read-only summary of one lattice state."""
    void_fraction: float
    wall_fraction: float
    filament_fraction: float
    clustering_dimension: float
    k: np.ndarray
    power: np.ndarray
    mean_density: float
    std_density: float
    skewness: float
    kurtosis: float
    clustering_coefficient: float
    entropy: float
    total_energy: float

    @property
    def power_spectrum(self) -> List[Tuple[float, float]]:
        return list(zip(self.k.tolist(), self.power.tolist()))


def density_field(lattice: Lattice, cell_volume: float = 1.0) -> np.ndarray:
    if cell_volume <= 0:
        raise ValueError("cell_volume must be positive")
    return lattice.cell_totals() / cell_volume


def _is_uniform(mean: float, std: float) -> bool:
    return std <= UNIFORM_RTOL * abs(mean) or std == 0.0


def classification_masks(
    rho: np.ndarray, low: Optional[float] = None, high: Optional[float] = None
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Boolean ``(void, wall, filament)`` masks over a density field."""
    mean = float(rho.mean())
    std = float(rho.std())
    if low is None and high is None and _is_uniform(mean, std):
        none = np.zeros(rho.shape, dtype=bool)
        return none, ~none, none.copy()
    low = mean - std if low is None else low
    high = mean + std if high is None else high
    void = rho < low
    filament = rho > high
    return void, ~(void | filament), filament


def classify_cells(
    lattice: Lattice,
    low: Optional[float] = None,
    high: Optional[float] = None,
    cell_volume: float = 1.0,
) -> Dict[str, List[LatticeCoord]]:
    """Coordinates of Void, Wall and Filament cells.

    ``low`` and ``high`` override the ``mu -/+ sigma`` thresholds.
    """
    masks = classification_masks(density_field(lattice, cell_volume), low, high)
    out = {}
    for name, mask in zip(("void", "wall", "filament"), masks):
        out[name] = [LatticeCoord(int(x), int(y), int(z)) for z, y, x in np.argwhere(mask)]
    return out


def power_spectrum(field: np.ndarray, spacing: float = 1.0) -> Tuple[np.ndarray, np.ndarray]:
    """Spherically averaged power spectrum of a ``(sz, sy, sx)`` field.

    Returns ``(k, P)`` with ``k`` the bin centres in radians per unit
    length; the zero mode is excluded.
    """
    delta = field - field.mean()
    p3 = np.abs(fftn(delta)) ** 2 / field.size
    sz, sy, sx = field.shape
    kz = 2.0 * np.pi * fftfreq(sz, d=spacing)
    ky = 2.0 * np.pi * fftfreq(sy, d=spacing)
    kx = 2.0 * np.pi * fftfreq(sx, d=spacing)
    KZ, KY, KX = np.meshgrid(kz, ky, kx, indexing="ij")
    kmag = np.sqrt(KX ** 2 + KY ** 2 + KZ ** 2)

    fundamental = 2.0 * np.pi / (max(field.shape) * spacing)
    bins = np.rint(kmag / fundamental).astype(int).ravel()
    counts = np.bincount(bins)
    sums = np.bincount(bins, weights=p3.ravel())
    keep = np.nonzero(counts)[0]
    keep = keep[keep > 0]
    return keep * fundamental, sums[keep] / counts[keep]


def clustering_dimension(
    points: np.ndarray,
    box: Sequence[float],
    radii: Optional[Sequence[float]] = None,
) -> float:
    """Fractal dimension ``D`` from ``N(r) ~ r**D`` with periodic distances.

    ``N(r)`` is the mean number of other points within ``r`` of a point.
    Returns NaN with fewer than two points or fewer than two radii at
    which any pair is found.
    """
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    n = len(pts)
    if n < 2:
        return math.nan
    box = np.asarray(box, dtype=np.float64)
    if radii is None:
        upper = max(0.5 * float(box.min()), 1.0 + 1e-9)
        radii = np.geomspace(1.0, upper, DEFAULT_RADII)
    radii = np.asarray(radii, dtype=np.float64)

    tree = cKDTree(np.mod(pts, box), boxsize=box)
    counts = np.asarray(tree.count_neighbors(tree, radii), dtype=np.float64)
    mean_neighbours = (counts - n) / n
    valid = mean_neighbours > 0
    if np.count_nonzero(valid) < 2 or len(np.unique(radii[valid])) < 2:
        return math.nan
    slope, _ = np.polyfit(np.log(radii[valid]), np.log(mean_neighbours[valid]), 1)
    return float(slope)


def clustering_coefficient(field: np.ndarray) -> float:
    """Nearest-neighbour autocorrelation of density fluctuations, averaged
    over the three axes. In ``[-1, 1]``; zero for a uniform field."""
    delta = field - field.mean()
    var = float(np.mean(delta ** 2))
    if var <= 0.0:
        return 0.0
    corr = [float(np.mean(delta * np.roll(delta, 1, axis=a))) for a in range(3)]
    return float(np.mean(corr) / var)


def compute_pattern_metrics(
    lattice: Lattice,
    cell_volume: float = 1.0,
    radii: Optional[Sequence[float]] = None,
    spacing: float = 1.0,
) -> PatternMetrics:
    rho = density_field(lattice, cell_volume)
    mean = float(rho.mean())
    std = float(rho.std())
    void, wall, filament = classification_masks(rho)
    n = rho.size

    sx, sy, sz = lattice.size
    fil_points = np.argwhere(filament)[:, ::-1] * spacing
    box = (sx * spacing, sy * spacing, sz * spacing)
    dim = clustering_dimension(fil_points, box, radii)
    k, power = power_spectrum(rho, spacing)
    k.setflags(write=False)
    power.setflags(write=False)

    if _is_uniform(mean, std):
        skew = kurt = 0.0
    else:
        skew = float(stats.skew(rho, axis=None))
        kurt = float(stats.kurtosis(rho, axis=None))

    metrics = PatternMetrics(
        void_fraction=int(void.sum()) / n,
        wall_fraction=int(wall.sum()) / n,
        filament_fraction=int(filament.sum()) / n,
        clustering_dimension=dim,
        k=k,
        power=power,
        mean_density=mean,
        std_density=std,
        skewness=skew,
        kurtosis=kurt,
        clustering_coefficient=clustering_coefficient(rho),
        entropy=entropy_check(lattice),
        total_energy=lattice.total_energy(),
    )
    logger.debug(
        "patterns: void %.3f wall %.3f filament %.3f D=%.3f",
        metrics.void_fraction, metrics.wall_fraction, metrics.filament_fraction, dim,
    )
    return metrics
