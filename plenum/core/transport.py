"""
Inter-cell transport: exact pairwise diffusive exchange across lattice
edges, the explicit Laplacian alternative, and spatial mode analysis.

Two neighbouring values obey ``dEi/dt = k (Ej - Ei)`` and
``dEj/dt = k (Ei - Ej)``. The exact solution relaxes their half
difference by ``exp(-2 k dt)`` around the common mean, conserves
``Ei + Ej`` and keeps both values non-negative for any ``dt``.

A lattice sweep applies that exchange across every unique 6-neighbour
periodic edge and returns a new buffer; the input is a read-only
snapshot and the caller swaps buffers after the sweep.

In ``exact`` mode the edges of each axis are split into matchings
(classes of edges sharing no cell) and the pairwise solution is applied
to one class at a time. Each sub-sweep therefore conserves the total and
keeps every cell non-negative whatever ``dt``. The two links of a
length-2 axis join the same pair and act as one link of twice the rate.

In ``laplacian`` mode every edge flux is computed from the same snapshot
and accumulated into the output, which is only stable below
:func:`stability_limit`. Workers, when used, each own a disjoint slab of
the output buffer.
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
from scipy.fft import fftfreq, fftn

from .config import TRANSPORT_MODES
from .errors import NonFiniteStateError, UnstableTimestepError
from .fabric import Lattice
from .types import FORCES, VARS

logger = logging.getLogger(__name__)

#: Lattice axis (x, y, z) to storage axis of the z-major energy array
ARRAY_AXIS = (2, 1, 0)

#: Spatial dimension used in the explicit stability bound
NDIM = 3


class CouplingField:
    """Non-negative exchange rate per (variable, force).

    Either homogeneous, shape ``(VARS, FORCES)``, or per edge, shape
    ``(sz, sy, sx, 3, VARS, FORCES)`` where ``[z, y, x, axis]`` is the
    edge from that cell to its positive neighbour along ``axis``.
    """

    def __init__(self, kappa):
        arr = np.array(kappa, dtype=np.float64)
        if arr.ndim == 0:
            arr = np.full((VARS, FORCES), float(arr))
        if arr.shape != (VARS, FORCES) and not (arr.ndim == 6 and arr.shape[3:] == (3, VARS, FORCES)):
            raise ValueError(f"coupling must have shape ({VARS}, {FORCES}) or (sz, sy, sx, 3, {VARS}, {FORCES})")
        if not np.all(np.isfinite(arr)) or np.any(arr < 0.0):
            raise ValueError("coupling values must be finite and non-negative")
        arr.setflags(write=False)
        self.kappa = arr

    @classmethod
    def uniform(cls, value: float) -> "CouplingField":
        return cls(np.full((VARS, FORCES), float(value)))

    @property
    def homogeneous(self) -> bool:
        return self.kappa.shape == (VARS, FORCES)

    def max_kappa(self) -> float:
        return float(self.kappa.max()) if self.kappa.size else 0.0

    def check_lattice(self, size: Tuple[int, int, int]) -> None:
        if self.homogeneous:
            return
        sx, sy, sz = size
        if self.kappa.shape[:3] != (sz, sy, sx):
            raise ValueError(f"per-edge coupling shape {self.kappa.shape[:3]} does not match lattice {(sz, sy, sx)}")

    def edge_kappa(self, axis: int) -> np.ndarray:
        """Rates for edges along lattice ``axis``, broadcastable to the energy array."""
        if self.homogeneous:
            return self.kappa
        return self.kappa[:, :, :, axis]

    def to_dict(self) -> dict:
        return {"kappa": self.kappa.tolist()}

    @classmethod
    def from_dict(cls, data: dict) -> "CouplingField":
        return cls(np.array(data["kappa"], dtype=np.float64))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CouplingField):
            return NotImplemented
        return bool(np.array_equal(self.kappa, other.kappa))


def exchange_pair(ei, ej, kappa, dt: float):
    """Exact two-cell exchange over ``dt``.

    Works on scalars or broadcastable arrays. Returns ``(ei', ej')``.
    """
    if dt < 0:
        raise ValueError("dt must be non-negative")
    kappa_arr = np.asarray(kappa, dtype=np.float64)
    if np.any(kappa_arr < 0):
        raise ValueError("coupling must be non-negative")
    ei_arr = np.asarray(ei, dtype=np.float64)
    ej_arr = np.asarray(ej, dtype=np.float64)
    decay = np.exp(-2.0 * kappa_arr * dt)
    mean = 0.5 * (ei_arr + ej_arr)
    half_diff = 0.5 * (ei_arr - ej_arr) * decay
    new_i = mean + half_diff
    new_j = mean - half_diff
    if new_i.ndim == 0:
        return float(new_i), float(new_j)
    return new_i, new_j


def laplacian_weights(coupling: CouplingField, dt: float, spacing: float = 1.0) -> List[np.ndarray]:
    """Per-axis explicit Euler weights ``k dt / spacing**2``."""
    return [coupling.edge_kappa(axis) * dt / spacing ** 2 for axis in range(NDIM)]


def edge_classes(n: int) -> List[np.ndarray]:
    """Split the periodic edges ``i -> i + 1`` of an axis into matchings.

    Edges in one class share no cell, so a class can be exchanged in one
    vectorised pass. Even and odd starting indices form the classes; an
    odd length adds the wrap-around edge as a third class. A length-2
    axis has one class holding edge 0, which stands for both links
    between the pair. A length-1 axis has no edges.
    """
    if n < 2:
        return []
    if n == 2:
        return [np.array([0])]
    classes = [np.arange(0, n - n % 2, 2), np.arange(1, n, 2)]
    if n % 2:
        classes.append(np.array([n - 1]))
    return classes


def stability_limit(coupling: CouplingField, spacing: float = 1.0) -> float:
    """Largest stable ``dt`` for the explicit Laplacian sweep.

    The 3D form of ``dx**2 / (2 k)``: ``dx**2 / (2 * 3 * k_max)``.
    """
    kmax = coupling.max_kappa()
    if kmax <= 0.0:
        return math.inf
    return spacing ** 2 / (2.0 * NDIM * kmax)


def check_stability(coupling: CouplingField, dt: float, spacing: float = 1.0) -> None:
    """Refuse a Laplacian sweep that would violate the stability bound."""
    limit = stability_limit(coupling, spacing)
    if dt >= limit:
        raise UnstableTimestepError(dt, limit)


def _exchange_class(
    work: np.ndarray,
    kappa: np.ndarray,
    arr_axis: int,
    lo: np.ndarray,
    dt: float,
) -> None:
    """Exchange every edge ``lo -> lo + 1`` along ``arr_axis`` in place.

    ``kappa`` is either homogeneous ``(VARS, FORCES)`` or aligned with
    ``work``. The edges must form a matching.
    """
    n = work.shape[arr_axis]
    hi = (lo + 1) % n
    w = np.moveaxis(work, arr_axis, 0)
    if kappa.ndim == 2:
        k = 2.0 * kappa if n == 2 else kappa
    else:
        kv = np.moveaxis(kappa, arr_axis, 0)
        k = kv[lo] + kv[hi] if n == 2 else kv[lo]
    new_lo, new_hi = exchange_pair(w[lo], w[hi], k, dt)
    w[lo] = new_lo
    w[hi] = new_hi


def _update_slab(snapshot: np.ndarray, weights: List[np.ndarray], z0: int, z1: int, out: np.ndarray) -> None:
    """Write the new values of cells with ``z0 <= z < z1`` into ``out``."""
    sz = snapshot.shape[0]
    cur = snapshot[z0:z1]
    delta = np.zeros_like(cur)
    # x and y neighbours lie inside the slab
    for axis in (0, 1):
        arr_axis = ARRAY_AXIS[axis]
        w = weights[axis]
        if w.ndim == 2:
            w_fwd = w_back = w
        else:
            w_fwd = w[z0:z1]
            w_back = np.roll(w_fwd, 1, axis=arr_axis)
        delta += w_fwd * (np.roll(cur, -1, axis=arr_axis) - cur)
        delta += w_back * (np.roll(cur, 1, axis=arr_axis) - cur)
    # z neighbours may belong to another slab
    zs = np.arange(z0, z1)
    up = (zs + 1) % sz
    down = (zs - 1) % sz
    w = weights[2]
    if w.ndim == 2:
        w_fwd = w_back = w
    else:
        w_fwd = w[z0:z1]
        w_back = w[down]
    delta += w_fwd * (snapshot[up] - cur)
    delta += w_back * (snapshot[down] - cur)
    out[z0:z1] = cur + delta


class TransportEngine:
    """Lattice-wide diffusive coupling.

    Args:
        coupling: Exchange rates.
        mode: ``"exact"`` pairwise exchange or explicit ``"laplacian"``.
        spacing: Lattice spacing used by the Laplacian form.
        workers: Thread count; each worker owns a disjoint z-slab.
    """

    def __init__(self, coupling: CouplingField, mode: str = "exact", spacing: float = 1.0, workers: int = 1):
        if mode not in TRANSPORT_MODES:
            raise ValueError(f"unknown transport mode {mode!r}")
        self.coupling = coupling
        self.mode = mode
        self.spacing = spacing
        self.workers = workers

    def check_stability(self, dt: float) -> None:
        if self.mode == "laplacian":
            check_stability(self.coupling, dt, self.spacing)

    def exchange_schedule(self, shape: Tuple[int, ...]) -> List[Tuple[int, np.ndarray]]:
        """Ordered ``(lattice axis, edge class)`` sub-sweeps of one exact sweep."""
        schedule = []
        for axis in range(NDIM):
            for lo in edge_classes(shape[ARRAY_AXIS[axis]]):
                schedule.append((axis, lo))
        return schedule

    def distribute(self, energy: np.ndarray, dt: float) -> np.ndarray:
        """Return the post-sweep copy of a ``(sz, sy, sx, VARS, FORCES)`` array.

        ``energy`` is treated as a read-only snapshot and is not modified.
        """
        if dt < 0:
            raise ValueError("dt must be non-negative")
        self.check_stability(dt)
        if not np.all(np.isfinite(energy)):
            raise NonFiniteStateError("transport input contains non-finite values")
        if self.mode == "exact":
            return self._distribute_exact(energy, dt)

        weights = laplacian_weights(self.coupling, dt, self.spacing)
        out = np.empty_like(energy)
        sz = energy.shape[0]
        n_slabs = min(self.workers, sz)
        if n_slabs <= 1:
            _update_slab(energy, weights, 0, sz, out)
            return out

        bounds = np.linspace(0, sz, n_slabs + 1, dtype=int)
        with ThreadPoolExecutor(max_workers=n_slabs) as pool:
            futures = [
                pool.submit(_update_slab, energy, weights, int(bounds[k]), int(bounds[k + 1]), out)
                for k in range(n_slabs)
            ]
            for fut in futures:
                fut.result()
        return out

    def _distribute_exact(self, energy: np.ndarray, dt: float) -> np.ndarray:
        """Exchange edge class by edge class in a symmetric order.

        Every sub-sweep is the exact pairwise solution on disjoint pairs,
        so each one conserves the total and keeps cells non-negative for
        any ``dt``. Running the classes forward over ``dt / 2`` and back
        over ``dt / 2`` keeps the composition second order.
        """
        out = np.array(energy, dtype=np.float64, copy=True)
        schedule = self.exchange_schedule(out.shape)
        if dt == 0.0 or not schedule:
            return out
        half = 0.5 * dt
        plan = [(axis, lo, half) for axis, lo in schedule[:-1]]
        plan.append((schedule[-1][0], schedule[-1][1], dt))
        plan.extend((axis, lo, half) for axis, lo in reversed(schedule[:-1]))

        if self.workers <= 1:
            for axis, lo, h in plan:
                _exchange_class(out, self.coupling.edge_kappa(axis), ARRAY_AXIS[axis], lo, h)
            return out

        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            for axis, lo, h in plan:
                arr_axis = ARRAY_AXIS[axis]
                kappa = self.coupling.edge_kappa(axis)
                # split along an axis the sub-sweep does not touch
                split = 1 if arr_axis == 0 else 0
                length = out.shape[split]
                bounds = np.linspace(0, length, min(self.workers, length) + 1, dtype=int)
                futures = []
                for a, b in zip(bounds[:-1], bounds[1:]):
                    index = [slice(None)] * out.ndim
                    index[split] = slice(int(a), int(b))
                    part_kappa = kappa if kappa.ndim == 2 else kappa[tuple(index[: kappa.ndim])]
                    futures.append(pool.submit(_exchange_class, out[tuple(index)], part_kappa, arr_axis, lo, h))
                for fut in futures:
                    fut.result()
        return out


def distribute_to_neighbors(
    lattice: Lattice,
    coupling: CouplingField,
    dt: float,
    mode: str = "exact",
    spacing: float = 1.0,
    workers: int = 1,
) -> Lattice:
    """Apply one transport sweep and return a new lattice.

    The input lattice is the read-only snapshot and is left unchanged.
    """
    coupling.check_lattice(lattice.size)
    engine = TransportEngine(coupling, mode=mode, spacing=spacing, workers=workers)
    return Lattice(lattice.size, engine.distribute(lattice.energy, dt))


# ----------------------------------------------------------------------
# Spatial modes


@dataclass
class SpatialMode:
    """One Fourier component of a lattice field.

    ``k`` holds signed integer wave numbers ``(kx, ky, kz)``;
    ``amplitude`` is ``|F_k| / n_cells``; ``frequency`` is the analytic
    decay rate of that mode under diffusion (zero or negative).
    """
    k: Tuple[int, int, int]
    amplitude: float
    frequency: float


def dispersion_rate(k: Tuple[int, int, int], size: Tuple[int, int, int], kappa: float, spacing: float = 1.0) -> float:
    """``w(k) = 2 k (cos kx + cos ky + cos kz - 3) / dx**2`` for simple cubic diffusion."""
    cos_sum = sum(math.cos(2.0 * math.pi * ki / ni) for ki, ni in zip(k, size))
    return 2.0 * kappa * (cos_sum - 3.0) / spacing ** 2


def lattice_field(lattice: Lattice, var: Optional[int] = None, force: Optional[int] = None) -> np.ndarray:
    """Select the ``(sz, sy, sx)`` field a spectral transform acts on."""
    if var is not None and force is not None:
        return lattice.channel(var, force)
    if var is not None:
        return lattice.energy[..., var, :].sum(axis=-1)
    if force is not None:
        return lattice.energy[..., :, force].sum(axis=-1)
    return lattice.cell_totals()


def compute_spatial_modes(
    lattice: Lattice,
    var: Optional[int] = None,
    force: Optional[int] = None,
    kappa: float = 1.0,
    spacing: float = 1.0,
    min_amplitude: float = 0.0,
) -> List[SpatialMode]:
    """3D spectral decomposition of a lattice field.

    Returns modes sorted by decreasing amplitude; modes with amplitude at
    or below ``min_amplitude`` are dropped when it is positive.
    """
    field = lattice_field(lattice, var, force)
    sx, sy, sz = lattice.size
    spectrum = fftn(field)
    amp = np.abs(spectrum) / field.size
    kz = np.rint(fftfreq(sz) * sz).astype(int)
    ky = np.rint(fftfreq(sy) * sy).astype(int)
    kx = np.rint(fftfreq(sx) * sx).astype(int)
    modes = []
    for iz in range(sz):
        for iy in range(sy):
            for ix in range(sx):
                a = float(amp[iz, iy, ix])
                if min_amplitude > 0.0 and a <= min_amplitude:
                    continue
                k = (int(kx[ix]), int(ky[iy]), int(kz[iz]))
                modes.append(SpatialMode(k, a, dispersion_rate(k, lattice.size, kappa, spacing)))
    modes.sort(key=lambda m: -m.amplitude)
    return modes
