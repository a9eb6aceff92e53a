"""
Intra-cell redistribution: antisymmetric coupling matrices, their exact
exponential, and oscillation mode extraction.

A cell's flattened state ``s`` evolves under ``ds/dt = R s`` with
``R = -R^T``. The exact solution ``s(t) = exp(R t) s(0)`` is an
orthogonal map, so the flow is non-dissipative: every eigenvalue of
``R`` is purely imaginary and each mode oscillates without decay. When
``R`` is also balanced (all row sums zero) the all-ones vector lies in
its kernel and the flow conserves the cell's total energy.

Two evaluation methods are available and selected explicitly:

``"eigen"``   Diagonalise the Hermitian matrix ``H = iR`` with
              ``scipy.linalg.eigh`` and rebuild
              ``exp(R dt) = U diag(exp(-i w dt)) U^H``. Accurate for any
              ``dt``; the default.
``"series"``  Scaling and squaring of a truncated Taylor series with a
              convergence check. Useful when the eigendecomposition is
              unwanted; degrades as ``||R|| dt`` grows only through the
              number of squarings.
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy.linalg import eigh

from .cell import EnergyCell
from .config import EXPONENTIAL_METHODS
from .constraints import TransferMask
from .errors import InvalidConstraintError, InvalidMatrixError, NonFiniteStateError, SeriesConvergenceError
from .types import FORCES, N_FLATTENED, VARS

logger = logging.getLogger(__name__)

#: Eigenvalues of iR closer to zero than this are treated as static modes
MODE_FREQUENCY_EPS = 1e-10

#: Number of propagators kept per engine (Strang splitting reuses dt/2)
PROPAGATOR_CACHE_SIZE = 4


def antisymmetric_part(matrix: np.ndarray) -> np.ndarray:
    m = np.asarray(matrix, dtype=np.float64)
    return 0.5 * (m - m.T)


def symmetric_part(matrix: np.ndarray) -> np.ndarray:
    m = np.asarray(matrix, dtype=np.float64)
    return 0.5 * (m + m.T)


class RedistributionMatrix:
    """Validated antisymmetric ``N x N`` coupling matrix.

    Construction checks ``max|R + R^T| <= tol * max(1, max|R|)`` and
    raises ``InvalidMatrixError`` otherwise. The stored array is the
    exact antisymmetric part of the input and is read-only; there is no
    mutation path, use :class:`RedistributionBuilder` to assemble a new
    matrix instead.
    """

    def __init__(self, matrix: np.ndarray, tol: float = 1e-12):
        arr = np.array(matrix, dtype=np.float64)
        if arr.shape != (N_FLATTENED, N_FLATTENED):
            raise InvalidMatrixError(f"redistribution matrix must be {N_FLATTENED}x{N_FLATTENED}, got {arr.shape}")
        if not np.all(np.isfinite(arr)):
            raise InvalidMatrixError("redistribution matrix contains non-finite entries")
        scale = max(1.0, float(np.max(np.abs(arr))))
        asym_err = float(np.max(np.abs(arr + arr.T)))
        if asym_err > tol * scale:
            raise InvalidMatrixError(
                f"redistribution matrix is not antisymmetric: max|R + R^T| = {asym_err:.3e} > {tol * scale:.3e}"
            )
        exact = antisymmetric_part(arr)
        exact.setflags(write=False)
        self._matrix = exact
        self.tol = tol
        self._spectrum: Optional[Tuple[np.ndarray, np.ndarray]] = None

    @classmethod
    def zero(cls) -> "RedistributionMatrix":
        return cls(np.zeros((N_FLATTENED, N_FLATTENED)))

    @classmethod
    def balanced(cls, matrix: np.ndarray, tol: float = 1e-12) -> "RedistributionMatrix":
        """Project an antisymmetric matrix onto the balanced subspace.

        Returns ``P A P`` with ``P = I - 11^T/N``. The result stays
        antisymmetric and has zero row and column sums, so its flow
        conserves the cell total.
        """
        base = cls(matrix, tol)
        p = np.eye(N_FLATTENED) - np.full((N_FLATTENED, N_FLATTENED), 1.0 / N_FLATTENED)
        return cls(p @ base.matrix @ p, tol)

    @property
    def matrix(self) -> np.ndarray:
        return self._matrix

    @property
    def is_zero(self) -> bool:
        return not np.any(self._matrix)

    def is_balanced(self, tol: float = 1e-12) -> bool:
        """True if every row sum vanishes, i.e. cell totals are conserved."""
        scale = max(1.0, float(np.max(np.abs(self._matrix))))
        return bool(np.max(np.abs(self._matrix.sum(axis=1))) <= tol * scale)

    def is_block_diagonal(self) -> bool:
        """True if no entry couples two different variables."""
        return not np.any(self._matrix[~TransferMask.block_diagonal().allowed_matrix()])

    def spectrum(self) -> Tuple[np.ndarray, np.ndarray]:
        """Eigen-decomposition ``(w, U)`` of the Hermitian matrix ``iR``.

        Eigenvalues of ``R`` are ``-i w``; columns of ``U`` are the
        corresponding orthonormal eigenvectors. Cached.
        """
        if self._spectrum is None:
            w, u = eigh(1j * self._matrix)
            self._spectrum = (w, u)
        return self._spectrum

    def eigenvalues(self) -> np.ndarray:
        w, _ = self.spectrum()
        return -1j * w

    def frequencies(self) -> np.ndarray:
        """Non-negative oscillation frequencies, one per conjugate pair."""
        w, _ = self.spectrum()
        return np.sort(-w[w < -MODE_FREQUENCY_EPS])

    def to_list(self) -> List[List[float]]:
        return self._matrix.tolist()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RedistributionMatrix):
            return NotImplemented
        return bool(np.array_equal(self._matrix, other._matrix))

    def __repr__(self) -> str:
        return f"RedistributionMatrix(norm={np.linalg.norm(self._matrix):.6g}, balanced={self.is_balanced()})"


class RedistributionBuilder:
    """Mutable assembly area for a redistribution matrix.

    Couplings are always written as antisymmetric pairs. ``set_transfer``
    additionally checks the transfer mask.
    """

    def __init__(self, mask: TransferMask | None = None):
        self.mask = mask if mask is not None else TransferMask()
        self._a = np.zeros((N_FLATTENED, N_FLATTENED), dtype=np.float64)

    def set_oscillation(self, src: int, dst: int, rate: float) -> "RedistributionBuilder":
        if src == dst:
            raise InvalidMatrixError("an entry cannot oscillate with itself")
        self._a[src, dst] = rate
        self._a[dst, src] = -rate
        return self

    def set_transfer(self, src: int, dst: int, rate: float) -> "RedistributionBuilder":
        if not self.mask.allows(src, dst):
            raise InvalidConstraintError(f"transfer {src} -> {dst} is forbidden by the transfer mask")
        return self.set_oscillation(src, dst, rate)

    def set_cycle(self, indices: Sequence[int], rate: float) -> "RedistributionBuilder":
        """Couple ``indices`` in a closed ring with equal ``rate``.

        Every node gains ``rate`` towards its successor and loses it to
        its predecessor, so the ring is balanced. A ring of ``n`` nodes
        has frequencies ``2 * rate * sin(2 pi k / n)``.
        """
        if len(indices) < 3 or len(set(indices)) != len(indices):
            raise InvalidMatrixError("a cycle needs at least three distinct indices")
        for a, b in zip(indices, list(indices[1:]) + [indices[0]]):
            self.set_transfer(a, b, rate)
        return self

    def build(self, tol: float = 1e-12) -> RedistributionMatrix:
        return RedistributionMatrix(self._a, tol)


@dataclass
class OscillationMode:
    """One oscillation mode of a redistribution matrix.

    ``eigenvector`` is the unit complex eigenvector for eigenvalue
    ``+i * frequency``. ``amplitude`` and ``phase`` describe a particular
    state's projection and are zero until initialised.
    """
    frequency: float
    eigenvector: np.ndarray
    amplitude: float = 0.0
    phase: float = 0.0


def extract_modes(matrix: RedistributionMatrix, include_static: bool = False) -> List[OscillationMode]:
    """Return the modes of ``matrix`` ordered by frequency.

    Each nonzero mode appears once, as its non-negative frequency
    representative. Zero-frequency (conserved) directions are included
    only with ``include_static``.
    """
    w, u = matrix.spectrum()
    modes = []
    for k in range(len(w)):
        if w[k] < -MODE_FREQUENCY_EPS:
            modes.append(OscillationMode(float(-w[k]), u[:, k].copy()))
        elif include_static and abs(w[k]) <= MODE_FREQUENCY_EPS:
            modes.append(OscillationMode(0.0, u[:, k].copy()))
    modes.sort(key=lambda m: m.frequency)
    return modes


def as_state_vector(state) -> np.ndarray:
    """Flat ``N_FLATTENED`` view of an ``EnergyCell`` or array-like state."""
    if isinstance(state, EnergyCell):
        return state.flatten()
    return np.asarray(state, dtype=np.float64).reshape(N_FLATTENED)


def project_onto_mode(state, mode_vector: np.ndarray) -> float:
    """Real amplitude of ``state`` along a (normalised) mode vector.

    Under the exact flow this evolves as ``A cos(w t + phi)``.
    """
    v = np.asarray(mode_vector)
    norm = np.linalg.norm(v)
    if norm == 0.0:
        raise ValueError("mode vector must be nonzero")
    return float(np.real(np.vdot(v / norm, as_state_vector(state))))


def detect_local_modes(cell, matrix: RedistributionMatrix) -> List[OscillationMode]:
    """Modes of ``matrix`` with amplitude and phase taken from ``cell``."""
    s = as_state_vector(cell)
    modes = extract_modes(matrix)
    for mode in modes:
        c = np.vdot(mode.eigenvector, s)
        mode.amplitude = float(abs(c))
        mode.phase = float(np.angle(c))
    return modes


def series_propagator(matrix: np.ndarray, dt: float, tol: float = 1e-16, max_terms: int = 60) -> np.ndarray:
    """``exp(matrix * dt)`` by scaling and squaring a Taylor series.

    Raises ``SeriesConvergenceError`` if the scaled series has not
    converged to ``tol`` within ``max_terms`` terms.
    """
    a = np.asarray(matrix, dtype=np.float64) * dt
    norm = float(np.linalg.norm(a, 1))
    squarings = max(0, int(math.ceil(math.log2(norm / 0.5)))) if norm > 0.5 else 0
    a = a / (2.0 ** squarings)
    result = np.eye(a.shape[0])
    term = np.eye(a.shape[0])
    for k in range(1, max_terms + 1):
        term = term @ a / k
        result = result + term
        if np.linalg.norm(term, 1) <= tol * np.linalg.norm(result, 1):
            break
    else:
        raise SeriesConvergenceError(f"exponential series did not converge in {max_terms} terms")
    for _ in range(squarings):
        result = result @ result
    return result


def eigen_propagator(matrix: RedistributionMatrix, dt: float) -> np.ndarray:
    """``exp(R dt)`` from the cached eigendecomposition of ``iR``."""
    w, u = matrix.spectrum()
    return np.real((u * np.exp(-1j * w * dt)) @ u.conj().T)


class RedistributionEngine:
    """Advance cell states under ``ds/dt = R s``.

    Args:
        matrix: Validated redistribution matrix.
        method: ``"eigen"`` or ``"series"``.
        series_tol: Convergence tolerance for the series method.
        series_max_terms: Term cap for the series method.
        workers: Thread count for :meth:`evolve_many`.
    """

    def __init__(
        self,
        matrix: RedistributionMatrix,
        method: str = "eigen",
        series_tol: float = 1e-16,
        series_max_terms: int = 60,
        workers: int = 1,
    ):
        if method not in EXPONENTIAL_METHODS:
            raise ValueError(f"unknown exponential method {method!r}")
        self.matrix = matrix
        self.method = method
        self.series_tol = series_tol
        self.series_max_terms = series_max_terms
        self.workers = workers
        self._cache: Dict[float, np.ndarray] = {}
        if not matrix.is_balanced():
            logger.warning("redistribution matrix has nonzero row sums; cell totals will not be conserved")

    def propagator(self, dt: float) -> np.ndarray:
        dt = float(dt)
        cached = self._cache.get(dt)
        if cached is not None:
            return cached
        if self.matrix.is_zero:
            prop = np.eye(N_FLATTENED)
        elif self.method == "eigen":
            prop = eigen_propagator(self.matrix, dt)
        else:
            prop = series_propagator(self.matrix.matrix, dt, self.series_tol, self.series_max_terms)
        prop.setflags(write=False)
        if len(self._cache) >= PROPAGATOR_CACHE_SIZE:
            self._cache.pop(next(iter(self._cache)))
        self._cache[dt] = prop
        return prop

    def evolve(self, cell, dt: float):
        """Evolve one cell; returns the same kind (``EnergyCell`` or array)."""
        s = as_state_vector(cell)
        out = self.evolve_many(s[None, :], dt)[0]
        if isinstance(cell, EnergyCell):
            return EnergyCell(out.reshape(VARS, FORCES))
        return out.reshape(np.shape(cell))

    def evolve_many(self, states: np.ndarray, dt: float) -> np.ndarray:
        """Evolve an ``(n, N_FLATTENED)`` array of cell states.

        Rows are independent. With ``workers > 1`` disjoint row blocks are
        evolved on a thread pool and joined before returning.
        """
        states = np.asarray(states, dtype=np.float64)
        if not np.all(np.isfinite(states)):
            raise NonFiniteStateError("redistribution input contains non-finite values")
        if self.matrix.is_zero:
            return states.copy()
        prop_t = self.propagator(dt).T
        out = np.empty_like(states)
        n = states.shape[0]
        if self.workers <= 1 or n < 2 * self.workers:
            np.matmul(states, prop_t, out=out)
            return out

        bounds = np.linspace(0, n, self.workers + 1, dtype=int)

        def _block(k: int) -> None:
            a, b = bounds[k], bounds[k + 1]
            np.matmul(states[a:b], prop_t, out=out[a:b])

        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            list(pool.map(_block, range(self.workers)))
        return out


def evolve(cell, matrix: RedistributionMatrix, dt: float, method: str = "eigen"):
    """Convenience wrapper evolving one cell with a throwaway engine."""
    return RedistributionEngine(matrix, method=method).evolve(cell, dt)
