"""
Per-cell energy storage.

An ``EnergyCell`` wraps a ``(VARS, FORCES)`` float64 matrix. The public
invariant is that every entry is finite and non-negative; tiny negative
values produced by floating point noise are clipped on construction via
:meth:`EnergyCell.from_values`, anything larger is rejected. Engines
that may transiently leave the non-negative orthant (redistribution)
construct cells directly and leave clipping to the constraint
projector, which reports it.
"""

from __future__ import annotations

from typing import Iterable

import numpy as np

from .errors import NonFiniteStateError
from .types import FORCES, N_FLATTENED, VARS


class EnergyCell:
    """Energy matrix of one lattice site indexed by (variable, force)."""

    __slots__ = ("values",)

    def __init__(self, values: np.ndarray | None = None):
        if values is None:
            values = np.zeros((VARS, FORCES), dtype=np.float64)
        arr = np.asarray(values, dtype=np.float64)
        if arr.shape == (N_FLATTENED,):
            arr = arr.reshape(VARS, FORCES)
        if arr.shape != (VARS, FORCES):
            raise ValueError(f"cell values must have shape ({VARS}, {FORCES}), got {arr.shape}")
        self.values = arr

    @classmethod
    def from_values(cls, values: Iterable, noise_tol: float = 1e-12) -> "EnergyCell":
        """Build a validated cell.

        Non-finite entries raise ``NonFiniteStateError``. Entries in
        ``[-noise_tol, 0)`` are clipped to zero; more negative entries
        raise ``ValueError``.
        """
        arr = np.array(values, dtype=np.float64)
        cell = cls(arr)
        if not np.all(np.isfinite(cell.values)):
            raise NonFiniteStateError("cell contains non-finite energy")
        if np.any(cell.values < -noise_tol):
            raise ValueError(f"cell contains negative energy below -{noise_tol}")
        np.maximum(cell.values, 0.0, out=cell.values)
        return cell

    @classmethod
    def from_flat(cls, vector: Iterable) -> "EnergyCell":
        arr = np.array(vector, dtype=np.float64)
        if arr.shape != (N_FLATTENED,):
            raise ValueError(f"flat vector must have length {N_FLATTENED}")
        return cls(arr.reshape(VARS, FORCES))

    def flatten(self) -> np.ndarray:
        return self.values.reshape(N_FLATTENED).copy()

    def copy(self) -> "EnergyCell":
        return EnergyCell(self.values.copy())

    def total(self) -> float:
        return float(self.values.sum())

    def per_variable(self) -> np.ndarray:
        return self.values.sum(axis=1)

    def per_force(self) -> np.ndarray:
        return self.values.sum(axis=0)

    def per_variable_percentage(self, var: int) -> np.ndarray:
        """Fraction of variable ``var`` held in each force channel.

        Returns zeros for a variable with no energy.
        """
        row = self.values[var]
        total = row.sum()
        if total <= 0.0:
            return np.zeros(FORCES, dtype=np.float64)
        return row / total

    def is_valid(self, tolerance: float = 0.0) -> bool:
        """Return True if all entries are finite and >= ``-tolerance``."""
        return bool(np.all(np.isfinite(self.values)) and np.all(self.values >= -tolerance))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EnergyCell):
            return NotImplemented
        return bool(np.array_equal(self.values, other.values))

    def __repr__(self) -> str:
        return f"EnergyCell(total={self.total():.6g})"
