"""
Ledger subsystem responsible for conservation bookkeeping.

This module implements the accounting checks that certify the two
conserved quantities of the simulator: the global energy total, which is
conserved by both redistribution and transport, and per-variable totals,
which are conserved only when the redistribution matrix is block
diagonal in the variable index. Nothing here mutates state. Breaches are
reported as return values and log records; the ledger never raises on a
drift.

``ConservationLedger`` keeps a bounded history of periodic checks so a
long run can be audited afterwards without storing every lattice.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Sequence

import numpy as np

from .constraints import ConstraintProjector, ConstraintSet
from .fabric import Lattice
from .types import VARS

logger = logging.getLogger(__name__)

#: Denominator floor for relative errors of a near-empty lattice
TOTAL_EPSILON = 1e-300

#: Default number of checks retained by a ConservationLedger
DEFAULT_HISTORY = 10000


def _as_energy(obj) -> np.ndarray:
    if isinstance(obj, Lattice):
        return obj.energy
    return np.asarray(obj, dtype=np.float64)


def total_energy(lattice) -> float:
    """Sum of every channel of every cell."""
    return float(_as_energy(lattice).sum())


def per_variable_totals(lattice) -> np.ndarray:
    """Length ``VARS`` array of lattice-wide variable totals."""
    energy = _as_energy(lattice)
    return energy.reshape(-1, *energy.shape[-2:]).sum(axis=(0, 2))


def per_force_totals(lattice) -> np.ndarray:
    energy = _as_energy(lattice)
    return energy.reshape(-1, *energy.shape[-2:]).sum(axis=(0, 1))


def _relative(before: float, after: float) -> float:
    return abs(after - before) / max(abs(before), TOTAL_EPSILON)


def _scalar_total(obj) -> float:
    if isinstance(obj, Lattice):
        return obj.total_energy()
    arr = np.asarray(obj, dtype=np.float64)
    return float(arr) if arr.ndim == 0 else float(arr.sum())


def verify_global_conservation(before, after, tol: float = 1e-9) -> bool:
    """True if the total energy changed by at most ``tol`` relative.

    ``before`` and ``after`` may be lattices, energy arrays or totals.
    """
    return _relative(_scalar_total(before), _scalar_total(after)) <= tol


def verify_variable_conservation(before, after, var: int, tol: float = 1e-9) -> bool:
    """True if variable ``var``'s lattice total changed by at most ``tol`` relative.

    Meaningful for any redistribution matrix, but only guaranteed when
    the matrix does not couple ``var`` to other variables.
    """
    if not 0 <= var < VARS:
        raise IndexError(f"variable index {var} out of range")
    b = per_variable_totals(before)[var] if not np.isscalar(before) else float(before)
    a = per_variable_totals(after)[var] if not np.isscalar(after) else float(after)
    return _relative(float(b), float(a)) <= tol


def global_relative_error(lattice, initial_total: float) -> float:
    return _relative(float(initial_total), total_energy(lattice))


def variable_relative_errors(lattice, initial_per_var: Sequence[float]) -> np.ndarray:
    initial = np.asarray(initial_per_var, dtype=np.float64)
    current = per_variable_totals(lattice)
    return np.abs(current - initial) / np.maximum(np.abs(initial), TOTAL_EPSILON)


def entropy_check(lattice) -> float:
    """Shannon entropy (nats) of the normalised cell-energy distribution.

    Returns 0 for an empty lattice.
    """
    energy = _as_energy(lattice)
    totals = energy.reshape(-1, *energy.shape[-2:]).sum(axis=(1, 2))
    grand = totals.sum()
    if grand <= 0.0:
        return 0.0
    p = totals[totals > 0.0] / grand
    return float(-(p * np.log(p)).sum())


@dataclass
class ConservationReport:
    """Outcome of a full conservation audit of one lattice state.

    Attributes:
        total: Current global total.
        relative_error: Drift of the total relative to the reference.
        variable_errors: Per-variable relative drift.
        violations: Constraint violations found in the state.
        passed: True when drift is within tolerance and no constraint
            is violated.
    """
    total: float
    relative_error: float
    variable_errors: List[float]
    violations: List[str] = field(default_factory=list)
    passed: bool = True


def verify_constraints(
    lattice,
    constraints: ConstraintSet,
    initial_total: Optional[float] = None,
    initial_per_var: Optional[Sequence[float]] = None,
    tol: float = 1e-9,
) -> ConservationReport:
    """Audit a lattice against its constraints and reference totals."""
    total = total_energy(lattice)
    rel = global_relative_error(lattice, initial_total) if initial_total is not None else 0.0
    var_err = (
        variable_relative_errors(lattice, initial_per_var).tolist()
        if initial_per_var is not None
        else [0.0] * VARS
    )
    violations = ConstraintProjector(constraints).verify(_as_energy(lattice), tol)
    if rel > tol:
        violations.append(f"global total drifted by {rel:.3e} relative")
    return ConservationReport(total, rel, var_err, violations, passed=not violations)


@dataclass
class LedgerEntry:
    step: int
    time: float
    total: float
    relative_error: float
    passed: bool


class ConservationLedger:
    """Record of periodic conservation checks.

    Args:
        initial_total: Reference total all later checks are compared to.
        tol: Relative drift above which a check is a breach.
        history: Maximum number of entries kept.
    """

    def __init__(self, initial_total: float, tol: float = 1e-9, history: int = DEFAULT_HISTORY):
        self.initial_total = float(initial_total)
        self.tol = tol
        self.entries: Deque[LedgerEntry] = deque(maxlen=history)
        self.breaches = 0
        self.max_error = 0.0

    def record(self, step: int, time: float, total: float) -> LedgerEntry:
        """Append one check; breaches are logged, never raised."""
        rel = _relative(self.initial_total, total)
        passed = rel <= self.tol
        entry = LedgerEntry(step, time, float(total), rel, passed)
        self.entries.append(entry)
        self.max_error = max(self.max_error, rel)
        if not passed:
            self.breaches += 1
            logger.warning(
                "conservation drift %.3e at step %d (t=%.6g) exceeds tolerance %.1e",
                rel, step, time, self.tol,
            )
        return entry

    def energy_trace(self) -> np.ndarray:
        """``(n, 2)`` array of ``(time, total)`` pairs."""
        if not self.entries:
            return np.empty((0, 2))
        return np.array([(e.time, e.total) for e in self.entries])

    def summary(self) -> Dict[str, float]:
        last = self.entries[-1] if self.entries else None
        return {
            "initial_total": self.initial_total,
            "last_total": last.total if last else self.initial_total,
            "checks": len(self.entries),
            "breaches": self.breaches,
            "max_relative_error": self.max_error,
        }

    def clear(self) -> None:
        self.entries.clear()
        self.breaches = 0
        self.max_error = 0.0

    def describe(self) -> str:
        s = self.summary()
        status = "ok" if s["breaches"] == 0 else f"{s['breaches']} breach(es)"
        return f"{s['checks']} check(s), {status}, max drift {s['max_relative_error']:.3e}"
