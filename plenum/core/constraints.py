"""
Constraint definitions and the constraint projector.

A ``ConstraintSet`` carries, for each of the ``VARS`` variables, one
``ExpressionConstraint`` (an optional lock of the variable's split across
force channels) and one variable constraint: ``Free``, ``FixedTotal`` or
``FixedRatio``. It also carries a ``TransferMask`` that states which
variable-to-variable and force-to-force couplings a redistribution
matrix may use.

``ConstraintProjector`` enforces a set on a cell or on a whole lattice
array at once. Projection runs in a fixed order: expression locks, then
variable constraints, then clipping of negative noise. Entries already
satisfying a constraint within tolerance are not rewritten, so
projecting a satisfying state is a fixed point.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import List, Sequence, Tuple, Union

import numpy as np

from .cell import EnergyCell
from .errors import InvalidConstraintError
from .types import FORCES, N_FLATTENED, VARS

logger = logging.getLogger(__name__)

#: Default tolerance on ratio and percentage sums
DEFAULT_RATIO_TOL = 1e-9


def check_fractions(values: Sequence[float], what: str, tol: float, length: int = FORCES) -> Tuple[float, ...]:
    """Validate a non-negative fraction set summing to one and return it as a tuple."""
    arr = np.asarray(values, dtype=np.float64)
    if arr.shape != (length,):
        raise InvalidConstraintError(f"{what} must have {length} entries, got shape {arr.shape}")
    if not np.all(np.isfinite(arr)) or np.any(arr < 0.0):
        raise InvalidConstraintError(f"{what} must be finite and non-negative: {arr.tolist()}")
    if abs(arr.sum() - 1.0) > tol:
        raise InvalidConstraintError(f"{what} must sum to 1 (got {arr.sum():.12g})")
    return tuple(float(v) for v in arr)


# ----------------------------------------------------------------------
# Constraint value types


@dataclass(frozen=True)
class Free:
    """No constraint on the variable."""

    def to_dict(self) -> dict:
        return {"kind": "free"}


@dataclass(frozen=True)
class FixedTotal:
    """Hold the variable's per-cell total at ``target``."""
    target: float

    def __post_init__(self) -> None:
        if not math.isfinite(self.target) or self.target < 0.0:
            raise InvalidConstraintError(f"fixed total must be finite and >= 0, got {self.target!r}")

    def to_dict(self) -> dict:
        return {"kind": "fixed_total", "target": self.target}


@dataclass(frozen=True)
class FixedRatio:
    """Split the variable's per-cell total across forces by ``ratios``."""
    ratios: Tuple[float, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "ratios", check_fractions(self.ratios, "fixed ratios", DEFAULT_RATIO_TOL))

    def to_dict(self) -> dict:
        return {"kind": "fixed_ratio", "ratios": list(self.ratios)}


VariableConstraint = Union[Free, FixedTotal, FixedRatio]


def variable_constraint_from_dict(data: dict) -> VariableConstraint:
    kind = data.get("kind")
    if kind == "free":
        return Free()
    if kind == "fixed_total":
        return FixedTotal(float(data["target"]))
    if kind == "fixed_ratio":
        return FixedRatio(tuple(data["ratios"]))
    raise InvalidConstraintError(f"unknown variable constraint kind {kind!r}")


@dataclass(frozen=True)
class ExpressionConstraint:
    """Optional lock of a variable's percentage split across forces.

    ``force_pct`` is only validated (and only used) when ``locked``.
    """
    locked: bool = False
    force_pct: Tuple[float, ...] = (0.25, 0.25, 0.25, 0.25)

    def __post_init__(self) -> None:
        if self.locked:
            pct = check_fractions(self.force_pct, "expression percentages", DEFAULT_RATIO_TOL)
        else:
            pct = tuple(float(v) for v in self.force_pct)
        object.__setattr__(self, "force_pct", pct)

    def to_dict(self) -> dict:
        return {"locked": self.locked, "force_pct": list(self.force_pct)}


@dataclass(frozen=True, eq=False)
class TransferMask:
    """Which couplings a redistribution matrix may use.

    Flat entry ``i = (v1, f1)`` may exchange with ``j = (v2, f2)`` only if
    ``allow_var_to_var[v1, v2]`` and ``allow_force_to_force[f1, f2]``.
    """
    allow_var_to_var: np.ndarray = field(default_factory=lambda: np.ones((VARS, VARS), dtype=bool))
    allow_force_to_force: np.ndarray = field(default_factory=lambda: np.ones((FORCES, FORCES), dtype=bool))

    def __post_init__(self) -> None:
        vv = np.array(self.allow_var_to_var, dtype=bool)
        ff = np.array(self.allow_force_to_force, dtype=bool)
        if vv.shape != (VARS, VARS) or ff.shape != (FORCES, FORCES):
            raise InvalidConstraintError("transfer mask has the wrong shape")
        vv.setflags(write=False)
        ff.setflags(write=False)
        object.__setattr__(self, "allow_var_to_var", vv)
        object.__setattr__(self, "allow_force_to_force", ff)

    @classmethod
    def block_diagonal(cls) -> "TransferMask":
        """Mask that forbids any exchange between different variables."""
        return cls(allow_var_to_var=np.eye(VARS, dtype=bool))

    def allows(self, i: int, j: int) -> bool:
        v1, f1 = divmod(i, FORCES)
        v2, f2 = divmod(j, FORCES)
        return bool(self.allow_var_to_var[v1, v2] and self.allow_force_to_force[f1, f2])

    def allowed_matrix(self) -> np.ndarray:
        """``N x N`` boolean matrix of permitted couplings."""
        return np.kron(self.allow_var_to_var, self.allow_force_to_force).astype(bool)

    def to_dict(self) -> dict:
        return {
            "allow_var_to_var": self.allow_var_to_var.tolist(),
            "allow_force_to_force": self.allow_force_to_force.tolist(),
        }


class ConstraintSet:
    """Per-variable constraints plus the transfer mask.

    Validation happens here, at construction: every locked percentage
    set and every ratio set must sum to one within ``tol``.
    """

    def __init__(
        self,
        variable: Sequence[VariableConstraint] | None = None,
        expression: Sequence[ExpressionConstraint] | None = None,
        transfer_mask: TransferMask | None = None,
        tol: float = DEFAULT_RATIO_TOL,
    ):
        self.variable: Tuple[VariableConstraint, ...] = tuple(variable) if variable is not None else (Free(),) * VARS
        self.expression: Tuple[ExpressionConstraint, ...] = (
            tuple(expression) if expression is not None else (ExpressionConstraint(),) * VARS
        )
        self.transfer_mask = transfer_mask if transfer_mask is not None else TransferMask()
        self.tol = tol
        self.validate()

    def validate(self) -> None:
        if len(self.variable) != VARS or len(self.expression) != VARS:
            raise InvalidConstraintError(f"constraint set needs exactly {VARS} entries per kind")
        for v, vc in enumerate(self.variable):
            if not isinstance(vc, (Free, FixedTotal, FixedRatio)):
                raise InvalidConstraintError(f"variable {v}: unsupported constraint {vc!r}")
            if isinstance(vc, FixedRatio):
                check_fractions(vc.ratios, f"variable {v} fixed ratios", self.tol)
        for v, ec in enumerate(self.expression):
            if not isinstance(ec, ExpressionConstraint):
                raise InvalidConstraintError(f"variable {v}: unsupported expression {ec!r}")
            if ec.locked:
                check_fractions(ec.force_pct, f"variable {v} expression percentages", self.tol)

    def with_variable(self, var: int, constraint: VariableConstraint) -> "ConstraintSet":
        variable = list(self.variable)
        variable[var] = constraint
        return ConstraintSet(variable, self.expression, self.transfer_mask, self.tol)

    def with_expression(self, var: int, constraint: ExpressionConstraint) -> "ConstraintSet":
        expression = list(self.expression)
        expression[var] = constraint
        return ConstraintSet(self.variable, expression, self.transfer_mask, self.tol)

    def is_trivial(self) -> bool:
        return all(isinstance(vc, Free) for vc in self.variable) and not any(ec.locked for ec in self.expression)

    def check_matrix(self, matrix: np.ndarray, tol: float = 0.0) -> None:
        """Raise if ``matrix`` couples channels the transfer mask forbids."""
        arr = np.asarray(matrix)
        if arr.shape != (N_FLATTENED, N_FLATTENED):
            raise InvalidConstraintError("matrix shape does not match the flattened cell")
        forbidden = ~self.transfer_mask.allowed_matrix()
        np.fill_diagonal(forbidden, False)
        bad = forbidden & (np.abs(arr) > tol)
        if np.any(bad):
            i, j = (int(k) for k in np.argwhere(bad)[0])
            raise InvalidConstraintError(f"redistribution couples {i} -> {j}, which the transfer mask forbids")

    def to_dict(self) -> dict:
        return {
            "variable": [vc.to_dict() for vc in self.variable],
            "expression": [ec.to_dict() for ec in self.expression],
            "transfer_mask": self.transfer_mask.to_dict(),
            "tol": self.tol,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ConstraintSet":
        mask = data.get("transfer_mask")
        return cls(
            variable=[variable_constraint_from_dict(d) for d in data["variable"]],
            expression=[ExpressionConstraint(bool(d["locked"]), tuple(d["force_pct"])) for d in data["expression"]],
            transfer_mask=TransferMask(np.array(mask["allow_var_to_var"]), np.array(mask["allow_force_to_force"]))
            if mask is not None
            else None,
            tol=float(data.get("tol", DEFAULT_RATIO_TOL)),
        )

    def __repr__(self) -> str:
        return f"ConstraintSet(variable={list(self.variable)!r}, expression={list(self.expression)!r})"


# ----------------------------------------------------------------------
# Projection


@dataclass
class DegenerateProjection:
    """A fixed-total target that could not be met because the variable
    held no energy. The affected cells are left unscaled."""
    variable: int
    target: float
    cells: int


@dataclass
class ProjectionReport:
    """Diagnostics from one projection pass."""
    clipped_cells: int = 0
    clipped_energy: float = 0.0
    clip_exceeded: bool = False
    degenerate: List[DegenerateProjection] = field(default_factory=list)

    @property
    def clipped(self) -> bool:
        return self.clipped_cells > 0


class ConstraintProjector:
    """Enforce a ``ConstraintSet`` on cells or lattice arrays.

    Args:
        constraints: The constraint set to enforce.
        clip_tolerance: Clipped magnitude above which clipping is logged
            as evidence of upstream instability.
        tol: Relative tolerance within which an entry counts as already
            satisfying a constraint.
    """

    def __init__(self, constraints: ConstraintSet, clip_tolerance: float = 1e-9, tol: float = 1e-12):
        self.constraints = constraints
        self.clip_tolerance = clip_tolerance
        self.tol = tol

    def project(self, cell: EnergyCell) -> ProjectionReport:
        """Project a single cell in place."""
        return self.project_array(cell.values)

    def project_array(self, values: np.ndarray) -> ProjectionReport:
        """Project an array of shape ``(..., VARS, FORCES)`` in place."""
        if values.shape[-2:] != (VARS, FORCES):
            raise ValueError(f"expected trailing shape ({VARS}, {FORCES}), got {values.shape}")
        work = values.reshape(-1, VARS, FORCES)
        report = ProjectionReport()

        for v, expr in enumerate(self.constraints.expression):
            if expr.locked:
                self._match_split(work[:, v, :], np.asarray(expr.force_pct))

        for v, vc in enumerate(self.constraints.variable):
            if isinstance(vc, FixedTotal):
                degenerate = self._match_total(work[:, v, :], vc.target)
                if degenerate:
                    report.degenerate.append(DegenerateProjection(v, vc.target, degenerate))
                    logger.warning(
                        "fixed total %.6g for variable %d unsatisfiable in %d cell(s) with no energy",
                        vc.target, v, degenerate,
                    )
            elif isinstance(vc, FixedRatio):
                self._match_split(work[:, v, :], np.asarray(vc.ratios))

        negative = work < 0.0
        if np.any(negative):
            report.clipped_energy = float(-work[negative].sum())
            report.clipped_cells = int(np.any(negative, axis=(1, 2)).sum())
            work[negative] = 0.0
            if report.clipped_energy > self.clip_tolerance:
                report.clip_exceeded = True
                logger.warning(
                    "clipped %.3e energy from %d cell(s); exceeds tolerance %.1e",
                    report.clipped_energy, report.clipped_cells, self.clip_tolerance,
                )

        if not np.shares_memory(work, values):
            values[...] = work.reshape(values.shape)
        return report

    def _match_split(self, rows: np.ndarray, fractions: np.ndarray) -> None:
        totals = rows.sum(axis=1, keepdims=True)
        target = totals * fractions
        close = np.abs(rows - target) <= self.tol * np.abs(totals)
        needs = ~np.all(close, axis=1)
        if np.any(needs):
            rows[needs] = target[needs]

    def _match_total(self, rows: np.ndarray, target: float) -> int:
        totals = rows.sum(axis=1)
        empty = totals <= 0.0
        degenerate = int(np.count_nonzero(empty)) if target != 0.0 else 0
        if target == 0.0:
            rows[empty] = 0.0
        needs = ~empty & (np.abs(totals - target) > self.tol * max(abs(target), 1e-300))
        if np.any(needs):
            rows[needs] *= (target / totals[needs])[:, None]
        return degenerate

    def verify(self, values: np.ndarray, tol: float = 1e-9) -> List[str]:
        """Describe every constraint the array violates by more than ``tol``."""
        work = np.asarray(values).reshape(-1, VARS, FORCES)
        violations: List[str] = []
        for v, expr in enumerate(self.constraints.expression):
            if expr.locked:
                err = _split_error(work[:, v, :], np.asarray(expr.force_pct))
                if err > tol:
                    violations.append(f"variable {v}: expression lock violated (max error {err:.3e})")
        for v, vc in enumerate(self.constraints.variable):
            if isinstance(vc, FixedTotal):
                err = float(np.max(np.abs(work[:, v, :].sum(axis=1) - vc.target)))
                if err > tol:
                    violations.append(f"variable {v}: fixed total {vc.target:.6g} violated (max error {err:.3e})")
            elif isinstance(vc, FixedRatio):
                err = _split_error(work[:, v, :], np.asarray(vc.ratios))
                if err > tol:
                    violations.append(f"variable {v}: fixed ratio violated (max error {err:.3e})")
        if np.any(work < -tol):
            violations.append(f"negative energy present (min {work.min():.3e})")
        return violations


def _split_error(rows: np.ndarray, fractions: np.ndarray) -> float:
    totals = rows.sum(axis=1, keepdims=True)
    return float(np.max(np.abs(rows - totals * fractions)))


def project(cell: EnergyCell, constraints: ConstraintSet) -> ProjectionReport:
    """Project ``cell`` in place with default tolerances."""
    return ConstraintProjector(constraints).project(cell)
