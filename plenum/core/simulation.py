"""
Simulation loop composing redistribution and transport.

A ``Simulation`` owns the lattice together with the redistribution
matrix, coupling field, constraint set and configuration that drive it.
Each call to :meth:`Simulation.step` performs one Strang split step::

    half redistribution -> transport sweep -> half redistribution -> projection

Both sub-processes conserve the global total, and the symmetric
splitting keeps the composition second order in ``dt``. A step is
all-or-nothing: every phase writes into fresh buffers, the result is
checked for finiteness and only then swapped in. A failed step raises
and leaves time, step counter and lattice exactly as they were.

Lifecycle::

    CREATED -> RUNNING -> (CHECKPOINTED <-> RUNNING) -> TERMINATED

A single non-blocking lock guards every state-changing call. A second
thread entering ``step``, ``checkpoint`` or ``restore`` while another
holds the lock receives ``SimulationStateError`` instead of waiting.
"""

from __future__ import annotations

import json
import logging
import math
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

import numpy as np

from ..analysis.patterns import PatternMetrics, compute_pattern_metrics
from .config import SimulationConfig
from .constraints import ConstraintProjector, ConstraintSet, ProjectionReport
from .errors import NonFiniteStateError, SimulationStateError
from .fabric import Lattice
from .ledger import ConservationLedger, ConservationReport, per_variable_totals, verify_constraints
from .redistribution import RedistributionEngine, RedistributionMatrix
from .transport import CouplingField, TransportEngine
from .types import N_FLATTENED

logger = logging.getLogger(__name__)

#: Relative slack when comparing accumulated time to an end time
TIME_EPSILON = 1e-12

#: Snapshot format written by SimulationSnapshot.to_dict
SNAPSHOT_VERSION = 1


class SimulationPhase(Enum):
    CREATED = "created"
    RUNNING = "running"
    CHECKPOINTED = "checkpointed"
    TERMINATED = "terminated"


@dataclass
class StepReport:
    """Outcome of one committed step."""
    step: int
    time: float
    dt: float
    total_energy: float
    projection: ProjectionReport
    relative_error: Optional[float] = None


@dataclass
class EvolveSummary:
    steps: int
    cancelled: bool
    time: float


@dataclass
class SimulationSnapshot:
    """Deep copy of everything needed to resume a run bit for bit."""
    size: tuple
    energy: np.ndarray
    redistribution: np.ndarray
    coupling: np.ndarray
    constraints: ConstraintSet
    config: SimulationConfig
    time: float
    step: int
    initial_total: float
    initial_per_var: List[float]

    def to_dict(self) -> dict:
        """JSON-ready mapping. Floats keep their ``repr`` and round-trip exactly."""
        return {
            "version": SNAPSHOT_VERSION,
            "size": list(self.size),
            "energy": self.energy.tolist(),
            "redistribution": self.redistribution.tolist(),
            "coupling": self.coupling.tolist(),
            "constraints": self.constraints.to_dict(),
            "config": self.config.to_dict(),
            "time": self.time,
            "step": self.step,
            "initial_total": self.initial_total,
            "initial_per_var": list(self.initial_per_var),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SimulationSnapshot":
        version = data.get("version", SNAPSHOT_VERSION)
        if version != SNAPSHOT_VERSION:
            raise ValueError(f"unsupported snapshot version {version!r}")
        return cls(
            size=tuple(int(s) for s in data["size"]),
            energy=np.array(data["energy"], dtype=np.float64),
            redistribution=np.array(data["redistribution"], dtype=np.float64),
            coupling=np.array(data["coupling"], dtype=np.float64),
            constraints=ConstraintSet.from_dict(data["constraints"]),
            config=SimulationConfig.from_dict(data["config"]),
            time=float(data["time"]),
            step=int(data["step"]),
            initial_total=float(data["initial_total"]),
            initial_per_var=[float(v) for v in data["initial_per_var"]],
        )

    def save(self, path: str) -> None:
        with open(path, "w", encoding="utf-8") as fh:
            json.dump(self.to_dict(), fh)

    @classmethod
    def load(cls, path: str) -> "SimulationSnapshot":
        with open(path, "r", encoding="utf-8") as fh:
            return cls.from_dict(json.load(fh))


class Simulation:
    """Owner of a lattice run.

    Args:
        lattice: Initial state; copied, never aliased.
        redistribution: ``RedistributionMatrix`` or raw ``N x N`` array.
        coupling: ``CouplingField``, array or scalar rate.
        constraints: Constraint set; defaults to unconstrained.
        config: Numerical settings; defaults are derived from the lattice.
        project_initial: Project the initial lattice onto ``constraints``
            before the first step.

    Raises:
        InvalidMatrixError: ``redistribution`` is not antisymmetric.
        InvalidConstraintError: constraints are inconsistent or forbid a
            coupling present in ``redistribution``.
        NonFiniteStateError: the lattice holds non-finite energy.
        ValueError: bad coupling, negative energy or mismatched sizes.
    """

    def __init__(
        self,
        lattice: Lattice,
        redistribution,
        coupling,
        constraints: Optional[ConstraintSet] = None,
        config: Optional[SimulationConfig] = None,
        project_initial: bool = True,
    ):
        if config is None:
            sx, sy, sz = lattice.size
            config = SimulationConfig(size_x=sx, size_y=sy, size_z=sz)
        self._lock = threading.Lock()
        self.phase = SimulationPhase.CREATED
        self.time = 0.0
        self.step_count = 0
        self._install(
            config, lattice.copy(), redistribution, coupling, constraints or ConstraintSet(tol=config.ratio_tol)
        )

        if project_initial and not self.constraints.is_trivial():
            self.projector.project_array(self._lattice.energy)
        self.initial_total = self._lattice.total_energy()
        self.initial_per_var = per_variable_totals(self._lattice).tolist()
        self.ledger = ConservationLedger(self.initial_total, config.conservation_tol)
        logger.debug("created simulation on %s lattice, total %.12g", lattice.size, self.initial_total)

    def _install(
        self, cfg: SimulationConfig, lattice: Lattice, redistribution, coupling, constraints: ConstraintSet
    ) -> None:
        """Validate a complete run state, then swap it in.

        Nothing on ``self`` changes unless every check passes.
        """
        if cfg.size != lattice.size:
            raise ValueError(f"config size {cfg.size} does not match lattice size {lattice.size}")
        matrix = (
            redistribution
            if isinstance(redistribution, RedistributionMatrix)
            else RedistributionMatrix(redistribution, tol=cfg.antisymmetry_tol)
        )
        coupling_field = coupling if isinstance(coupling, CouplingField) else CouplingField(coupling)
        constraints.validate()
        constraints.check_matrix(matrix.matrix, tol=cfg.antisymmetry_tol)
        coupling_field.check_lattice(lattice.size)
        lattice.validate(cfg.noise_tol)
        redistribution_engine = RedistributionEngine(
            matrix,
            method=cfg.exponential_method,
            series_tol=cfg.series_tol,
            series_max_terms=cfg.series_max_terms,
            workers=cfg.workers,
        )
        transport_engine = TransportEngine(
            coupling_field, mode=cfg.transport_mode, spacing=cfg.lattice_spacing, workers=cfg.workers
        )
        projector = ConstraintProjector(constraints, clip_tolerance=cfg.clip_tolerance)
        np.maximum(lattice.energy, 0.0, out=lattice.energy)

        self.config = cfg
        self._lattice = lattice
        self.redistribution = matrix
        self.coupling = coupling_field
        self.constraints = constraints
        self.redistribution_engine = redistribution_engine
        self.transport_engine = transport_engine
        self.projector = projector

    @contextmanager
    def _writer(self, action: str):
        if not self._lock.acquire(blocking=False):
            raise SimulationStateError(f"cannot {action}: another caller is mutating the simulation")
        try:
            yield
        finally:
            self._lock.release()

    @property
    def lattice(self) -> Lattice:
        """The live lattice. Treat as read-only; mutate only through ``step``."""
        return self._lattice

    # ------------------------------------------------------------------
    # Stepping

    def step(self, dt: float) -> StepReport:
        """Advance the lattice by one Strang split step of size ``dt``.

        Raises:
            UnstableTimestepError: Laplacian transport with ``dt`` above
                the stability bound; nothing is computed.
            NonFiniteStateError: a phase produced NaN or infinity; the
                prior state is kept.
            SimulationStateError: the simulation is terminated or another
                caller is inside a state-changing method.
        """
        if not math.isfinite(dt) or dt < 0.0:
            raise ValueError(f"dt must be finite and non-negative, got {dt!r}")
        with self._writer("step"):
            if self.phase is SimulationPhase.TERMINATED:
                raise SimulationStateError("simulation is terminated")
            self.transport_engine.check_stability(dt)

            shape = self._lattice.energy.shape
            half = 0.5 * dt
            stage = self.redistribution_engine.evolve_many(self._lattice.flat(), half)
            stage = self.transport_engine.distribute(stage.reshape(shape), dt)
            stage = self.redistribution_engine.evolve_many(stage.reshape(-1, N_FLATTENED), half)
            new_energy = stage.reshape(shape)
            if not np.all(np.isfinite(new_energy)):
                raise NonFiniteStateError(f"step {self.step_count + 1} produced non-finite energy")
            projection = self.projector.project_array(new_energy)

            # commit
            self._lattice.energy = new_energy
            self.time += dt
            self.step_count += 1
            self.phase = SimulationPhase.RUNNING

            total = self._lattice.total_energy()
            rel = None
            interval = self.config.conservation_check_interval
            if interval > 0 and self.step_count % interval == 0:
                rel = self.ledger.record(self.step_count, self.time, total).relative_error
            logger.debug("step %d t=%.6g total=%.12g", self.step_count, self.time, total)
            return StepReport(self.step_count, self.time, dt, total, projection, rel)

    def evolve_until(
        self,
        t_end: float,
        dt: float,
        observer: Optional[Callable[["Simulation"], Optional[bool]]] = None,
    ) -> EvolveSummary:
        """Step with a fixed ``dt`` until ``time >= t_end``.

        ``observer`` is called after every step; returning ``True``
        cancels the run after that step.
        """
        if not dt > 0.0:
            raise ValueError("dt must be positive")
        steps = 0
        slack = TIME_EPSILON * max(1.0, abs(t_end))
        while self.time < t_end - slack:
            self.step(dt)
            steps += 1
            if observer is not None and observer(self):
                logger.info("run cancelled by observer at t=%.6g after %d step(s)", self.time, steps)
                return EvolveSummary(steps, True, self.time)
        return EvolveSummary(steps, False, self.time)

    # ------------------------------------------------------------------
    # Checkpointing

    def checkpoint(self) -> SimulationSnapshot:
        with self._writer("checkpoint"):
            snap = SimulationSnapshot(
                size=self._lattice.size,
                energy=self._lattice.energy.copy(),
                redistribution=self.redistribution.matrix.copy(),
                coupling=self.coupling.kappa.copy(),
                constraints=ConstraintSet.from_dict(self.constraints.to_dict()),
                config=SimulationConfig.from_dict(self.config.to_dict()),
                time=self.time,
                step=self.step_count,
                initial_total=self.initial_total,
                initial_per_var=list(self.initial_per_var),
            )
            if self.phase is not SimulationPhase.TERMINATED:
                self.phase = SimulationPhase.CHECKPOINTED
            return snap

    def restore(self, snapshot: SimulationSnapshot) -> None:
        """Replace the whole run state with ``snapshot``.

        A snapshot that fails validation raises and leaves the run as it
        was.
        """
        with self._writer("restore"):
            if self.phase is SimulationPhase.TERMINATED:
                raise SimulationStateError("cannot restore a terminated simulation")
            config = SimulationConfig.from_dict(snapshot.config.to_dict())
            self._install(
                config,
                Lattice(snapshot.size, snapshot.energy.copy()),
                RedistributionMatrix(snapshot.redistribution, tol=config.antisymmetry_tol),
                CouplingField(snapshot.coupling),
                ConstraintSet.from_dict(snapshot.constraints.to_dict()),
            )
            self.time = snapshot.time
            self.step_count = snapshot.step
            self.initial_total = snapshot.initial_total
            self.initial_per_var = list(snapshot.initial_per_var)
            self.ledger = ConservationLedger(self.initial_total, self.config.conservation_tol)
            self.phase = SimulationPhase.CHECKPOINTED

    @classmethod
    def from_snapshot(cls, snapshot: SimulationSnapshot) -> "Simulation":
        sim = cls(
            Lattice(snapshot.size, snapshot.energy),
            RedistributionMatrix(snapshot.redistribution, tol=snapshot.config.antisymmetry_tol),
            CouplingField(snapshot.coupling),
            ConstraintSet.from_dict(snapshot.constraints.to_dict()),
            SimulationConfig.from_dict(snapshot.config.to_dict()),
            project_initial=False,
        )
        sim.time = snapshot.time
        sim.step_count = snapshot.step
        sim.initial_total = snapshot.initial_total
        sim.initial_per_var = list(snapshot.initial_per_var)
        sim.ledger = ConservationLedger(sim.initial_total, sim.config.conservation_tol)
        sim.phase = SimulationPhase.CHECKPOINTED
        return sim

    def terminate(self) -> None:
        with self._writer("terminate"):
            if self.phase is not SimulationPhase.TERMINATED:
                logger.debug("terminated at step %d t=%.6g", self.step_count, self.time)
            self.phase = SimulationPhase.TERMINATED

    # ------------------------------------------------------------------
    # Diagnostics

    def verify_energy_conservation(self) -> float:
        """Relative drift of the global total since the run began."""
        current = self._lattice.total_energy()
        return abs(current - self.initial_total) / max(abs(self.initial_total), 1e-300)

    def conservation_report(self) -> ConservationReport:
        return verify_constraints(
            self._lattice,
            self.constraints,
            initial_total=self.initial_total,
            initial_per_var=self.initial_per_var,
            tol=self.config.conservation_tol,
        )

    def compute_pattern_metrics(self) -> PatternMetrics:
        cfg = self.config
        return compute_pattern_metrics(
            self._lattice,
            cell_volume=cfg.cell_volume,
            radii=cfg.clustering_radii or None,
        )

    def __repr__(self) -> str:
        return f"<Simulation phase={self.phase.value} step={self.step_count} t={self.time:.6g}>"
