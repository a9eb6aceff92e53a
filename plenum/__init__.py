"""
Plenum conservative energy-transport simulation package.

This package contains a lattice simulator in which every cell holds
energy split across a small fixed set of variables and forces. Energy
oscillates inside a cell under an antisymmetric redistribution matrix
and diffuses between neighbouring cells through exact pairwise
exchange. Both processes conserve the global total to floating point
rounding, and the simulation loop composes them with Strang operator
splitting.

The major subpackages are:

``plenum.core``        Core engine components such as configuration,
                       common types, the lattice fabric, constraint
                       projection, redistribution and transport engines,
                       the conservation ledger and the simulation loop.
``plenum.analysis``    Derived diagnostics: pattern metrics (void, wall
                       and filament classification, power spectrum,
                       clustering dimension) and oscillation mode
                       tracking.

Please see the individual modules for further documentation.
"""

from .core.config import SimulationConfig
from .core.errors import (
    PlenumError,
    InvalidMatrixError,
    InvalidConstraintError,
    NonFiniteStateError,
    UnstableTimestepError,
    SeriesConvergenceError,
    SimulationStateError,
)
from .core.types import VARS, FORCES, N_FLATTENED
from .core.cell import EnergyCell
from .core.fabric import Lattice
from .core.constraints import (
    ConstraintSet,
    ConstraintProjector,
    ExpressionConstraint,
    FixedRatio,
    FixedTotal,
    Free,
    TransferMask,
)
from .core.redistribution import RedistributionMatrix, RedistributionBuilder, RedistributionEngine
from .core.transport import CouplingField, TransportEngine
from .core.seeding import EnergyDistribution, generate_lattice, initialize_homogeneous, initialize_structured
from .core.simulation import Simulation, SimulationPhase, SimulationSnapshot

__version__ = "0.3.0"

__all__ = [
    "core",
    "analysis",
    "SimulationConfig",
    "PlenumError",
    "InvalidMatrixError",
    "InvalidConstraintError",
    "NonFiniteStateError",
    "UnstableTimestepError",
    "SeriesConvergenceError",
    "SimulationStateError",
    "VARS",
    "FORCES",
    "N_FLATTENED",
    "EnergyCell",
    "Lattice",
    "ConstraintSet",
    "ConstraintProjector",
    "ExpressionConstraint",
    "FixedRatio",
    "FixedTotal",
    "Free",
    "TransferMask",
    "RedistributionMatrix",
    "RedistributionBuilder",
    "RedistributionEngine",
    "CouplingField",
    "TransportEngine",
    "EnergyDistribution",
    "generate_lattice",
    "initialize_homogeneous",
    "initialize_structured",
    "Simulation",
    "SimulationPhase",
    "SimulationSnapshot",
]
