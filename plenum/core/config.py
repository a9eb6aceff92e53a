"""
Simulation configuration definitions.

This module defines the configuration dataclass used to parameterise a
Plenum run. Fields carry explicit defaults so that test runs can be
created easily without requiring the user to supply values for every
field. ``SimulationConfig`` holds numerical settings only; the lattice
contents, redistribution matrix, coupling field and constraint set are
passed to :class:`plenum.core.simulation.Simulation` directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields


EXPONENTIAL_METHODS = ("eigen", "series")
TRANSPORT_MODES = ("exact", "laplacian")


@dataclass
class SimulationConfig:
    """Top level configuration for Plenum simulation runs.

    Where appropriate, fields include defaults that work reasonably for
    small demonstrations. Users are encouraged to override these as
    needed when constructing a scenario.
    """

    # Grid dimensions (periodic in every axis)
    size_x: int = 8
    size_y: int = 8
    size_z: int = 8

    # Random seed for initial condition builders
    base_seed: int = 42

    # Validation tolerances
    antisymmetry_tol: float = 1e-12
    ratio_tol: float = 1e-9
    noise_tol: float = 1e-12

    # Matrix exponential: "eigen" (eigendecomposition, stable for any dt)
    # or "series" (scaling and squaring of a truncated Taylor series)
    exponential_method: str = "eigen"
    series_max_terms: int = 60
    series_tol: float = 1e-16

    # Transport: "exact" pairwise exchange or explicit "laplacian" update
    transport_mode: str = "exact"
    lattice_spacing: float = 1.0
    cell_volume: float = 1.0

    # Data-parallel workers per phase (1 runs inline)
    workers: int = 1

    # Diagnostics
    clip_tolerance: float = 1e-9
    conservation_tol: float = 1e-9
    conservation_check_interval: int = 1

    # Pattern metrics
    clustering_radii: tuple = ()

    # Extra parameters reserved for scenario specific use
    extras: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        if min(self.size_x, self.size_y, self.size_z) < 1:
            raise ValueError("lattice dimensions must be positive")
        if self.exponential_method not in EXPONENTIAL_METHODS:
            raise ValueError(
                f"exponential_method must be one of {EXPONENTIAL_METHODS}, got {self.exponential_method!r}"
            )
        if self.transport_mode not in TRANSPORT_MODES:
            raise ValueError(
                f"transport_mode must be one of {TRANSPORT_MODES}, got {self.transport_mode!r}"
            )
        if self.workers < 1:
            raise ValueError("workers must be >= 1")
        if self.lattice_spacing <= 0 or self.cell_volume <= 0:
            raise ValueError("lattice_spacing and cell_volume must be positive")
        self.clustering_radii = tuple(float(r) for r in self.clustering_radii)

    @property
    def size(self) -> tuple[int, int, int]:
        return (self.size_x, self.size_y, self.size_z)

    def to_dict(self) -> dict:
        """Return a dict representation of the configuration.

        Useful for serialisation or interfacing with dynamic
        configuration loaders.
        """
        data = self.__dict__.copy()
        data["clustering_radii"] = list(self.clustering_radii)
        data["extras"] = dict(self.extras)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "SimulationConfig":
        """Build a configuration from a mapping.

        Keys that do not correspond to a field are collected into
        ``extras`` rather than rejected, so configurations written by
        newer versions still load.
        """
        known = {f.name for f in fields(cls)}
        kwargs = {}
        extras = dict(data.get("extras", {}))
        for key, value in data.items():
            if key == "extras":
                continue
            if key in known:
                kwargs[key] = value
            else:
                extras[key] = value
        kwargs["extras"] = extras
        return cls(**kwargs)
