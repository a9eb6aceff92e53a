"""
Fabric subsystem defines the spatial substrate and storage for cell
energies.

The ``Lattice`` owns a single numpy array holding every cell's
``(VARS, FORCES)`` energy matrix. Boundaries are periodic in all three
axes. The array is stored z-major, shape ``(sz, sy, sx, VARS, FORCES)``,
so that reshaping it to ``(n_cells, N_FLATTENED)`` orders rows by the
flat index ``x + y*sx + z*sx*sy``. The lattice does not implement
dynamics; it provides coordinate helpers, cell access with periodic
wraparound, and iterators over cells and unique neighbour edges.
"""

from __future__ import annotations

from typing import Iterator, List, Tuple

import numpy as np

from .cell import EnergyCell
from .errors import NonFiniteStateError
from .types import FORCES, N_FLATTENED, VARS, Direction, LatticeCoord


class Lattice:
    """Periodic 3D array of energy cells.

    Attributes:
        size: Dimensions ``(sx, sy, sz)``.
        energy: Array of shape ``(sz, sy, sx, VARS, FORCES)``.
    """

    def __init__(self, size: Tuple[int, int, int], energy: np.ndarray | None = None):
        sx, sy, sz = (int(s) for s in size)
        if min(sx, sy, sz) < 1:
            raise ValueError(f"lattice dimensions must be positive, got {size}")
        self.size = (sx, sy, sz)
        shape = (sz, sy, sx, VARS, FORCES)
        if energy is None:
            self.energy = np.zeros(shape, dtype=np.float64)
        else:
            arr = np.asarray(energy, dtype=np.float64)
            if arr.shape == (sx * sy * sz, N_FLATTENED):
                arr = arr.reshape(shape)
            if arr.shape != shape:
                raise ValueError(f"energy array must have shape {shape}, got {arr.shape}")
            self.energy = arr

    @property
    def n_cells(self) -> int:
        sx, sy, sz = self.size
        return sx * sy * sz

    def copy(self) -> "Lattice":
        return Lattice(self.size, self.energy.copy())

    # ------------------------------------------------------------------
    # Coordinates

    def index(self, x: int, y: int, z: int) -> int:
        """Convert an in-bounds coordinate to its flat index."""
        sx, sy, _ = self.size
        return x + y * sx + z * sx * sy

    def coord(self, index: int) -> LatticeCoord:
        """Convert a flat index back to a coordinate."""
        sx, sy, _ = self.size
        if not 0 <= index < self.n_cells:
            raise IndexError(f"flat index {index} outside lattice of {self.n_cells} cells")
        z, rem = divmod(index, sx * sy)
        y, x = divmod(rem, sx)
        return LatticeCoord(x, y, z)

    def in_bounds(self, x: int, y: int, z: int) -> bool:
        sx, sy, sz = self.size
        return 0 <= x < sx and 0 <= y < sy and 0 <= z < sz

    def periodic_coord(self, x: int, y: int, z: int) -> LatticeCoord:
        """Wrap any integer coordinate onto the periodic lattice."""
        sx, sy, sz = self.size
        return LatticeCoord(x % sx, y % sy, z % sz)

    def neighbors_6(self, x: int, y: int, z: int) -> List[LatticeCoord]:
        """Face neighbours in ``Direction`` order, with wraparound."""
        return [self.periodic_coord(x + dx, y + dy, z + dz) for dx, dy, dz in (d.offset for d in Direction)]

    def neighbors_26(self, x: int, y: int, z: int) -> List[LatticeCoord]:
        """Face, edge and corner neighbours, with wraparound."""
        out = []
        for dz in (-1, 0, 1):
            for dy in (-1, 0, 1):
                for dx in (-1, 0, 1):
                    if dx == dy == dz == 0:
                        continue
                    out.append(self.periodic_coord(x + dx, y + dy, z + dz))
        return out

    # ------------------------------------------------------------------
    # Cell access

    def cell(self, x: int, y: int, z: int) -> EnergyCell:
        """Return a cell whose values are a view into the lattice."""
        c = self.periodic_coord(x, y, z)
        return EnergyCell(self.energy[c.z, c.y, c.x])

    def set_cell(self, x: int, y: int, z: int, cell: EnergyCell | np.ndarray) -> None:
        c = self.periodic_coord(x, y, z)
        values = cell.values if isinstance(cell, EnergyCell) else np.asarray(cell, dtype=np.float64)
        self.energy[c.z, c.y, c.x] = values.reshape(VARS, FORCES)

    def iter_cells(self) -> Iterator[Tuple[LatticeCoord, EnergyCell]]:
        """Yield ``(coord, cell)`` in flat index order; cells are views."""
        sx, sy, sz = self.size
        for z in range(sz):
            for y in range(sy):
                for x in range(sx):
                    yield LatticeCoord(x, y, z), EnergyCell(self.energy[z, y, x])

    def iter_edges(self) -> Iterator[Tuple[int, int, int]]:
        """Yield every unique 6-neighbour edge once as ``(i, j, axis)``.

        Each cell contributes its positive-direction edge along every
        axis, which visits each periodic link exactly once. Along an
        axis of length 1 the link is a self loop; along an axis of
        length 2 the two cells are joined by two distinct links.
        """
        sx, sy, sz = self.size
        for z in range(sz):
            for y in range(sy):
                for x in range(sx):
                    i = self.index(x, y, z)
                    yield i, self.index((x + 1) % sx, y, z), 0
                    yield i, self.index(x, (y + 1) % sy, z), 1
                    yield i, self.index(x, y, (z + 1) % sz), 2

    # ------------------------------------------------------------------
    # Bulk views

    def flat(self) -> np.ndarray:
        """Return a ``(n_cells, N_FLATTENED)`` view in flat index order."""
        return self.energy.reshape(self.n_cells, N_FLATTENED)

    def cell_totals(self) -> np.ndarray:
        """Per-cell total energy as an ``(sz, sy, sx)`` array."""
        return self.energy.sum(axis=(3, 4))

    def channel(self, var: int, force: int) -> np.ndarray:
        """The ``(sz, sy, sx)`` field of one (variable, force) channel."""
        return self.energy[..., var, force]

    def total_energy(self) -> float:
        return float(self.energy.sum())

    def validate(self, noise_tol: float = 0.0) -> None:
        """Raise if the lattice violates the cell invariants."""
        if not np.all(np.isfinite(self.energy)):
            raise NonFiniteStateError("lattice contains non-finite energy")
        if np.any(self.energy < -noise_tol):
            raise ValueError("lattice contains negative energy")

    def __repr__(self) -> str:
        return f"<Lattice size={self.size} total={self.total_energy():.6g}>"
