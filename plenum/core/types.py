"""
Common constants and small value types shared by every core module.

Each cell stores a ``VARS x FORCES`` energy matrix. Engines that act on
a whole cell work with the flattened vector of length ``N_FLATTENED``
where entry ``v * FORCES + f`` holds the energy of variable ``v`` in
force channel ``f``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Tuple

#: Number of energy species tracked per cell
VARS = 5

#: Number of coupling channels per species
FORCES = 4

#: Length of the flattened per-cell state vector
N_FLATTENED = VARS * FORCES


class Direction(IntEnum):
    """The six face-neighbour directions of the simple cubic lattice."""
    POS_X = 0
    NEG_X = 1
    POS_Y = 2
    NEG_Y = 3
    POS_Z = 4
    NEG_Z = 5

    @property
    def offset(self) -> Tuple[int, int, int]:
        return _OFFSETS[self]

    @property
    def axis(self) -> int:
        return int(self) // 2


_OFFSETS = {
    Direction.POS_X: (1, 0, 0),
    Direction.NEG_X: (-1, 0, 0),
    Direction.POS_Y: (0, 1, 0),
    Direction.NEG_Y: (0, -1, 0),
    Direction.POS_Z: (0, 0, 1),
    Direction.NEG_Z: (0, 0, -1),
}


@dataclass(frozen=True)
class LatticeCoord:
    """Integer lattice coordinate ``(x, y, z)``."""
    x: int
    y: int
    z: int

    def __iter__(self):
        return iter((self.x, self.y, self.z))


def flat_index(var: int, force: int) -> int:
    """Return the flattened state index of ``(var, force)``."""
    if not (0 <= var < VARS and 0 <= force < FORCES):
        raise IndexError(f"(var={var}, force={force}) outside {VARS}x{FORCES}")
    return var * FORCES + force


def unflatten_index(index: int) -> Tuple[int, int]:
    """Inverse of :func:`flat_index`."""
    if not 0 <= index < N_FLATTENED:
        raise IndexError(f"flat index {index} outside 0..{N_FLATTENED - 1}")
    return divmod(index, FORCES)
