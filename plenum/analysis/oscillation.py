"""
Oscillation analysis over time (local redistribution modes) and space
(lattice harmonics).

Under the exact redistribution flow, the projection of a cell onto a
mode eigenvector traces ``A cos(w t + phi)``. ``ModeTracker`` records
that projection as the run advances and
``extract_frequency_from_timeseries`` recovers ``w`` from the record:
an FFT peak gives the seed, ``scipy.optimize.curve_fit`` refines it.
All frequencies are angular, in radians per unit time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy.fft import rfft, rfftfreq
from scipy.optimize import curve_fit

from ..core.fabric import Lattice
from ..core.redistribution import (
    MODE_FREQUENCY_EPS,
    OscillationMode,
    RedistributionMatrix,
    as_state_vector,
    detect_local_modes,
    project_onto_mode,
)
from ..core.transport import SpatialMode, compute_spatial_modes

logger = logging.getLogger(__name__)

#: Fewest samples from which a frequency is estimated
MIN_SAMPLES = 4


class ModeTracker:
    """Record ``(time, amplitude)`` of one mode over a run."""

    def __init__(self, mode: OscillationMode):
        self.mode = mode
        self.history: List[Tuple[float, float]] = []

    def track(self, cell, t: float) -> float:
        amplitude = project_onto_mode(cell, self.mode.eigenvector)
        self.history.append((float(t), amplitude))
        return amplitude

    def times(self) -> np.ndarray:
        return np.array([h[0] for h in self.history])

    def amplitudes(self) -> np.ndarray:
        return np.array([h[1] for h in self.history])

    def frequency(self) -> Optional[float]:
        return extract_frequency_from_timeseries(self.history)

    def clear(self) -> None:
        self.history.clear()


def _harmonic(t, amplitude, omega, phase, offset):
    return amplitude * np.cos(omega * t + phase) + offset


def extract_frequency_from_timeseries(history: Sequence[Tuple[float, float]]) -> Optional[float]:
    """Dominant angular frequency of a sampled ``(time, value)`` series.

    Returns None with fewer than ``MIN_SAMPLES`` samples and 0.0 for a
    constant series. Irregular sampling is resampled onto a uniform grid
    for the FFT seed only; the fit uses the raw samples.
    """
    if len(history) < MIN_SAMPLES:
        return None
    data = np.asarray(history, dtype=np.float64)
    order = np.argsort(data[:, 0])
    t, y = data[order, 0], data[order, 1]
    span = t[-1] - t[0]
    if span <= 0.0:
        return None
    offset = float(y.mean())
    centred = y - offset
    if np.allclose(centred, 0.0, atol=1e-14 * max(1.0, abs(offset))):
        return 0.0

    n = len(t)
    step = span / (n - 1)
    grid = t[0] + step * np.arange(n)
    spectrum = rfft(np.interp(grid, t, centred))
    freqs = 2.0 * np.pi * rfftfreq(n, d=step)
    peak = int(np.argmax(np.abs(spectrum[1:]))) + 1
    omega0 = float(freqs[peak])
    amp0 = 2.0 * float(np.abs(spectrum[peak])) / n
    phase0 = float(np.angle(spectrum[peak])) - omega0 * t[0]

    try:
        params, _ = curve_fit(_harmonic, t, y, p0=[amp0, omega0, phase0, offset], maxfev=10000)
    except RuntimeError as exc:
        logger.debug("harmonic fit did not converge (%s); using FFT peak", exc)
        return omega0
    return abs(float(params[1]))


def eigenmode_health(cell, modes: Sequence[OscillationMode]) -> float:
    """Fraction of the state's squared norm carried by ``modes``.

    Each oscillating mode stands for its conjugate pair and counts twice;
    static modes count once. A complete mode set gives 1.0. An empty
    state is reported as fully captured.
    """
    s = as_state_vector(cell)
    norm_sq = float(np.dot(s, s))
    if norm_sq == 0.0:
        return 1.0
    captured = 0.0
    for mode in modes:
        v = np.asarray(mode.eigenvector)
        v = v / np.linalg.norm(v)
        weight = 2.0 if mode.frequency > MODE_FREQUENCY_EPS else 1.0
        captured += weight * abs(np.vdot(v, s)) ** 2
    return captured / norm_sq


def detect_global_modes(
    lattice: Lattice,
    var: Optional[int] = None,
    force: Optional[int] = None,
    kappa: float = 1.0,
    top: Optional[int] = None,
) -> List[SpatialMode]:
    """Strongest spatial harmonics of a lattice field."""
    modes = compute_spatial_modes(lattice, var, force, kappa)
    return modes[:top] if top is not None else modes


@dataclass
class OscillationAnalyzer:
    local_modes: List[OscillationMode] = field(default_factory=list)
    global_modes: List[SpatialMode] = field(default_factory=list)

    @classmethod
    def from_state(
        cls,
        cell,
        matrix: RedistributionMatrix,
        lattice: Optional[Lattice] = None,
        kappa: float = 1.0,
        top: Optional[int] = None,
    ) -> "OscillationAnalyzer":
        local = detect_local_modes(cell, matrix)
        spatial = detect_global_modes(lattice, kappa=kappa, top=top) if lattice is not None else []
        return cls(local, spatial)

    def trackers(self) -> List[ModeTracker]:
        return [ModeTracker(mode) for mode in self.local_modes]
