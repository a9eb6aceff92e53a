"""
Derived diagnostics computed from lattice states.

``patterns`` classifies cells into voids, walls and filaments and
measures the power spectrum and clustering of the energy density.
``oscillation`` tracks redistribution modes through time and recovers
their frequencies.
"""

from .patterns import PatternMetrics, classify_cells, compute_pattern_metrics
from .oscillation import ModeTracker, OscillationAnalyzer, eigenmode_health, extract_frequency_from_timeseries

__all__ = [
    "PatternMetrics",
    "classify_cells",
    "compute_pattern_metrics",
    "ModeTracker",
    "OscillationAnalyzer",
    "eigenmode_health",
    "extract_frequency_from_timeseries",
]
