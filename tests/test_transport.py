"""
Tests for the core.transport module.

This module tests the exact pairwise exchange, the matching based exact
sweep, the snapshot based Laplacian sweep, the stability precondition
and the spatial mode analysis against the diffusion dispersion relation.
"""

import unittest
import sys
import os

import numpy as np

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from plenum.core.errors import NonFiniteStateError, UnstableTimestepError
from plenum.core.fabric import Lattice
from plenum.core.seeding import generate_lattice, initialize_structured
from plenum.core.transport import (
    CouplingField,
    TransportEngine,
    check_stability,
    compute_spatial_modes,
    dispersion_rate,
    distribute_to_neighbors,
    edge_classes,
    exchange_pair,
    stability_limit,
)
from plenum.core.types import FORCES, VARS


def _mode_amplitude(lattice, k):
    for mode in compute_spatial_modes(lattice):
        if mode.k == k:
            return mode.amplitude
    raise AssertionError(f"mode {k} not found")


class TestExchangePair(unittest.TestCase):
    """Tests for the exact two-cell solution."""

    def test_large_dt_equalises(self):
        """Energies 10 and 0 with kappa 0.5 meet at 5 for large dt."""
        ei, ej = exchange_pair(10.0, 0.0, 0.5, 100.0)
        self.assertAlmostEqual(ei, 5.0, places=12)
        self.assertAlmostEqual(ej, 5.0, places=12)

    def test_zero_dt_unchanged(self):
        """dt = 0 leaves both energies unchanged."""
        self.assertEqual(exchange_pair(10.0, 0.0, 0.5, 0.0), (10.0, 0.0))

    def test_matches_ode(self):
        """The half difference decays as exp(-2 kappa dt)."""
        ei, ej = exchange_pair(3.0, 1.0, 0.25, 2.0)
        self.assertAlmostEqual(ei - ej, 2.0 * np.exp(-1.0), places=14)

    def test_conserves_and_stays_non_negative(self):
        """Random pairs conserve their sum and stay non-negative."""
        rng = np.random.default_rng(0)
        for _ in range(500):
            ei, ej = rng.uniform(0.0, 100.0, size=2)
            kappa = rng.uniform(0.0, 10.0)
            dt = rng.exponential(5.0)
            a, b = exchange_pair(ei, ej, kappa, dt)
            self.assertLessEqual(abs((a + b) - (ei + ej)), 1e-13 * (ei + ej))
            self.assertGreaterEqual(a, 0.0)
            self.assertGreaterEqual(b, 0.0)

    def test_arrays(self):
        """Whole channel arrays exchange element-wise."""
        ei = np.full((VARS, FORCES), 2.0)
        ej = np.zeros((VARS, FORCES))
        a, b = exchange_pair(ei, ej, np.full((VARS, FORCES), 1.0), 0.1)
        np.testing.assert_allclose(a + b, ei + ej)

    def test_rejects_negative_inputs(self):
        """Negative dt or kappa is rejected."""
        with self.assertRaises(ValueError):
            exchange_pair(1.0, 0.0, 0.5, -1.0)
        with self.assertRaises(ValueError):
            exchange_pair(1.0, 0.0, -0.5, 1.0)


class TestCouplingField(unittest.TestCase):
    """Tests for the CouplingField."""

    def test_scalar_is_homogeneous(self):
        """A scalar rate becomes a homogeneous field."""
        field = CouplingField(0.3)
        self.assertTrue(field.homogeneous)
        self.assertEqual(field.kappa.shape, (VARS, FORCES))
        self.assertEqual(field.max_kappa(), 0.3)

    def test_rejects_negative_and_bad_shape(self):
        """Negative rates and unknown shapes are rejected."""
        with self.assertRaises(ValueError):
            CouplingField(-0.1)
        with self.assertRaises(ValueError):
            CouplingField(np.ones((3, 3)))
        with self.assertRaises(ValueError):
            CouplingField(np.full((VARS, FORCES), np.nan))

    def test_per_edge_lattice_check(self):
        """Per-edge fields must match the lattice dimensions."""
        field = CouplingField(np.zeros((2, 3, 4, 3, VARS, FORCES)))
        self.assertFalse(field.homogeneous)
        field.check_lattice((4, 3, 2))
        with self.assertRaises(ValueError):
            field.check_lattice((2, 3, 4))

    def test_dict_round_trip(self):
        """to_dict and from_dict preserve the rates."""
        field = CouplingField(np.arange(VARS * FORCES, dtype=float).reshape(VARS, FORCES))
        self.assertEqual(CouplingField.from_dict(field.to_dict()), field)


class TestDistribute(unittest.TestCase):
    """Tests for lattice-wide transport sweeps."""

    def setUp(self):
        """Create a random lattice."""
        self.lattice = generate_lattice(7, (4, 5, 6), 120.0)

    def test_exact_conserves_total(self):
        """An exact sweep conserves the global total."""
        before = self.lattice.total_energy()
        out = distribute_to_neighbors(self.lattice, CouplingField(0.2), 0.5)
        self.assertLessEqual(abs(out.total_energy() - before), 1e-12 * before)

    def test_laplacian_conserves_total(self):
        """A stable Laplacian sweep conserves the global total."""
        before = self.lattice.total_energy()
        out = distribute_to_neighbors(self.lattice, CouplingField(0.2), 0.1, mode="laplacian")
        self.assertLessEqual(abs(out.total_energy() - before), 1e-12 * before)

    def test_input_is_snapshot(self):
        """The input lattice is never modified."""
        original = self.lattice.energy.copy()
        distribute_to_neighbors(self.lattice, CouplingField(0.2), 0.5)
        np.testing.assert_array_equal(self.lattice.energy, original)

    def test_per_variable_totals_conserved(self):
        """Transport never moves energy between channels."""
        before = self.lattice.energy.sum(axis=(0, 1, 2))
        out = distribute_to_neighbors(self.lattice, CouplingField(0.4), 0.3)
        np.testing.assert_allclose(out.energy.sum(axis=(0, 1, 2)), before, rtol=1e-12)

    def test_workers_match_inline(self):
        """Slab-parallel sweeps reproduce the inline sweep."""
        field = CouplingField(0.2)
        inline = TransportEngine(field, workers=1).distribute(self.lattice.energy, 0.5)
        threaded = TransportEngine(field, workers=4).distribute(self.lattice.energy, 0.5)
        np.testing.assert_allclose(threaded, inline, rtol=1e-14, atol=1e-14)

    def test_uniform_lattice_is_fixed_point(self):
        """A uniform lattice does not change."""
        lattice = Lattice((3, 3, 3), np.ones((3, 3, 3, VARS, FORCES)))
        out = distribute_to_neighbors(lattice, CouplingField(0.3), 0.7)
        np.testing.assert_allclose(out.energy, lattice.energy, rtol=1e-15)

    def test_per_edge_coupling(self):
        """Only the single coupled edge exchanges energy."""
        lattice = Lattice((3, 3, 3))
        lattice.energy[0, 0, 0, 0, 0] = 10.0
        kappa = np.zeros((3, 3, 3, 3, VARS, FORCES))
        kappa[0, 0, 0, 0] = 0.5
        out = distribute_to_neighbors(lattice, CouplingField(kappa), 1.0)
        ei, ej = exchange_pair(10.0, 0.0, 0.5, 1.0)
        self.assertAlmostEqual(out.energy[0, 0, 0, 0, 0], ei, places=12)
        self.assertAlmostEqual(out.energy[0, 0, 1, 0, 0], ej, places=12)
        self.assertAlmostEqual(out.total_energy(), 10.0, places=12)

    def test_ring_of_three(self):
        """A loaded cell on a ring of three spreads evenly over repeated sweeps."""
        lattice = Lattice((3, 1, 1))
        lattice.energy[0, 0, 0] = 6.0
        for _ in range(15):
            lattice = distribute_to_neighbors(lattice, CouplingField(0.1), 500.0)
            self.assertAlmostEqual(lattice.total_energy(), 6.0 * VARS * FORCES, places=10)
        np.testing.assert_allclose(lattice.energy[0, 0, :, 1, 1], [2.0, 2.0, 2.0], atol=1e-12)

    def test_two_cell_axis_settles(self):
        """Two cells on a periodic axis meet at the mean instead of swapping."""
        energy = np.zeros((1, 1, 2, VARS, FORCES))
        energy[0, 0, 0] = 10.0
        out = distribute_to_neighbors(Lattice((2, 1, 1), energy), CouplingField(0.5), 50.0)
        np.testing.assert_allclose(out.energy[0, 0, :, 0, 0], [5.0, 5.0], atol=1e-12)

    def test_two_cell_axis_double_rate(self):
        """The two links of a length-2 axis relax at twice the rate."""
        energy = np.zeros((1, 1, 2, VARS, FORCES))
        energy[0, 0, 0] = 10.0
        out = distribute_to_neighbors(Lattice((2, 1, 1), energy), CouplingField(0.25), 1.0)
        ei, ej = exchange_pair(10.0, 0.0, 0.5, 1.0)
        self.assertAlmostEqual(out.energy[0, 0, 0, 2, 3], ei, places=12)
        self.assertAlmostEqual(out.energy[0, 0, 1, 2, 3], ej, places=12)

    def test_large_dt_conserves_and_stays_non_negative(self):
        """Exact sweeps at large kappa dt keep the total and positivity."""
        lattice = generate_lattice(3, (4, 4, 4), 64.0)
        lattice.energy[1, 2, 3] += 0.95
        before = lattice.total_energy()
        for dt in (0.5, 5.0, 50.0):
            out = distribute_to_neighbors(lattice, CouplingField(0.5), dt)
            self.assertTrue(np.all(out.energy >= 0.0))
            self.assertLessEqual(abs(out.total_energy() - before), 1e-12 * before)
        np.testing.assert_allclose(out.cell_totals(), before / 64.0, rtol=1e-9)

    def test_edge_classes(self):
        """Edge classes are matchings covering every edge once."""
        self.assertEqual(edge_classes(1), [])
        self.assertEqual([c.tolist() for c in edge_classes(2)], [[0]])
        self.assertEqual([c.tolist() for c in edge_classes(4)], [[0, 2], [1, 3]])
        self.assertEqual([c.tolist() for c in edge_classes(5)], [[0, 2], [1, 3], [4]])
        for n in range(3, 9):
            classes = edge_classes(n)
            self.assertEqual(sorted(i for c in classes for i in c.tolist()), list(range(n)))
            for c in classes:
                cells = np.concatenate([c, (c + 1) % n])
                self.assertEqual(len(set(cells.tolist())), len(cells))

    def test_non_finite_input(self):
        """NaN input raises NonFiniteStateError."""
        self.lattice.energy[0, 0, 0, 0, 0] = np.nan
        with self.assertRaises(NonFiniteStateError):
            distribute_to_neighbors(self.lattice, CouplingField(0.2), 0.1)


class TestStability(unittest.TestCase):
    """Tests for the explicit Laplacian stability precondition."""

    def test_limit(self):
        """The bound is dx**2 / (2 * 3 * kappa_max)."""
        self.assertAlmostEqual(stability_limit(CouplingField(0.5)), 1.0 / 3.0)
        self.assertAlmostEqual(stability_limit(CouplingField(0.5), spacing=2.0), 4.0 / 3.0)
        self.assertEqual(stability_limit(CouplingField(0.0)), float("inf"))

    def test_unstable_refused(self):
        """A Laplacian sweep above the bound is refused before it runs."""
        lattice = generate_lattice(1, (3, 3, 3), 27.0)
        before = lattice.energy.copy()
        with self.assertRaises(UnstableTimestepError) as ctx:
            distribute_to_neighbors(lattice, CouplingField(0.5), 0.5, mode="laplacian")
        self.assertAlmostEqual(ctx.exception.limit, 1.0 / 3.0)
        np.testing.assert_array_equal(lattice.energy, before)
        check_stability(CouplingField(0.5), 0.3)

    def test_exact_has_no_limit(self):
        """Exact exchange accepts any dt."""
        lattice = generate_lattice(1, (3, 3, 3), 27.0)
        TransportEngine(CouplingField(0.5), mode="exact").check_stability(100.0)
        distribute_to_neighbors(lattice, CouplingField(0.05), 100.0)


class TestSpatialModes(unittest.TestCase):
    """Tests for the spectral decomposition."""

    def test_dispersion_rate(self):
        """The zero mode does not decay; the checkerboard decays fastest."""
        self.assertEqual(dispersion_rate((0, 0, 0), (8, 8, 8), 1.0), 0.0)
        self.assertAlmostEqual(dispersion_rate((4, 4, 4), (8, 8, 8), 1.0), -12.0)
        self.assertAlmostEqual(dispersion_rate((1, 0, 0), (4, 4, 4), 0.5), -1.0)

    def test_structured_mode_detected(self):
        """A cosine pattern shows up at its wave number."""
        lattice = initialize_structured(Lattice((8, 8, 8)), (1, 0, 0), 0.5, 2.0)
        modes = compute_spatial_modes(lattice, min_amplitude=1e-9)
        ks = {m.k for m in modes}
        self.assertEqual(ks, {(0, 0, 0), (1, 0, 0), (-1, 0, 0)})
        self.assertEqual(modes[0].k, (0, 0, 0))
        self.assertAlmostEqual(modes[0].amplitude, 2.0, places=12)
        self.assertAlmostEqual(_mode_amplitude(lattice, (1, 0, 0)), 0.5, places=12)

    def test_laplacian_decay_matches_dispersion(self):
        """Each Laplacian step scales a mode by 1 + dt * w(k)."""
        kappa, dt, steps = 0.1, 0.01, 100
        size = (8, 8, 8)
        k = (1, 0, 0)
        lattice = initialize_structured(Lattice(size), k, 0.5, 2.0)
        a0 = _mode_amplitude(lattice, k)
        engine = TransportEngine(CouplingField(kappa), mode="laplacian")
        for _ in range(steps):
            lattice = Lattice(size, engine.distribute(lattice.energy, dt))
        omega = dispersion_rate(k, size, kappa)
        ratio = _mode_amplitude(lattice, k) / a0
        self.assertAlmostEqual(ratio, (1.0 + dt * omega) ** steps, places=12)
        self.assertAlmostEqual(ratio, np.exp(omega * dt * steps), delta=1e-4)

    def test_exact_decay_matches_dispersion(self):
        """Exact exchange follows the analytic decay for small dt."""
        kappa, dt, steps = 0.2, 0.005, 200
        size = (6, 6, 6)
        k = (0, 1, 1)
        lattice = initialize_structured(Lattice(size), k, 0.3, 1.0)
        a0 = _mode_amplitude(lattice, k)
        engine = TransportEngine(CouplingField(kappa), mode="exact")
        for _ in range(steps):
            lattice = Lattice(size, engine.distribute(lattice.energy, dt))
        omega = dispersion_rate(k, size, kappa)
        self.assertAlmostEqual(_mode_amplitude(lattice, k) / a0, np.exp(omega * dt * steps), delta=1e-3)


if __name__ == "__main__":
    unittest.main()
