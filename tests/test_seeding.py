"""
Tests for the core.seeding module.
"""

import unittest
import sys
import os

import numpy as np

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from plenum.core.constraints import ConstraintSet, FixedRatio
from plenum.core.errors import InvalidConstraintError
from plenum.core.fabric import Lattice
from plenum.core.seeding import (
    EnergyDistribution,
    generate_lattice,
    initialize_homogeneous,
    initialize_structured,
    random_energy_distribution,
    random_partition,
    sample_simplex,
)
from plenum.core.types import FORCES, VARS


class TestDistributions(unittest.TestCase):
    """Tests for EnergyDistribution and the samplers."""

    def test_default_distribution_is_even(self):
        """The default template splits energy evenly."""
        cell = EnergyDistribution(total=20.0).to_cell()
        np.testing.assert_allclose(cell.values, np.ones((VARS, FORCES)))

    def test_invalid_percentages(self):
        """Percentages must sum to one."""
        with self.assertRaises(InvalidConstraintError):
            EnergyDistribution(var_pct=(0.5,) * VARS)

    def test_sample_simplex(self):
        """Samples are non-negative and sum to one."""
        rng = np.random.default_rng(0)
        for n in (2, 4, 5):
            p = sample_simplex(n, rng)
            self.assertEqual(p.shape, (n,))
            self.assertAlmostEqual(p.sum(), 1.0, places=12)
            self.assertTrue(np.all(p >= 0.0))

    def test_random_partition_bounds(self):
        """Partition weights lie within a factor of three of each other."""
        parts = random_partition(10.0, 6, 1)
        self.assertAlmostEqual(parts.sum(), 10.0, places=12)
        self.assertLessEqual(parts.max() / parts.min(), 3.0)

    def test_random_distribution_total(self):
        """A random distribution allocates exactly its total."""
        dist = random_energy_distribution(7.0, 5)
        self.assertAlmostEqual(dist.to_cell().total(), 7.0, places=12)


class TestInitialisers(unittest.TestCase):
    """Tests for lattice initial conditions."""

    def test_generate_lattice_deterministic(self):
        """The same seed gives the same lattice."""
        a = generate_lattice(42, (3, 2, 2), 12.0)
        b = generate_lattice(42, (3, 2, 2), 12.0)
        c = generate_lattice(43, (3, 2, 2), 12.0)
        np.testing.assert_array_equal(a.energy, b.energy)
        self.assertFalse(np.array_equal(a.energy, c.energy))
        np.testing.assert_allclose(a.cell_totals(), 1.0)

    def test_homogeneous_noise(self):
        """Cell totals stay within the noise band around the base energy."""
        lattice = initialize_homogeneous(Lattice((4, 4, 4)), 2.0, 0.1, rng=3)
        totals = lattice.cell_totals()
        self.assertTrue(np.all(totals >= 1.8 - 1e-12))
        self.assertTrue(np.all(totals <= 2.2 + 1e-12))
        lattice.validate()

    def test_homogeneous_projects_constraints(self):
        """Constraints are applied after seeding."""
        ratios = (0.7, 0.1, 0.1, 0.1)
        cs = ConstraintSet().with_variable(1, FixedRatio(ratios))
        lattice = initialize_homogeneous(Lattice((2, 2, 2)), 1.0, 0.2, constraints=cs, rng=0)
        row = lattice.energy[1, 1, 1, 1]
        np.testing.assert_allclose(row / row.sum(), ratios, rtol=1e-12)

    def test_structured(self):
        """A structured lattice follows the cosine profile."""
        lattice = initialize_structured(Lattice((4, 1, 1)), (1, 0, 0), 0.5, 2.0)
        np.testing.assert_allclose(lattice.cell_totals()[0, 0], [3.0, 2.0, 1.0, 2.0], atol=1e-12)
        with self.assertRaises(ValueError):
            initialize_structured(Lattice((4, 1, 1)), (1, 0, 0), 1.5, 2.0)

    def test_package_root_exports_builders(self):
        """The seeding builders are importable from the package root."""
        import plenum

        self.assertIs(plenum.EnergyDistribution, EnergyDistribution)
        self.assertIs(plenum.generate_lattice, generate_lattice)
        self.assertIs(plenum.initialize_homogeneous, initialize_homogeneous)
        self.assertIs(plenum.initialize_structured, initialize_structured)
        for name in ("EnergyDistribution", "generate_lattice", "initialize_homogeneous", "initialize_structured"):
            self.assertIn(name, plenum.__all__)


if __name__ == "__main__":
    unittest.main()
