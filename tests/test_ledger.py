"""
Tests for the core.ledger module.

This module tests the conservation checks, constraint audits and the
ConservationLedger history.
"""

import unittest
import sys
import os

import numpy as np

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from plenum.core.constraints import ConstraintSet, FixedTotal
from plenum.core.fabric import Lattice
from plenum.core.ledger import (
    ConservationLedger,
    entropy_check,
    global_relative_error,
    per_force_totals,
    per_variable_totals,
    total_energy,
    variable_relative_errors,
    verify_constraints,
    verify_global_conservation,
    verify_variable_conservation,
)
from plenum.core.seeding import generate_lattice
from plenum.core.types import FORCES, VARS


class TestTotals(unittest.TestCase):
    """Tests for total and per channel sums."""

    def setUp(self):
        """Create a random lattice."""
        self.lattice = generate_lattice(3, (3, 3, 3), 54.0)

    def test_total_energy(self):
        """The generated lattice holds the requested total."""
        self.assertAlmostEqual(total_energy(self.lattice), 54.0, places=10)
        self.assertAlmostEqual(total_energy(self.lattice.energy), 54.0, places=10)

    def test_per_variable_and_force(self):
        """Channel totals add up to the global total."""
        self.assertEqual(per_variable_totals(self.lattice).shape, (VARS,))
        self.assertEqual(per_force_totals(self.lattice).shape, (FORCES,))
        self.assertAlmostEqual(per_variable_totals(self.lattice).sum(), 54.0, places=10)
        self.assertAlmostEqual(per_force_totals(self.lattice).sum(), 54.0, places=10)


class TestVerification(unittest.TestCase):
    """Tests for conservation verification."""

    def test_global(self):
        """Relative drift is compared against the tolerance."""
        a = generate_lattice(1, (2, 2, 2), 8.0)
        b = a.copy()
        self.assertTrue(verify_global_conservation(a, b))
        b.energy[0, 0, 0, 0, 0] += 1e-6
        self.assertFalse(verify_global_conservation(a, b, tol=1e-9))
        self.assertTrue(verify_global_conservation(8.0, 8.0 + 1e-12))

    def test_variable(self):
        """Moving energy between variables breaks per-variable conservation only."""
        a = generate_lattice(2, (2, 2, 2), 8.0)
        b = a.copy()
        b.energy[0, 0, 0, 0, 0] -= 0.1
        b.energy[0, 0, 0, 1, 0] += 0.1
        self.assertTrue(verify_global_conservation(a, b))
        self.assertFalse(verify_variable_conservation(a, b, 0))
        self.assertTrue(verify_variable_conservation(a, b, 2))
        with self.assertRaises(IndexError):
            verify_variable_conservation(a, b, VARS)

    def test_relative_errors(self):
        """Relative errors against reference totals."""
        lattice = Lattice((1, 1, 1), np.ones((1, 1, 1, VARS, FORCES)))
        self.assertAlmostEqual(global_relative_error(lattice, 10.0), 1.0)
        errs = variable_relative_errors(lattice, [4.0, 4.0, 8.0, 4.0, 4.0])
        np.testing.assert_allclose(errs, [0.0, 0.0, 0.5, 0.0, 0.0])

    def test_verify_constraints(self):
        """The audit reports constraint violations and drift."""
        lattice = Lattice((2, 1, 1), np.ones((1, 1, 2, VARS, FORCES)))
        cs = ConstraintSet().with_variable(0, FixedTotal(4.0))
        report = verify_constraints(lattice, cs, initial_total=40.0)
        self.assertTrue(report.passed)
        cs2 = ConstraintSet().with_variable(0, FixedTotal(1.0))
        report2 = verify_constraints(lattice, cs2, initial_total=30.0)
        self.assertFalse(report2.passed)
        self.assertEqual(len(report2.violations), 2)

    def test_entropy(self):
        """Entropy is log(n) for a uniform lattice and 0 for a single loaded cell."""
        uniform = Lattice((2, 2, 2), np.ones((2, 2, 2, VARS, FORCES)))
        self.assertAlmostEqual(entropy_check(uniform), np.log(8.0))
        single = Lattice((2, 2, 2))
        single.energy[0, 0, 0] = 1.0
        self.assertAlmostEqual(entropy_check(single), 0.0)
        self.assertEqual(entropy_check(Lattice((2, 2, 2))), 0.0)


class TestConservationLedger(unittest.TestCase):
    """Tests for the ConservationLedger."""

    def test_record_and_summary(self):
        """Checks are recorded; breaches are counted and logged."""
        ledger = ConservationLedger(100.0, tol=1e-9)
        ledger.record(1, 0.1, 100.0)
        with self.assertLogs("plenum.core.ledger", level="WARNING"):
            entry = ledger.record(2, 0.2, 100.1)
        self.assertFalse(entry.passed)
        summary = ledger.summary()
        self.assertEqual(summary["checks"], 2)
        self.assertEqual(summary["breaches"], 1)
        self.assertAlmostEqual(summary["max_relative_error"], 1e-3)
        self.assertIn("1 breach", ledger.describe())

    def test_energy_trace_and_clear(self):
        """The trace lists (time, total) pairs and clear empties it."""
        ledger = ConservationLedger(1.0)
        self.assertEqual(ledger.energy_trace().shape, (0, 2))
        for i in range(5):
            ledger.record(i, 0.5 * i, 1.0)
        trace = ledger.energy_trace()
        self.assertEqual(trace.shape, (5, 2))
        self.assertEqual(trace[4, 0], 2.0)
        ledger.clear()
        self.assertEqual(ledger.summary()["checks"], 0)

    def test_history_bounded(self):
        """Only the most recent entries are kept."""
        ledger = ConservationLedger(1.0, history=3)
        for i in range(10):
            ledger.record(i, float(i), 1.0)
        self.assertEqual(len(ledger.entries), 3)
        self.assertEqual(ledger.entries[0].step, 7)


if __name__ == "__main__":
    unittest.main()
