"""
test_units.py
=============
Unit tests for unit normalisation (A1 unit rules) and monotonic forcing.
"""

import sys
import os
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "engine"))
from respecth2osmk_engine import (
    UnitConversionError, force_monotonic, normalize_unit, normalize_units,
)


# ─────────────────────────────────────────────────────────────────────────────
# Pressure
# ─────────────────────────────────────────────────────────────────────────────

class TestPressure(unittest.TestCase):

    def test_torr_to_atm(self):
        v, u = normalize_unit("pressure", 760.0, "torr")
        self.assertEqual(u, "atm")
        self.assertAlmostEqual(v, 1.0)

    def test_capital_torr_to_atm(self):
        v, u = normalize_unit("pressure", 380.0, "Torr")
        self.assertEqual(u, "atm")
        self.assertAlmostEqual(v, 0.5)

    def test_kpa_to_pa(self):
        v, u = normalize_unit("pressure", 101.325, "kPa")
        self.assertEqual(u, "Pa")
        self.assertAlmostEqual(v, 101325.0, places=6)

    def test_mpa_to_pa(self):
        v, u = normalize_unit("pressure", 2.0, "MPa")
        self.assertEqual(u, "Pa")
        self.assertAlmostEqual(v, 2.0e6, places=3)

    def test_mbar_to_bar(self):
        v, u = normalize_unit("pressure", 500.0, "mbar")
        self.assertEqual(u, "bar")
        self.assertAlmostEqual(v, 0.5)

    def test_atm_unchanged(self):
        self.assertEqual(normalize_unit("pressure", 3.0, "atm"), (3.0, "atm"))

    def test_unknown_pressure_unit_lists_accepted(self):
        with self.assertRaises(UnitConversionError) as ctx:
            normalize_unit("pressure", 1.0, "psi")
        msg = str(ctx.exception)
        self.assertIn("Unknown pressure units: psi", msg)
        self.assertIn("atm | bar | mbar | torr | Torr | Pa | kPa | MPa", msg)


# ─────────────────────────────────────────────────────────────────────────────
# Time
# ─────────────────────────────────────────────────────────────────────────────

class TestTime(unittest.TestCase):

    def test_us_to_ms(self):
        v, u = normalize_unit("ignition delay", 500.0, "us")
        self.assertEqual(u, "ms")
        self.assertAlmostEqual(v, 0.5)

    def test_ns_to_ms(self):
        v, u = normalize_unit("time", 2.0e6, "ns")
        self.assertEqual(u, "ms")
        self.assertAlmostEqual(v, 2.0)

    def test_seconds_unchanged(self):
        self.assertEqual(normalize_unit("residence time", 1.5, "s"), (1.5, "s"))

    def test_time_label_in_error(self):
        with self.assertRaises(UnitConversionError) as ctx:
            normalize_unit("residence time", 1.0, "h")
        self.assertIn("Unknown time units: h", str(ctx.exception))


# ─────────────────────────────────────────────────────────────────────────────
# Other quantities
# ─────────────────────────────────────────────────────────────────────────────

class TestOtherQuantities(unittest.TestCase):

    def test_temperature_only_kelvin(self):
        self.assertEqual(normalize_unit("temperature", 300.0, "K"), (300.0, "K"))
        with self.assertRaises(UnitConversionError):
            normalize_unit("temperature", 27.0, "C")

    def test_litre_relabelled_dm3(self):
        self.assertEqual(normalize_unit("volume", 0.085, "L"), (0.085, "dm3"))

    def test_flow_rate_relabelled(self):
        self.assertEqual(normalize_unit("flow rate", 0.003, "g cm-2 s-1"), (0.003, "g/cm2/s"))
        self.assertEqual(normalize_unit("flow rate", 0.03, "kg m-2 s-1"), (0.03, "kg/m2/s"))

    def test_pressure_rise_relabelled(self):
        self.assertEqual(normalize_unit("pressure rise", 0.02, "ms-1"), (0.02, "1/ms"))
        self.assertEqual(normalize_unit("pressure rise", 2.0, "s-1"), (2.0, "1/s"))

    def test_distance_and_velocity_unchanged(self):
        self.assertEqual(normalize_unit("distance", 1.2, "mm"), (1.2, "mm"))
        self.assertEqual(normalize_unit("laminar burning velocity", 35.0, "cm/s"), (35.0, "cm/s"))

    def test_equivalence_ratio_accepts_anything(self):
        self.assertEqual(normalize_unit("equivalence ratio", 1.0, "unitless"), (1.0, "unitless"))

    def test_unknown_quantity(self):
        with self.assertRaises(UnitConversionError) as ctx:
            normalize_unit("density", 1.0, "kg/m3")
        self.assertIn("Unknown variable: density", str(ctx.exception))


# ─────────────────────────────────────────────────────────────────────────────
# Lists
# ─────────────────────────────────────────────────────────────────────────────

class TestLists(unittest.TestCase):

    def test_every_value_converted(self):
        values, units = normalize_units("pressure", [760.0, 1520.0, 3800.0], "torr")
        self.assertEqual(units, "atm")
        for got, expected in zip(values, [1.0, 2.0, 5.0]):
            self.assertAlmostEqual(got, expected)

    def test_empty_list_untouched(self):
        self.assertEqual(normalize_units("temperature", [], "n.a."), ([], "n.a."))

    def test_bad_unit_in_list(self):
        with self.assertRaises(UnitConversionError):
            normalize_units("volume", [1.0, 2.0], "gal")


class TestForceMonotonic(unittest.TestCase):

    def test_already_monotonic(self):
        x, y, dropped = force_monotonic([0.0, 1.0, 2.0], [5.0, 6.0, 7.0])
        self.assertEqual((x, y, dropped), ([0.0, 1.0, 2.0], [5.0, 6.0, 7.0], 0))

    def test_repeated_abscissa_drops_previous_point(self):
        x, y, dropped = force_monotonic([0.0, 0.01, 0.01, 0.02], [10.0, 8.0, 7.0, 5.0])
        self.assertEqual(x, [0.0, 0.01, 0.02])
        self.assertEqual(y, [10.0, 7.0, 5.0])
        self.assertEqual(dropped, 1)

    def test_decreasing_abscissa(self):
        x, y, dropped = force_monotonic([0.0, 2.0, 1.0, 3.0], [0.0, 20.0, 10.0, 30.0])
        self.assertEqual(x, [0.0, 1.0, 3.0])
        self.assertEqual(y, [0.0, 10.0, 30.0])
        self.assertEqual(dropped, 1)


if __name__ == "__main__":
    unittest.main()
