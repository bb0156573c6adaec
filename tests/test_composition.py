"""
test_composition.py
===================
Unit tests for composition handling: unit conversion to mole fractions,
sum check, mechanism name validation and species database aliases.
"""

import sys
import os
import tempfile
import unittest
from pathlib import Path

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "engine"))
from respecth2osmk_engine import (
    Composition, CompositionError, MissingElementError, SpeciesDatabase,
    SpeciesNotFoundError, read_mechanism_species,
)

MECH = ["H2", "O2", "N2", "AR", "CH4"]


def resolve(names, values, units, case_sensitive=False, database=None, **kw):
    comp = Composition(names, values, units, **kw)
    warnings = comp.resolve(MECH, case_sensitive, database)
    return comp, warnings


# ─────────────────────────────────────────────────────────────────────────────
# Units
# ─────────────────────────────────────────────────────────────────────────────

class TestCompositionUnits(unittest.TestCase):

    def test_mole_fraction(self):
        comp, _ = resolve(["H2", "O2"], [0.25, 0.75], ["mole fraction"] * 2)
        self.assertAlmostEqual(comp.mole_fractions()["H2"], 0.25)

    def test_percent(self):
        comp, _ = resolve(["CH4", "O2", "N2"], [10, 20, 70], ["percent"] * 3)
        x = comp.mole_fractions()
        self.assertAlmostEqual(x["CH4"], 0.1)
        self.assertAlmostEqual(x["N2"], 0.7)

    def test_ppm_scaled_down(self):
        comp, _ = resolve(["H2", "AR"], [200000, 800000], ["ppm", "ppm"])
        self.assertAlmostEqual(comp.mole_fractions()["H2"], 0.2)

    def test_ppb_mixed_with_mole_fraction(self):
        comp, _ = resolve(["CH4", "AR"], [1.0e8, 0.9], ["ppb", "mole fraction"])
        x = comp.mole_fractions()
        self.assertAlmostEqual(x["CH4"], 0.1)
        self.assertAlmostEqual(x["AR"], 0.9)

    def test_concentrations_divided_by_total(self):
        comp, _ = resolve(["H2", "O2"], [1e-6, 3e-6], ["mol/cm3", "mol/cm3"])
        x = comp.mole_fractions()
        self.assertAlmostEqual(x["H2"], 0.25)
        self.assertAlmostEqual(x["O2"], 0.75)

    def test_mixed_concentration_and_fraction(self):
        with self.assertRaises(CompositionError) as ctx:
            resolve(["H2", "O2"], [1e-6, 0.5], ["mol/cm3", "mole fraction"])
        self.assertIn("must be done for all the species", str(ctx.exception))

    def test_unknown_units(self):
        with self.assertRaises(CompositionError) as ctx:
            resolve(["H2", "O2"], [0.5, 0.5], ["mass fraction", "mass fraction"])
        self.assertIn("Unknown units for composition: mass fraction", str(ctx.exception))

    def test_units_become_mole_fraction(self):
        comp, _ = resolve(["H2", "O2"], [50, 50], ["percent", "percent"])
        self.assertEqual(comp.units, ["mole fraction", "mole fraction"])

    def test_length_mismatch(self):
        with self.assertRaises(CompositionError):
            Composition(["H2", "O2"], [1.0], ["mole fraction", "mole fraction"])


# ─────────────────────────────────────────────────────────────────────────────
# Sum check
# ─────────────────────────────────────────────────────────────────────────────

class TestSumCheck(unittest.TestCase):

    def test_small_deviation_renormalised(self):
        comp, _ = resolve(["H2", "O2"], [0.50004, 0.5], ["mole fraction"] * 2)
        self.assertAlmostEqual(sum(comp.values), 1.0, places=12)

    def test_large_deviation_rejected(self):
        with self.assertRaises(CompositionError) as ctx:
            resolve(["H2", "O2"], [0.3, 0.3], ["mole fraction"] * 2)
        self.assertIn("Sum is not equal to 1", str(ctx.exception))


# ─────────────────────────────────────────────────────────────────────────────
# Mechanism names
# ─────────────────────────────────────────────────────────────────────────────

class TestMechanismNames(unittest.TestCase):

    def test_case_insensitive_rewrites_to_mechanism_spelling(self):
        comp, warnings = resolve(["h2", "Ar"], [0.1, 0.9], ["mole fraction"] * 2)
        self.assertEqual(comp.names, ["H2", "AR"])
        self.assertEqual(len(warnings), 2)

    def test_case_sensitive_rejects_other_spelling(self):
        with self.assertRaises(SpeciesNotFoundError) as ctx:
            resolve(["H2", "Ar"], [0.1, 0.9], ["mole fraction"] * 2, case_sensitive=True)
        self.assertIn("Case sensitive check: Species Ar", str(ctx.exception))

    def test_missing_species(self):
        with self.assertRaises(SpeciesNotFoundError) as ctx:
            resolve(["C2H6", "O2"], [0.1, 0.9], ["mole fraction"] * 2)
        self.assertIn("C2H6", str(ctx.exception))

    def test_species_not_found_is_composition_error(self):
        self.assertTrue(issubclass(SpeciesNotFoundError, CompositionError))

    def test_no_mechanism_skips_check(self):
        comp = Composition(["XYZ"], [1.0], ["mole fraction"])
        self.assertEqual(comp.resolve([], False), [])
        self.assertEqual(comp.names, ["XYZ"])


# ─────────────────────────────────────────────────────────────────────────────
# Species database
# ─────────────────────────────────────────────────────────────────────────────

DATABASE_XML = """<database>
  <species name="CH4" chemName="methane" CAS="74-82-8"/>
  <species name="N2" chemName="nitrogen" CAS="7727-37-9"/>
</database>
"""


class TestSpeciesDatabase(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "species.xml"
        self.path.write_text(DATABASE_XML)
        self.db = SpeciesDatabase.from_xml(self.path)

    def tearDown(self):
        self.tmp.cleanup()

    def test_loaded(self):
        self.assertTrue(self.db.is_active)
        self.assertEqual(self.db.names, ["CH4", "N2"])

    def test_alias_by_cas(self):
        comp, warnings = resolve(["C1H4", "N2"], [0.1, 0.9], ["mole fraction"] * 2,
                                 database=self.db, cas=["74-82-8", ""], chem_names=["", ""])
        self.assertEqual(comp.names, ["CH4", "N2"])
        self.assertTrue(any("C1H4" in w for w in warnings))

    def test_alias_by_chem_name(self):
        comp, _ = resolve(["NITROGEN", "CH4"], [0.9, 0.1], ["mole fraction"] * 2,
                          database=self.db, chem_names=["nitrogen", ""])
        self.assertEqual(comp.names[0], "N2")

    def test_empty_database_inactive(self):
        self.assertFalse(SpeciesDatabase().is_active)
        comp, warnings = resolve(["CH4", "N2"], [0.1, 0.9], ["mole fraction"] * 2,
                                 database=SpeciesDatabase())
        self.assertEqual(warnings, [])


class TestMechanismSpecies(unittest.TestCase):

    def test_read_from_kinetics_folder(self):
        with tempfile.TemporaryDirectory() as tmp:
            Path(tmp, "kinetics.xml").write_text(
                "<opensmoke version=\"0.1a\"><NumberOfSpecies>3</NumberOfSpecies>"
                "<NamesOfSpecies>\nH2 O2\nN2\n</NamesOfSpecies></opensmoke>")
            self.assertEqual(read_mechanism_species(tmp), ["H2", "O2", "N2"])

    def test_missing_names_element(self):
        with tempfile.TemporaryDirectory() as tmp:
            Path(tmp, "kinetics.xml").write_text("<opensmoke/>")
            with self.assertRaises(MissingElementError):
                read_mechanism_species(tmp)

    def test_read_from_text_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp, "species.txt")
            path.write_text("H2\nO2  AR\n")
            self.assertEqual(read_mechanism_species(path), ["H2", "O2", "AR"])


if __name__ == "__main__":
    unittest.main()
