"""
test_batch.py
=============
Unit tests for batch conversion, the conversion report, the pandas export
and the command-line entry point.
"""

import sys
import os
import tempfile
import unittest
from pathlib import Path

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "engine"))
sys.path.insert(0, os.path.dirname(__file__))
from respecth2osmk_engine import (
    ConverterSettings, Respecth2OpenSMOKE, main, to_dataframe, write_report,
)
import xml_fixtures as fx


class BatchTestCase(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        self.inputs = self.root / "xml"
        self.inputs.mkdir()
        (self.inputs / "a_idt.xml").write_text(fx.idt_shock_tube())
        (self.inputs / "b_jsr.xml").write_text(fx.jsr())
        (self.inputs / "c_bad.xml").write_text(
            fx.jsr(common=[fx.prop("pressure", 1, "atm"), fx.h2_argon()]))
        (self.inputs / "notes.txt").write_text("not an experiment")
        kinetics = self.root / "kinetics"
        kinetics.mkdir()
        (kinetics / "kinetics.xml").write_text(
            "<opensmoke><NamesOfSpecies>" + " ".join(fx.MECHANISM) + "</NamesOfSpecies></opensmoke>")
        self.kinetics = kinetics
        self.conv = Respecth2OpenSMOKE(ConverterSettings(
            kinetics_folder=kinetics, output_folder=self.root / "out"))

    def tearDown(self):
        self.tmp.cleanup()

    def files(self):
        return sorted(self.inputs.glob("*.xml"))


# ─────────────────────────────────────────────────────────────────────────────
# convert_many
# ─────────────────────────────────────────────────────────────────────────────

class TestConvertMany(BatchTestCase):

    def test_failures_do_not_stop_batch(self):
        results = self.conv.convert_many(self.files())
        self.assertEqual([r.file_name for r in results], ["a_idt.xml", "b_jsr.xml", "c_bad.xml"])
        self.assertEqual([r.ok for r in results], [True, True, False])
        self.assertIn("(P,X,V,tau)", results[2].error)

    def test_write_only_successes(self):
        self.conv.convert_many(self.files(), write=True)
        out = self.root / "out"
        self.assertTrue((out / "a_idt" / "a_idt.dic").is_file())
        self.assertTrue((out / "b_jsr" / "b_jsr.dic").is_file())
        self.assertFalse((out / "c_bad").exists())

    def test_unreadable_entry_reported(self):
        (self.inputs / "b_dir.xml").mkdir()
        results = self.conv.convert_many(self.files())
        self.assertEqual([r.file_name for r in results],
                         ["a_idt.xml", "b_dir.xml", "b_jsr.xml", "c_bad.xml"])
        self.assertEqual([r.ok for r in results], [True, False, True, False])
        self.assertIn("b_dir.xml", results[1].error)

    def test_missing_file_reported(self):
        results = self.conv.convert_many([self.inputs / "a_idt.xml", self.inputs / "gone.xml"])
        self.assertEqual([r.ok for r in results], [True, False])
        self.assertEqual(results[1].file_name, "gone.xml")

    def test_convert_list(self):
        results = self.conv.convert(self.files()[:2])
        self.assertEqual(len(results), 2)


# ─────────────────────────────────────────────────────────────────────────────
# Report and DataFrame
# ─────────────────────────────────────────────────────────────────────────────

class TestReport(BatchTestCase):

    def test_report_layout(self):
        results = self.conv.convert_many(self.files())
        path = write_report(results, self.root / "report.txt")
        lines = path.read_text().splitlines()
        self.assertTrue(lines[0].startswith("FileName"))
        self.assertIn("Status", lines[0])
        self.assertIn("ErrorType", lines[0])
        self.assertEqual(set(lines[1]), {"="})
        self.assertIn("Converted", lines[2])
        self.assertTrue(lines[2].rstrip().endswith("None"))
        self.assertIn("Errors Occurred", lines[4])
        self.assertIn("(P,X,V,tau)", lines[4])

    def test_dataframe(self):
        df = to_dataframe(self.conv.convert_many(self.files()))
        self.assertEqual(len(df), 3)
        self.assertEqual(list(df["status"]),
                         ["Converted", "Converted", "Errors Occurred"])
        self.assertEqual(df.loc[0, "reactor"], "BatchReactor")
        self.assertEqual(df.loc[1, "analysis"], "temperature")
        self.assertEqual(df.loc[0, "n_simulations"], 3)
        for col in ("file_name", "experiment_key", "rule_id", "reactor_type", "error"):
            self.assertIn(col, df.columns)


# ─────────────────────────────────────────────────────────────────────────────
# Command line
# ─────────────────────────────────────────────────────────────────────────────

class TestMain(BatchTestCase):

    def test_folder_with_failure(self):
        report = self.root / "report.txt"
        code = main(["--input", str(self.inputs), "--output", str(self.root / "cli"),
                     "--kinetics", str(self.kinetics), "--report", str(report)])
        self.assertEqual(code, 1)
        self.assertTrue(report.is_file())
        self.assertTrue((self.root / "cli" / "b_jsr" / "b_jsr.dic").is_file())

    def test_single_file_success(self):
        code = main(["--input", str(self.inputs / "a_idt.xml"), "--output", str(self.root / "cli"),
                     "--kinetics", str(self.kinetics)])
        self.assertEqual(code, 0)
        self.assertTrue((self.root / "cli" / "a_idt" / "a_idt.dic").is_file())

    def test_missing_species_database(self):
        code = main(["--input", str(self.inputs / "a_idt.xml"), "--output", str(self.root / "cli"),
                     "--kinetics", str(self.kinetics),
                     "--species-database", str(self.root / "missing.xml")])
        self.assertEqual(code, 2)

    def test_case_sensitive_flag(self):
        code = main(["--input", str(self.inputs / "a_idt.xml"), "--output", str(self.root / "cli"),
                     "--kinetics", str(self.kinetics), "--case-sensitive"])
        # "Ar" is spelled "AR" in the mechanism
        self.assertEqual(code, 1)


if __name__ == "__main__":
    unittest.main()
