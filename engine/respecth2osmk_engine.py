"""
respecth2osmk_engine.py
=======================
ReSpecTh experiment XML → OpenSMOKE++ dictionary converter

Converts one ReSpecTh experiment record (ignition delay, jet stirred reactor,
laminar burning velocity, burner stabilized flame, concentration time profile,
outlet concentration) into:
  • a validated, unit-normalised view of the experiment
    (constant vs. variable quantities, mole-fraction compositions)
  • the reactor model and parametric analysis selected for it
  • the OpenSMOKE++ dictionary text (plus CSV volume histories, if any)

One module, no external configuration files.
Everything editable by the team lives in ZONE A below.

──────────────────────────────────────────────────────────────────────────────
FILE STRUCTURE
──────────────────────────────────────────────────────────────────────────────
  ZONE A  — CONFIGURATION  ← team edits here
              A1  Unit Rules (accepted units + canonical rewrites)
              A2  Composition Units
              A3  Common Property Names
              A4  Experiment Types and Apparatus Kinds
              A5  Classification Rules (constant / variable decision tables)
              A6  Reactor Models
              A7  Ignition Delay Criteria
              A8  Output Defaults and Tolerances

  ZONE B  — ENGINE         ← do not edit
              normalize_unit / normalize_units
              SpeciesDatabase, Composition
              ExperimentRecord
              Respecth2OpenSMOKE  (main conversion class)

  ZONE C  — UTILITIES
              write_report(), to_dataframe(), main()

──────────────────────────────────────────────────────────────────────────────
RESULT FIELDS  (ConversionResult)
──────────────────────────────────────────────────────────────────────────────
  file_name             input XML file name
  experiment_type       ReSpecTh experimentType
  apparatus_kind        ReSpecTh apparatus/kind
  experiment_key        short key (IDT, JSR, LBV, BSF, CTP, OC)
  rule_id               classification rule that fired
  analysis              parametric analysis type (e.g. "temperature")
  constant_quantities   quantities found in commonProperties
  variable_quantities   quantities read from the data group
  reactor               OpenSMOKE++ reactor dictionary (e.g. BatchReactor)
  reactor_type          @Type of the reactor dictionary
  n_simulations         number of simulations the dictionary describes
  dictionary_text       full .dic file content
  additional_files      {file name: content} written next to the .dic file
  warnings              recoverable issues (dropped points, renamed species)
  output_path           path of the written .dic file (None until written)
  error                 error message (batch conversion only)

Usage
-----
    from respecth2osmk_engine import ConverterSettings, Respecth2OpenSMOKE

    settings = ConverterSettings(kinetics_folder="kinetics", output_folder="out",
                                 mechanism_species=["H2", "O2", "N2", "AR"])
    conv = Respecth2OpenSMOKE(settings)
    result = conv.convert("x00000001.xml", write=True)
    print(result.reactor, result.analysis, result.output_path)

    results = conv.convert_many(["a.xml", "b.xml"], write=True)
    df = to_dataframe(results)
"""

from __future__ import annotations
import argparse
import logging
import sys
import xml.etree.ElementTree as etree
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import pint

logger = logging.getLogger(__name__)

# ═══════════════════════════════════════════════════════════════════════════════
#  ZONE A — CONFIGURATION
#  ─────────────────────────────────────────────────────────────────────────────
#  This is the ONLY section the team should edit.
#  Each sub-section is clearly labelled.  Add rules as new list/dict entries.
#  Do NOT modify anything in ZONE B or ZONE C.
# ═══════════════════════════════════════════════════════════════════════════════

# ─────────────────────────────────────────────────────────────────────────────
# A1 — UNIT RULES
# ─────────────────────────────────────────────────────────────────────────────
# One entry per physical quantity (the ReSpecTh property name).
#
# Keys per entry:
#   label      : word used in error messages ("Unknown <label> units: ...")
#   units      : {accepted ReSpecTh unit: canonical OpenSMOKE++ unit}
#                The order of the keys is the order shown in error messages.
#   any_units  : (optional) True → units are not checked and never rewritten
#
# When accepted != canonical, the value is rescaled with pint using the
# spellings in PINT_SPELLING (A1b).  Pure relabels (e.g. "g cm-2 s-1" →
# "g/cm2/s") share a pint spelling and are never rescaled.
# ─────────────────────────────────────────────────────────────────────────────
_TIME_UNITS: Dict[str, str] = {
    "s": "s", "ms": "ms", "us": "ms", "ns": "ms", "min": "min",
}

UNIT_RULES: Dict[str, Dict[str, Any]] = {
    "equivalence ratio": {
        "label": "equivalence ratio", "units": {}, "any_units": True,
    },
    "temperature": {
        "label": "temperature", "units": {"K": "K"},
    },
    "pressure": {
        "label": "pressure",
        "units": {"atm": "atm", "bar": "bar", "mbar": "bar", "torr": "atm",
                  "Torr": "atm", "Pa": "Pa", "kPa": "Pa", "MPa": "Pa"},
    },
    "residence time": {"label": "time", "units": _TIME_UNITS},
    "ignition delay": {"label": "time", "units": _TIME_UNITS},
    "time":           {"label": "time", "units": _TIME_UNITS},
    "volume": {
        "label": "volume",
        "units": {"m3": "m3", "dm3": "dm3", "cm3": "cm3", "mm3": "mm3", "L": "dm3"},
    },
    "flow rate": {
        "label": "flow rate",
        "units": {"g cm-2 s-1": "g/cm2/s", "kg m-2 s-1": "kg/m2/s"},
    },
    "pressure rise": {
        "label": "pressure rise",
        "units": {"ms-1": "1/ms", "s-1": "1/s"},
    },
    "distance": {
        "label": "distance", "units": {"m": "m", "dm": "dm", "cm": "cm", "mm": "mm"},
    },
    "laminar burning velocity": {
        "label": "laminar burning velocity",
        "units": {"m/s": "m/s", "cm/s": "cm/s", "mm/s": "mm/s"},
    },
}

# A1b — pint spelling of ReSpecTh / OpenSMOKE++ unit strings.
# Units missing here are handed to pint unchanged.
PINT_SPELLING: Dict[str, str] = {
    "K":          "kelvin",
    "torr":       "torr",
    "Torr":       "torr",
    "us":         "microsecond",
    "m3":         "m**3",
    "dm3":        "dm**3",
    "cm3":        "cm**3",
    "mm3":        "mm**3",
    "L":          "dm**3",
    "g cm-2 s-1": "g/cm**2/s",
    "g/cm2/s":    "g/cm**2/s",
    "kg m-2 s-1": "kg/m**2/s",
    "kg/m2/s":    "kg/m**2/s",
    "ms-1":       "1/ms",
    "1/ms":       "1/ms",
    "s-1":        "1/s",
    "1/s":        "1/s",
}

# ─────────────────────────────────────────────────────────────────────────────
# A2 — COMPOSITION UNITS
# ─────────────────────────────────────────────────────────────────────────────
# Factor that turns an amount into a mole fraction.
# Concentration units are handled separately: every species must then be
# given as a concentration, and the amounts are divided by their total.
# ─────────────────────────────────────────────────────────────────────────────
COMPOSITION_UNITS: Dict[str, float] = {
    "mole fraction": 1.0,
    "percent":       1.0e-2,
    "ppm":           1.0e-6,
    "ppb":           1.0e-9,
}
CONCENTRATION_UNITS = ("mol/cm3",)

# Maximum allowed |sum(x) - 1| before renormalisation
COMPOSITION_SUM_THRESHOLD = 1.0001e-4

# ─────────────────────────────────────────────────────────────────────────────
# A3 — COMMON PROPERTY NAMES
# ─────────────────────────────────────────────────────────────────────────────
# ReSpecTh property name → symbol used by the decision tables (A5).
# A quantity is CONSTANT when commonProperties contains a property with this
# name; otherwise it is VARIABLE (and, if the rule asks, read from the
# first dataGroup).
# ─────────────────────────────────────────────────────────────────────────────
COMMON_PROPERTIES: Dict[str, str] = {
    "temperature":              "T",
    "pressure":                 "P",
    "initial composition":      "X",
    "residence time":           "tau",
    "volume":                   "V",
    "equivalence ratio":        "phi",
    "flow rate":                "m",
    "pressure rise":            "dpdt",
    "laminar burning velocity": "sl",
}
SYMBOL_QUANTITY: Dict[str, str] = {sym: name for name, sym in COMMON_PROPERTIES.items()}

# Name of the dataGroup property carrying one composition column
DATAGROUP_COMPOSITION = "composition"

# ─────────────────────────────────────────────────────────────────────────────
# A4 — EXPERIMENT TYPES AND APPARATUS KINDS
# ─────────────────────────────────────────────────────────────────────────────
# Keys per entry:
#   key        : short experiment key used by A5 / A6 / A8
#   kinds      : accepted apparatus/kind values
#   modes      : (optional) accepted apparatus/mode values
#   mode_default: (optional) mode assumed when apparatus/mode is absent
#   no_match   : error raised when no classification rule matches
# ─────────────────────────────────────────────────────────────────────────────
EXPERIMENT_TYPES: Dict[str, Dict[str, Any]] = {
    "ignition delay measurement": {
        "key": "IDT",
        "kinds": ["flow reactor", "shock tube", "rapid compression machine"],
        "no_match": "Possible combinations of constant variables: (P,X) | (T,X) | (X)",
    },
    "jet stirred reactor measurement": {
        "key": "JSR",
        "kinds": ["stirred reactor"],
        "no_match": "Possible combinations of constant variables: "
                    "(P,X,V,tau) | (T,X,V,tau) | (T,P,X,tau) | (T,P,X,V)",
    },
    "laminar burning velocity measurement": {
        "key": "LBV",
        "kinds": ["flame"],
        "no_match": "Possible combinations of constant variables: "
                    "(P,X) | (T,X) | (T,P) | (P) | (T)",
    },
    "burner stabilized flame speciation measurement": {
        "key": "BSF",
        "kinds": ["flame"],
        "modes": ["burner-stabilized"],
        "mode_default": "burner-stabilized",
        "no_match": "(T,P,X,m) or (T,P,X,sl) must be defined as constant variables",
    },
    "concentration time profile measurement": {
        "key": "CTP",
        "kinds": ["flow reactor", "shock tube", "batch"],
        "no_match": "T, P and X must be defined as constant variables",
    },
    "outlet concentration measurement": {
        "key": "OC",
        "kinds": ["flow reactor", "shock tube"],
        "no_match": "Possible combinations of constant variables: (P,X) | (T,X)",
    },
}

# ─────────────────────────────────────────────────────────────────────────────
# A5 — CLASSIFICATION RULES
# ─────────────────────────────────────────────────────────────────────────────
# Ordered rules per experiment key.  Engine evaluates top-to-bottom and uses
# the FIRST matching rule.
#
# Rule keys:
#   id     : unique string identifier
#   if     : dict of conditions (all must hold)
#              constant : symbols that must be in commonProperties
#              variable : symbols that must NOT be in commonProperties
#   then   : what to do:
#              error    : raise ClassificationError with this message
#              analysis : parametric analysis type
#              read     : symbols read from the first dataGroup
#   doc    : explanation string
# ─────────────────────────────────────────────────────────────────────────────
CLASSIFICATION_RULES: Dict[str, List[Dict[str, Any]]] = {

    # ── IGNITION DELAY ───────────────────────────────────────────────────────
    "IDT": [
        {"id": "IDT_VARIABLE_COMPOSITION",
         "if":   {"variable": ["X"]},
         "then": {"error": "Only constant composition is allowed"},
         "doc": "Ignition delay series must share one initial mixture."},
        {"id": "IDT_CONSTANT_T_AND_P",
         "if":   {"constant": ["T", "P"]},
         "then": {"error": "Pressure and Temperature cannot be constant at the same time"},
         "doc": "Nothing left to sweep."},
        {"id": "IDT_VARIABLE_T",
         "if":   {"constant": ["P", "X"], "variable": ["T"]},
         "then": {"analysis": "temperature", "read": ["T"]},
         "doc": "Temperature sweep at fixed pressure."},
        {"id": "IDT_VARIABLE_P",
         "if":   {"constant": ["T", "X"], "variable": ["P"]},
         "then": {"analysis": "pressure", "read": ["P"]},
         "doc": "Pressure sweep at fixed temperature."},
        {"id": "IDT_VARIABLE_TP",
         "if":   {"constant": ["X"], "variable": ["T", "P"]},
         "then": {"analysis": "temperature-pressure", "read": ["T", "P"]},
         "doc": "Paired temperature / pressure points."},
    ],

    # ── JET STIRRED REACTOR ──────────────────────────────────────────────────
    "JSR": [
        {"id": "JSR_VARIABLE_T",
         "if":   {"constant": ["P", "X", "tau", "V"], "variable": ["T"]},
         "then": {"analysis": "temperature", "read": ["T"]},
         "doc": "Classic JSR temperature scan."},
        {"id": "JSR_VARIABLE_P",
         "if":   {"constant": ["T", "X", "tau", "V"], "variable": ["P"]},
         "then": {"analysis": "pressure", "read": ["P"]},
         "doc": "Pressure scan."},
        {"id": "JSR_VARIABLE_V",
         "if":   {"constant": ["T", "P", "X", "tau"], "variable": ["V"]},
         "then": {"analysis": "volume", "read": ["V"]},
         "doc": "Reactor volume scan."},
        {"id": "JSR_VARIABLE_TAU",
         "if":   {"constant": ["T", "P", "X", "V"], "variable": ["tau"]},
         "then": {"analysis": "time", "read": ["tau"]},
         "doc": "Residence time scan."},
    ],

    # ── LAMINAR BURNING VELOCITY ─────────────────────────────────────────────
    "LBV": [
        {"id": "LBV_VARIABLE_P",
         "if":   {"constant": ["T", "X"], "variable": ["P"]},
         "then": {"analysis": "pressure", "read": ["P"]},
         "doc": "Flame speed vs. pressure."},
        {"id": "LBV_VARIABLE_T",
         "if":   {"constant": ["P", "X"], "variable": ["T"]},
         "then": {"analysis": "temperature", "read": ["T"]},
         "doc": "Flame speed vs. unburnt gas temperature."},
        {"id": "LBV_VARIABLE_X",
         "if":   {"constant": ["T", "P"], "variable": ["X"]},
         "then": {"analysis": "composition", "read": ["X"]},
         "doc": "Flame speed vs. mixture (usually equivalence ratio)."},
        {"id": "LBV_VARIABLE_T_X",
         "if":   {"constant": ["P"], "variable": ["T", "X"]},
         "then": {"analysis": "temperature-composition", "read": ["T", "X"]},
         "doc": "Paired temperature / mixture points."},
        {"id": "LBV_VARIABLE_P_X",
         "if":   {"constant": ["T"], "variable": ["P", "X"]},
         "then": {"analysis": "pressure-composition", "read": ["P", "X"]},
         "doc": "Paired pressure / mixture points."},
    ],

    # ── BURNER STABILIZED FLAME ──────────────────────────────────────────────
    "BSF": [
        {"id": "BSF_ASSIGNED_MASS_FLUX",
         "if":   {"constant": ["T", "P", "X", "m"], "variable": ["sl"]},
         "then": {"analysis": "mass-flux", "read": []},
         "doc": "Inlet mass flux given."},
        {"id": "BSF_ASSIGNED_VELOCITY",
         "if":   {"constant": ["T", "P", "X", "sl"], "variable": ["m"]},
         "then": {"analysis": "inlet-velocity", "read": []},
         "doc": "Inlet velocity given."},
    ],

    # ── CONCENTRATION TIME PROFILE ───────────────────────────────────────────
    "CTP": [
        {"id": "CTP_CONSTANT_TPX",
         "if":   {"constant": ["T", "P", "X"]},
         "then": {"analysis": "time-profile", "read": []},
         "doc": "Single history at fixed conditions."},
    ],

    # ── OUTLET CONCENTRATION ─────────────────────────────────────────────────
    "OC": [
        {"id": "OC_VARIABLE_T_TAU",
         "if":   {"constant": ["P", "X"], "variable": ["T", "tau"]},
         "then": {"analysis": "residence-time-temperature", "read": ["tau", "T"]},
         "doc": "Flow reactor temperature scan."},
        {"id": "OC_VARIABLE_P_TAU",
         "if":   {"constant": ["T", "X"], "variable": ["P", "tau"]},
         "then": {"analysis": "residence-time-pressure", "read": ["tau", "P"]},
         "doc": "Flow reactor pressure scan."},
    ],
}

# ─────────────────────────────────────────────────────────────────────────────
# A6 — REACTOR MODELS
# ─────────────────────────────────────────────────────────────────────────────
# (experiment key, apparatus kind) → OpenSMOKE++ reactor dictionary.
# Kind "*" matches any accepted kind.
#
# Keys per entry:
#   dictionary   : reactor dictionary name
#   type         : @Type value
#   type_history : (optional) @Type value when volume histories are present
#   status_key   : keyword linking the reactor to its mixture dictionary
#   status_name  : name of that mixture dictionary
#   time_key     : (optional) keyword carrying the integration time
#   extra        : (optional) additional fixed (keyword, value) pairs
# ─────────────────────────────────────────────────────────────────────────────
REACTOR_MODELS: Dict[Tuple[str, str], Dict[str, Any]] = {
    ("IDT", "*"): {
        "dictionary": "BatchReactor",
        "type": "NonIsothermal-ConstantVolume",
        "type_history": "NonIsothermal-UserDefinedVolume",
        "status_key": "@InitialStatus", "status_name": "mix-status",
        "time_key": "@EndTime",
    },
    ("JSR", "stirred reactor"): {
        "dictionary": "PerfectlyStirredReactor",
        "type": "Isothermal-ConstantPressure",
        "status_key": "@InletStatus", "status_name": "inlet-status",
    },
    ("LBV", "flame"): {
        "dictionary": "PremixedLaminarFlame1D",
        "type": "FlameSpeed",
        "status_key": "@InletStream", "status_name": "inlet-stream",
    },
    ("BSF", "flame"): {
        "dictionary": "PremixedLaminarFlame1D",
        "type": "BurnerStabilized",
        "status_key": "@InletStream", "status_name": "inlet-stream",
    },
    ("CTP", "flow reactor"): {
        "dictionary": "PlugFlowReactor",
        "type": "Isothermal",
        "status_key": "@InletStatus", "status_name": "mix-status",
        "time_key": "@ResidenceTime",
        "extra": [("@ConstantPressure", "true"), ("@Velocity", "10 cm/s")],
    },
    ("CTP", "shock tube"): {
        "dictionary": "ShockTubeReactor",
        "type": "ReflectedShock",
        "status_key": "@ReflectedShockStatus", "status_name": "mix-status",
        "time_key": "@EndTime",
    },
    ("CTP", "batch"): {
        "dictionary": "BatchReactor",
        "type": "Isothermal-ConstantPressure",
        "status_key": "@InitialStatus", "status_name": "mix-status",
        "time_key": "@EndTime",
    },
    ("OC", "flow reactor"): {
        "dictionary": "PlugFlowReactor",
        "type": "NonIsothermal",
        "status_key": "@InletStatus", "status_name": "inlet-status",
        "time_key": "@ResidenceTime",
        "extra": [("@ConstantPressure", "true"), ("@Velocity", "10 cm/s")],
    },
    ("OC", "shock tube"): {
        "dictionary": "ShockTubeReactor",
        "type": "ReflectedShock",
        "status_key": "@ReflectedShockStatus", "status_name": "inlet-status",
        "time_key": "@EndTime",
    },
}

# ─────────────────────────────────────────────────────────────────────────────
# A7 — IGNITION DELAY CRITERIA
# ─────────────────────────────────────────────────────────────────────────────
# ignitionType@type → (keyword, value template) lines.
# Templates may use {target}, {amount}, {units}.
# Concentration criteria are keyed again by ignitionType@units.
# Targets "T" and "p" bypass this table (temperature / pressure criteria).
# ─────────────────────────────────────────────────────────────────────────────
IGNITION_CRITERIA: Dict[str, Any] = {
    "max": [
        ("@Species", "{target}"),
    ],
    "d/dt max": [
        ("@Species", "{target}"),
        ("@SpeciesSlope", "true"),
    ],
    "baseline max intercept from d/dt": [
        ("@Species", "{target}"),
        ("@SpeciesMaxIntercept", "{target}"),
    ],
    "baseline min intercept from d/dt": [
        ("@Species", "{target}"),
        ("@SpeciesMinIntercept", "{target}"),
    ],
    "concentration": {
        "mole fraction": [("@TargetMoleFractions", "{target} {amount}")],
        "mol/cm3":       [("@TargetConcentrations", "{target} {amount} {units}")],
    },
    "relative concentration": {
        "mole fraction": [("@TargetRelativeMoleFractions", "{target} {amount}")],
        "mol/cm3":       [("@TargetRelativeConcentrations", "{target} {amount}")],
    },
}

IGNITION_FIXED_OPTIONS: List[Tuple[str, str]] = [
    ("@FilterWidth",                    "0.1 ms"),
    ("@RegularizationTimeInterval",     "2.0 ms"),
    ("@TemperatureDerivativeThreshold", "1.0 K/ms"),
    ("@Verbose",                        "true"),
]

# Data group label holding volume-time histories (RCM experiments)
VOLUME_HISTORY_LABEL = "V-t history"

# ─────────────────────────────────────────────────────────────────────────────
# A8 — OUTPUT DEFAULTS AND TOLERANCES
# ─────────────────────────────────────────────────────────────────────────────
END_TIME_FACTOR       = 2.0        # IDT end time = factor × max(ignition delay)
IDT_REACTOR_VOLUME    = "1 cm3"
ODE_TOLERANCES        = {"absolute": 1.0e-14, "relative": 1.0e-7}
LBV_INLET_VELOCITY    = "50 cm/s"

OUTPUT_OPTIONS: Dict[str, Dict[str, Any]] = {
    "IDT": {"verbose_video": True, "steps_video": 1000, "verbose_file": True, "steps_file": 5},
    "JSR": {"verbose_video": True, "steps_video": 5000, "verbose_file": True, "steps_file": 5000},
    "CTP": {"verbose_video": True, "steps_video": 1,    "verbose_file": True, "steps_file": 1},
    "OC":  {"verbose_video": True, "steps_video": 1000, "verbose_file": True, "steps_file": 5000},
}

GRID_SETTINGS: Dict[str, Any] = {
    "lengths": {"LBV": "5 cm", "BSF": "10 cm"},   # BSF length comes from T profile if given
    "entries": [
        ("@InitialPoints",        "12"),
        ("@Type",                 "database"),
        ("@MaxPoints",            "400"),
        ("@MaxAdaptivePoints",    "15"),
        ("@GradientCoefficient",  "0.05"),
        ("@CurvatureCoefficient", "0.5"),
    ],
}

DICTIONARY_BANNER: List[str] = [
    "//-----------------------------------------------------------------//",
    "//     ____                    ______ __  __  ____  _  ________    //",
    "//    / __ \\                  /  ___ |  \\/  |/ __ \\| |/ /  ____|   //",
    "//   | |  | |_ __   ___ _ __ |  (___ | \\  / | |  | | ' /| |__      //",
    "//   | |  | | '_ \\ / _ \\ '_ \\ \\___  \\| |\\/| | |  | |  < |  __|     //",
    "//   | |__| | |_) |  __/ | | |____)  | |  | | |__| | . \\| |____    //",
    "//    \\____/| .__/ \\___|_| |_|______/|_|  |_|\\____/|_|\\_\\______|   //",
    "//          | |                                                    //",
    "//          |_|                                                    //",
    "//                                                                 //",
    "//              http://www.opensmokepp.polimi.it/                  //",
    "//             http://creckmodeling.chem.polimi.it/                //",
    "//-----------------------------------------------------------------//",
]


# ═══════════════════════════════════════════════════════════════════════════════
#  ZONE B — ENGINE
#  ─────────────────────────────────────────────────────────────────────────────
#  Do not edit unless extending the engine architecture itself.
# ═══════════════════════════════════════════════════════════════════════════════

# ── Errors ─────────────────────────────────────────────────────────────────────

class ConversionError(Exception):
    """Base class for every failure while converting one experiment."""


class ParseError(ConversionError):
    """The XML file (or one of its values) could not be parsed."""


class MissingElementError(ConversionError):
    def __init__(self, element_name: str) -> None:
        super().__init__(f"required element {element_name} is missing")
        self.element_name = element_name


class MissingAttributeError(ConversionError):
    def __init__(self, attribute_name: str, element_name: str) -> None:
        super().__init__(f"required attribute {attribute_name} of {element_name} is missing")
        self.attribute_name = attribute_name
        self.element_name = element_name


class UnitConversionError(ConversionError):
    """Unknown quantity, or unit not accepted for a quantity."""


class CompositionError(ConversionError):
    """Composition units are unknown or inconsistent, or fractions do not sum to 1."""


class SpeciesNotFoundError(CompositionError):
    """A species is not available in the kinetic mechanism."""


class ClassificationError(ConversionError):
    """The constant / variable pattern does not select a reactor model."""


class UnsupportedExperimentError(ClassificationError):
    """experimentType has no converter."""


# ── Unit normalisation ─────────────────────────────────────────────────────────

_UREG = pint.UnitRegistry()
Q_ = _UREG.Quantity


def _pint_spelling(units: str) -> str:
    return PINT_SPELLING.get(units, units)


def _conversion_factor(source: str, target: str) -> float:
    src, dst = _pint_spelling(source), _pint_spelling(target)
    if src == dst:
        return 1.0
    return float(Q_(1.0, src).to(dst).magnitude)


def normalize_unit(quantity: str, value: float, units: str) -> Tuple[float, str]:
    """Validate ``units`` for ``quantity`` and return the value in canonical units."""
    rule = UNIT_RULES.get(quantity)
    if rule is None:
        raise UnitConversionError(f"Unknown variable: {quantity}")
    if rule.get("any_units"):
        return value, units
    accepted = rule["units"]
    if units not in accepted:
        raise UnitConversionError(
            f"Unknown {rule['label']} units: {units}. "
            f"Available units: {' | '.join(accepted)}")
    target = accepted[units]
    return value * _conversion_factor(units, target), target


def normalize_units(quantity: str, values: Sequence[float], units: str) -> Tuple[List[float], str]:
    """List version of :func:`normalize_unit`; all values share ``units``.

    An empty list is returned untouched, whatever ``units`` says.
    """
    if not values:
        return [], units
    out: List[float] = []
    target = units
    for v in values:
        converted, target = normalize_unit(quantity, v, units)
        out.append(converted)
    return out, target


def force_monotonic(x: List[float], y: List[float]) -> Tuple[List[float], List[float], int]:
    """Drop point i-1 wherever x[i] <= x[i-1].  Returns (x, y, n_dropped)."""
    drop = {i - 1 for i in range(1, len(x)) if x[i] <= x[i - 1]}
    xs = [v for i, v in enumerate(x) if i not in drop]
    ys = [v for i, v in enumerate(y) if i not in drop]
    return xs, ys, len(drop)


def _fmt(value: float) -> str:
    return "%e" % value


@dataclass
class Series:
    """Values of one quantity, all in ``units``."""
    values: List[float]
    units:  str

    def __len__(self) -> int:
        return len(self.values)


# ── Species ────────────────────────────────────────────────────────────────────

class SpeciesDatabase:
    """Alias table mapping CAS numbers / chemical names to mechanism names."""

    def __init__(self, names: Sequence[str] = (), chem_names: Sequence[str] = (),
                 cas: Sequence[str] = ()) -> None:
        self.names = list(names)
        self.chem_names = list(chem_names)
        self.cas = list(cas)

    @property
    def is_active(self) -> bool:
        return bool(self.names)

    @classmethod
    def from_xml(cls, file_name: Union[str, Path]) -> "SpeciesDatabase":
        try:
            root = etree.parse(str(file_name)).getroot()
        except (etree.ParseError, OSError) as exc:
            raise ParseError(f"Species database {file_name}: {exc}") from exc
        names, chem_names, cas = [], [], []
        for sp in root.findall("species"):
            names.append(_required_attr(sp, "name", "species"))
            chem_names.append(sp.get("chemName", ""))
            cas.append(sp.get("CAS", ""))
        logger.info("Species database %s: %d species", file_name, len(names))
        return cls(names, chem_names, cas)

    def lookup(self, cas: str = "", chem_name: str = "") -> Optional[str]:
        if cas and cas in self.cas:
            return self.names[self.cas.index(cas)]
        if chem_name and chem_name in self.chem_names:
            return self.names[self.chem_names.index(chem_name)]
        return None


def read_mechanism_species(path: Union[str, Path]) -> List[str]:
    """Species names of a kinetic mechanism.

    ``path`` may be an OpenSMOKE++ kinetics folder (``kinetics.xml`` inside),
    the ``kinetics.xml`` file itself, or a plain text file listing names.
    """
    path = Path(path)
    if path.is_dir():
        path = path / "kinetics.xml"
    if path.suffix.lower() == ".xml":
        try:
            root = etree.parse(str(path)).getroot()
        except (etree.ParseError, OSError) as exc:
            raise ParseError(f"Kinetic mechanism {path}: {exc}") from exc
        node = root if root.tag == "NamesOfSpecies" else root.find(".//NamesOfSpecies")
        if node is None:
            raise MissingElementError("NamesOfSpecies")
        return (node.text or "").split()
    try:
        return path.read_text().split()
    except OSError as exc:
        raise ParseError(f"Kinetic mechanism {path}: {exc}") from exc


class Composition:
    """Mixture composition: species names and amounts.

    After :meth:`resolve` the names are mechanism names and the amounts are
    mole fractions summing to 1.
    """

    def __init__(self, names: Sequence[str], values: Sequence[float], units: Sequence[str],
                 chem_names: Optional[Sequence[str]] = None,
                 cas: Optional[Sequence[str]] = None) -> None:
        if not (len(names) == len(values) == len(units)):
            raise CompositionError("Species names, amounts and units must have the same length")
        self.names = list(names)
        self.values = [float(v) for v in values]
        self.units = list(units)
        self.chem_names = list(chem_names) if chem_names is not None else [""] * len(self.names)
        self.cas = list(cas) if cas is not None else [""] * len(self.names)

    @classmethod
    def from_xml(cls, prop: etree.Element) -> "Composition":
        """Read ``component`` children of an ``initial composition`` property."""
        names, values, units, chem, cas = [], [], [], [], []
        for comp in prop.findall("component"):
            link = comp.find("speciesLink")
            if link is None:
                raise MissingElementError("speciesLink")
            amount = comp.find("amount")
            if amount is None:
                raise MissingElementError("amount")
            names.append(_required_attr(link, "preferredKey", "speciesLink"))
            chem.append(link.get("chemName", ""))
            cas.append(link.get("CAS", ""))
            units.append(_required_attr(amount, "units", "amount"))
            values.append(_to_float(amount.text, "amount"))
        if not names:
            raise MissingElementError("component")
        return cls(names, values, units, chem, cas)

    def resolve(self, mechanism_species: Sequence[str], case_sensitive: bool,
                database: Optional[SpeciesDatabase] = None) -> List[str]:
        """Alias lookup, mechanism check, mole fractions.  Returns warnings."""
        warnings: List[str] = []
        if database is not None and database.is_active:
            warnings.extend(self._apply_database(database))
        if mechanism_species:
            warnings.extend(self._check_species(mechanism_species, case_sensitive))
        self._to_mole_fractions()
        return warnings

    def _apply_database(self, database: SpeciesDatabase) -> List[str]:
        warnings: List[str] = []
        for i, name in enumerate(self.names):
            alias = database.lookup(self.cas[i], self.chem_names[i])
            if alias is not None and alias != name:
                warnings.append(f"Species {name} renamed to {alias} (species database)")
                self.names[i] = alias
        return warnings

    def _check_species(self, mechanism_species: Sequence[str], case_sensitive: bool) -> List[str]:
        warnings: List[str] = []
        if case_sensitive:
            known = set(mechanism_species)
            for name in self.names:
                if name not in known:
                    raise SpeciesNotFoundError(
                        f"Case sensitive check: Species {name} is not available in the kinetic mechanism.")
            return warnings

        # first occurrence wins, as with a linear search
        by_upper: Dict[str, str] = {}
        for sp in mechanism_species:
            by_upper.setdefault(sp.upper(), sp)
        for i, name in enumerate(self.names):
            match = by_upper.get(name.upper())
            if match is None:
                raise SpeciesNotFoundError(
                    f"Case insensitive check: Species {name} is not available in the kinetic mechanism.")
            if match != name:
                warnings.append(f"Species {name} renamed to {match} (mechanism spelling)")
                self.names[i] = match
        return warnings

    def _to_mole_fractions(self) -> None:
        for u in self.units:
            if u not in COMPOSITION_UNITS and u not in CONCENTRATION_UNITS:
                raise CompositionError(
                    f"Unknown units for composition: {u}. Available units: "
                    + " | ".join(list(COMPOSITION_UNITS) + list(CONCENTRATION_UNITS)))

        if any(u in CONCENTRATION_UNITS for u in self.units):
            if not all(u in CONCENTRATION_UNITS for u in self.units):
                raise CompositionError(
                    "If composition is given in terms of concentration, "
                    "this must be done for all the species.")
            total = sum(self.values)
            if total <= 0.0:
                raise CompositionError(f"Total concentration is not positive: {total}")
            self.values = [v / total for v in self.values]
        else:
            self.values = [v * COMPOSITION_UNITS[u] for v, u in zip(self.values, self.units)]
        self.units = ["mole fraction"] * len(self.values)

        total = sum(self.values)
        if abs(total - 1.0) > COMPOSITION_SUM_THRESHOLD:
            raise CompositionError(f"Sum is not equal to 1: {total:.6f}")
        self.values = [v / total for v in self.values]

    def mole_fractions(self) -> Dict[str, float]:
        return dict(zip(self.names, self.values))

    def to_dictionary_value(self) -> str:
        return " ".join(f"{n} {_fmt(v)}" for n, v in zip(self.names, self.values))


# ── XML helpers ────────────────────────────────────────────────────────────────

def _to_float(text: Optional[str], where: str) -> float:
    try:
        return float((text or "").strip())
    except ValueError:
        raise ParseError(f"Value '{text}' of {where} is not a number") from None


def _required_attr(elem: etree.Element, name: str, where: str) -> str:
    value = elem.get(name)
    if value is None:
        raise MissingAttributeError(name, where)
    return value


@dataclass
class IgnitionType:
    target: str
    type:   str
    amount: Optional[float] = None
    units:  str = ""


class ExperimentRecord:
    """Parsed ReSpecTh experiment file.

    Reading is lazy: metadata is extracted on construction, properties on
    request, so that only the quantities the classification asks for are
    validated.
    """

    def __init__(self, root: etree.Element, file_name: str = "experiment.xml") -> None:
        if root.tag != "experiment":
            raise ParseError(f"Root element is <{root.tag}>, expected <experiment>")
        self.root = root
        self.file_name = file_name

        self.file_author = self._text("fileAuthor")
        self.file_doi = self._text("fileDOI", "")
        self.file_version = (int(self._number("fileVersion/major", 0)),
                             int(self._number("fileVersion/minor", 0)))
        self.respecth_version = (int(self._number("ReSpecThVersion/major")),
                                 int(self._number("ReSpecThVersion/minor")))
        self.experiment_type = self._text("experimentType")
        self.apparatus_kind = self._text("apparatus/kind", "unspecified")
        self.apparatus_mode = self._text("apparatus/mode", "")

        bib = root.find("bibliographyLink")
        self.bibliography: Dict[str, str] = {}
        if bib is not None:
            self.bibliography = {k: bib.get(k, "") for k in ("preferredKey", "doi")}

    @classmethod
    def from_file(cls, file_name: Union[str, Path]) -> "ExperimentRecord":
        try:
            root = etree.parse(str(file_name)).getroot()
        except (etree.ParseError, OSError) as exc:
            raise ParseError(f"{file_name}: {exc}") from exc
        return cls(root, Path(file_name).name)

    @classmethod
    def from_string(cls, text: str, file_name: str = "experiment.xml") -> "ExperimentRecord":
        try:
            root = etree.fromstring(text)
        except etree.ParseError as exc:
            raise ParseError(f"{file_name}: {exc}") from exc
        return cls(root, file_name)

    # ── element access ──────────────────────────────────────────────────

    _REQUIRED = object()

    def _text(self, path: str, default: Any = _REQUIRED) -> str:
        node = self.root.find(path)
        text = node.text.strip() if node is not None and node.text else ""
        if not text:
            if default is self._REQUIRED:
                raise MissingElementError(path.replace("/", "."))
            return default
        return text

    def _number(self, path: str, default: Any = _REQUIRED) -> float:
        if default is self._REQUIRED:
            return _to_float(self._text(path), path)
        text = self._text(path, None)
        return default if text is None else _to_float(text, path)

    def _common_properties(self) -> List[etree.Element]:
        node = self.root.find("commonProperties")
        return [] if node is None else node.findall("property")

    def _first_datagroup(self) -> Optional[etree.Element]:
        return self.root.find("dataGroup")

    # ── constant quantities ─────────────────────────────────────────────

    def constant_flags(self) -> Dict[str, bool]:
        """symbol → True when the quantity is listed in commonProperties."""
        names = {p.get("name") for p in self._common_properties()}
        return {sym: (name in names) for name, sym in COMMON_PROPERTIES.items()}

    def read_constant(self, quantity: str) -> Series:
        for prop in self._common_properties():
            if prop.get("name") != quantity:
                continue
            value = prop.find("value")
            if value is None:
                raise MissingElementError(f"commonProperties.property[{quantity}].value")
            units = _required_attr(prop, "units", f"property {quantity}")
            v, u = normalize_unit(quantity, _to_float(value.text, quantity), units)
            return Series([v], u)
        raise MissingElementError(f"commonProperties.property[{quantity}]")

    def read_initial_composition(self) -> Composition:
        for prop in self._common_properties():
            if prop.get("name") == "initial composition":
                return Composition.from_xml(prop)
        raise MissingElementError("commonProperties.property[initial composition]")

    # ── variable quantities ─────────────────────────────────────────────

    def read_variable(self, quantity: str) -> Series:
        """Column ``quantity`` of the first dataGroup (empty when absent)."""
        group = self._first_datagroup()
        if group is None:
            return Series([], "n.a.")
        prop_id, units = None, "n.a."
        for prop in group.findall("property"):
            if prop.get("name") == quantity:
                prop_id = _required_attr(prop, "id", f"property {quantity}")
                units = _required_attr(prop, "units", f"property {quantity}")
        if prop_id is None:
            return Series([], units)

        values = [self._datapoint_value(dp, prop_id) for dp in group.findall("dataPoint")]
        values, units = normalize_units(quantity, values, units)
        return Series(values, units)

    def read_variable_compositions(self) -> List[Composition]:
        """One Composition per dataPoint, from the ``composition`` columns."""
        group = self._first_datagroup()
        if group is None:
            return []
        ids, names, units, chem, cas = [], [], [], [], []
        for prop in group.findall("property"):
            if prop.get("name") != DATAGROUP_COMPOSITION:
                continue
            link = prop.find("speciesLink")
            if link is None:
                raise MissingElementError("dataGroup.property.speciesLink")
            ids.append(_required_attr(prop, "id", "property composition"))
            units.append(_required_attr(prop, "units", "property composition"))
            names.append(_required_attr(link, "preferredKey", "speciesLink"))
            chem.append(link.get("chemName", ""))
            cas.append(link.get("CAS", ""))
        if not ids:
            return []
        return [Composition(names, [self._datapoint_value(dp, i) for i in ids], units, chem, cas)
                for dp in group.findall("dataPoint")]

    def read_profiles(self, label: str, name1: str, name2: str) -> List[Tuple[Series, Series]]:
        """(name1, name2) series from every dataGroup labelled ``label``."""
        out: List[Tuple[Series, Series]] = []
        for group in self.root.findall("dataGroup"):
            if group.get("label", "") != label:
                continue
            ids: Dict[str, Tuple[str, str]] = {}
            for prop in group.findall("property"):
                name = prop.get("name")
                if name in (name1, name2):
                    ids[name] = (_required_attr(prop, "id", f"property {name}"),
                                 _required_attr(prop, "units", f"property {name}"))
            if name1 not in ids:
                continue
            if name2 not in ids:
                raise MissingElementError(f"dataGroup[{label}].property[{name2}]")
            points = group.findall("dataPoint")
            series = []
            for name in (name1, name2):
                pid, units = ids[name]
                vals, units = normalize_units(name, [self._datapoint_value(dp, pid) for dp in points], units)
                series.append(Series(vals, units))
            out.append((series[0], series[1]))
        return out

    @staticmethod
    def _datapoint_value(dp: etree.Element, prop_id: str) -> float:
        node = dp.find(prop_id)
        if node is None:
            raise MissingElementError(f"dataPoint.{prop_id}")
        return _to_float(node.text, f"dataPoint.{prop_id}")

    # ── ignition ────────────────────────────────────────────────────────

    def read_ignition_type(self) -> IgnitionType:
        node = self.root.find("ignitionType")
        if node is None:
            raise MissingElementError("ignitionType")
        target = _required_attr(node, "target", "ignitionType")
        if target == "P":
            target = "p"
        amount = node.get("amount")
        return IgnitionType(
            target=target,
            type=_required_attr(node, "type", "ignitionType"),
            amount=_to_float(amount, "ignitionType.amount") if amount is not None else None,
            units=node.get("units", ""),
        )


# ── Settings and results ───────────────────────────────────────────────────────

@dataclass
class ConverterSettings:
    """Where things live.  Remote folders are the ones written into the
    dictionaries (the machine running OpenSMOKE++ may differ)."""
    kinetics_folder:        Union[str, Path] = "kinetics"
    output_folder:          Union[str, Path] = "output"
    kinetics_folder_remote: Optional[Union[str, Path]] = None
    output_folder_remote:   Optional[Union[str, Path]] = None
    species_database:       Optional[Union[str, Path]] = None
    case_sensitive:         bool = False
    mechanism_species:      List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.kinetics_folder = Path(self.kinetics_folder)
        self.output_folder = Path(self.output_folder)
        self.kinetics_folder_remote = Path(self.kinetics_folder_remote or self.kinetics_folder)
        self.output_folder_remote = Path(self.output_folder_remote or self.output_folder)
        if self.species_database is not None:
            self.species_database = Path(self.species_database)


@dataclass
class ConversionResult:
    file_name:           str
    experiment_type:     str = ""
    apparatus_kind:      str = ""
    experiment_key:      str = ""
    rule_id:             str = ""
    analysis:            str = ""
    constant_quantities: List[str] = field(default_factory=list)
    variable_quantities: List[str] = field(default_factory=list)
    reactor:             str = ""
    reactor_type:        str = ""
    n_simulations:       int = 0
    dictionary_text:     str = ""
    additional_files:    Dict[str, str] = field(default_factory=dict)
    warnings:            List[str] = field(default_factory=list)
    output_path:         Optional[str] = None
    error:               Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class _Experiment:
    """Working state for one conversion (classified and read)."""
    record:       ExperimentRecord
    key:          str
    kind:         str
    flags:        Dict[str, bool]
    rule:         Dict[str, Any]
    model:        Dict[str, Any]
    constants:    Dict[str, Series]
    compositions: List[Composition]
    variables:    Dict[str, Series]
    warnings:     List[str]

    @property
    def stem(self) -> str:
        return Path(self.record.file_name).stem

    def n_points(self) -> int:
        sizes = [len(s) for s in self.variables.values()]
        if "X" in self.rule["then"]["read"]:
            sizes.append(len(self.compositions))
        return max(sizes) if sizes else 1

    def value(self, symbol: str, i: int = 0) -> float:
        if symbol in self.variables:
            return self.variables[symbol].values[i]
        return self.constants[symbol].values[0]

    def units(self, symbol: str) -> str:
        if symbol in self.variables:
            return self.variables[symbol].units
        return self.constants[symbol].units

    def quantity(self, symbol: str, i: int = 0) -> str:
        return f"{_fmt(self.value(symbol, i))} {self.units(symbol)}"

    def composition(self, i: int = 0) -> Composition:
        return self.compositions[i if len(self.compositions) > 1 else 0]


# ── Dictionary writer ──────────────────────────────────────────────────────────

_INDENT = "        "

Entry = Tuple[Optional[str], str]


class _DictionaryWriter:
    """Accumulates OpenSMOKE++ dictionary text.  Keyword None → raw line."""

    def __init__(self) -> None:
        self._lines: List[str] = []

    def text(self) -> str:
        return "\n".join(self._lines) + "\n"

    def lines(self, lines: Sequence[str]) -> None:
        self._lines.extend(lines)

    def block(self, name: str, entries: Sequence[Entry]) -> None:
        self._lines.append(f"Dictionary {name}")
        self._lines.append("{")
        for key, value in entries:
            if key is None:
                self._lines.append(f"{_INDENT}{value}")
            else:
                self._lines.append(f"{_INDENT}{key:<24} {value};")
        self._lines.append("}")
        self._lines.append("")


def _mix_status_entries(exp: _Experiment, i: int = 0) -> List[Entry]:
    return [
        ("@Temperature",   exp.quantity("T", i)),
        ("@Pressure",      exp.quantity("P", i)),
        ("@MoleFractions", exp.composition(i).to_dictionary_value()),
    ]


def _output_options_entries(options: Dict[str, Any], folder: str) -> List[Entry]:
    return [
        ("@StepsVideo",       str(options["steps_video"])),
        ("@StepsFile",        str(options["steps_file"])),
        ("@VerboseVideo",     "true" if options["verbose_video"] else "false"),
        ("@VerboseASCIIFile", "true" if options["verbose_file"] else "false"),
        ("@OutputFolder",     folder),
    ]


def _ode_entries() -> List[Entry]:
    return [
        ("@OdeSolver",         "OpenSMOKE"),
        ("@AbsoluteTolerance", _fmt(ODE_TOLERANCES["absolute"])),
        ("@RelativeTolerance", _fmt(ODE_TOLERANCES["relative"])),
    ]


def _list_of_values(series: Series) -> str:
    return " ".join(_fmt(v) for v in series.values) + f" {series.units}"


def _parametric_entries(analysis: str, *series: Series) -> List[Entry]:
    entries: List[Entry] = [("@Type", analysis), ("@ListOfValues", _list_of_values(series[0]))]
    if len(series) > 1:
        entries.append(("@ListOfValues2", _list_of_values(series[1])))
    return entries


def _parametric_files_entries(analysis: str, file_names: Sequence[str]) -> List[Entry]:
    entries: List[Entry] = [("@Type", analysis), (None, "@ListOfProfiles")]
    entries.extend((None, f"{_INDENT}{_INDENT}{name}") for name in file_names)
    entries.append((None, f"{_INDENT}{_INDENT};"))
    return entries


def _ignition_entries(idt: IgnitionType, is_rcm: bool) -> List[Entry]:
    entries: List[Entry] = []
    if idt.target == "T":
        entries += [("@Temperature", "true"), ("@Pressure", "false")]
    elif idt.target == "p":
        entries += [("@Temperature", "false"), ("@Pressure", "true")]
    else:
        entries += [("@Temperature", "false"), ("@Pressure", "false")]
        criterion = IGNITION_CRITERIA.get(idt.type)
        if criterion is None:
            raise ClassificationError(
                f"Unknown ignition delay type: {idt.type}. Available: "
                + " | ".join(IGNITION_CRITERIA))
        if isinstance(criterion, dict):
            if idt.units not in criterion:
                raise ClassificationError(
                    f"Unknown units for ignition delay type {idt.type}: {idt.units}. "
                    f"Available units: {' | '.join(criterion)}")
            if idt.amount is None:
                raise MissingAttributeError("amount", "ignitionType")
            criterion = criterion[idt.units]
        amount = _fmt(idt.amount) if idt.amount is not None else ""
        for key, template in criterion:
            entries.append((key, template.format(target=idt.target, amount=amount, units=idt.units)))
    if is_rcm:
        entries.append(("@RapidCompressionMachine", "true"))
    entries.extend(IGNITION_FIXED_OPTIONS)
    return entries


def _profile_csv(header: Sequence[Tuple[str, float, str]], name1: str, s1: Series,
                 name2: str, s2: Series) -> str:
    lines = [f"{name};{_fmt(value)} {units}" for name, value, units in header]
    lines.append(f"{name1};{s1.units}")
    lines.append(f"{name2};{s2.units}")
    lines.append("profile;")
    lines.extend(f"{_fmt(a)};{_fmt(b)}" for a, b in zip(s1.values, s2.values))
    return "\n".join(lines) + "\n"


# ── Classification ─────────────────────────────────────────────────────────────

class _Classifier:
    """Applies CLASSIFICATION_RULES to the constant flags of one experiment."""

    def apply(self, key: str, flags: Dict[str, bool]) -> Dict[str, Any]:
        for rule in CLASSIFICATION_RULES.get(key, []):
            if not self._matches(rule.get("if", {}), flags):
                continue
            then = rule.get("then", {})
            if "error" in then:
                raise ClassificationError(then["error"])
            return rule
        no_match = next((e["no_match"] for e in EXPERIMENT_TYPES.values() if e["key"] == key),
                        "No classification rule matched")
        raise ClassificationError(no_match)

    @staticmethod
    def _matches(cond: Dict[str, Any], flags: Dict[str, bool]) -> bool:
        for k, symbols in cond.items():
            if k == "constant":
                if not all(flags.get(s, False) for s in symbols):
                    return False
            elif k == "variable":
                if any(flags.get(s, False) for s in symbols):
                    return False
            else:
                return False
        return True


# ── Main converter ─────────────────────────────────────────────────────────────

class Respecth2OpenSMOKE:
    """
    Main conversion engine.

    Usage:
        conv = Respecth2OpenSMOKE(ConverterSettings(mechanism_species=[...]))
        result = conv.convert("x00000001.xml")
        result.reactor        # → "BatchReactor"
        result.analysis       # → "temperature"
        result.dictionary_text
    """

    def __init__(self, settings: Optional[ConverterSettings] = None) -> None:
        self.settings = settings or ConverterSettings()
        self._classifier = _Classifier()

        if self.settings.species_database is not None:
            self._database = SpeciesDatabase.from_xml(self.settings.species_database)
        else:
            self._database = SpeciesDatabase()

        self._species: List[str] = list(self.settings.mechanism_species)
        if not self._species and (self.settings.kinetics_folder / "kinetics.xml").is_file():
            self._species = read_mechanism_species(self.settings.kinetics_folder)
        if not self._species:
            logger.warning("No kinetic mechanism species available: species names will not be checked")

        self._renderers = {
            "IDT": self._render_ignition_delay,
            "JSR": self._render_jet_stirred_reactor,
            "LBV": self._render_laminar_burning_velocity,
            "BSF": self._render_burner_stabilized_flame,
            "CTP": self._render_concentration_time_profile,
            "OC":  self._render_outlet_concentration,
        }

    @property
    def mechanism_species(self) -> List[str]:
        return list(self._species)

    # ── Public API ─────────────────────────────────────────────────────────

    def convert(
        self,
        source: Union[str, Path, Sequence[Union[str, Path]]],
        *,
        write: bool = False,
    ) -> Union[ConversionResult, List[ConversionResult]]:
        if isinstance(source, (str, Path)):
            return self.convert_one(source, write=write)
        return [self.convert_one(s, write=write) for s in source]

    def convert_one(self, file_name: Union[str, Path], *, write: bool = False) -> ConversionResult:
        logger.info("Converting %s", file_name)
        record = ExperimentRecord.from_file(file_name)
        result = self.convert_record(record)
        if write:
            self.write(result)
        return result

    def convert_xml(self, text: str, file_name: str = "experiment.xml") -> ConversionResult:
        return self.convert_record(ExperimentRecord.from_string(text, file_name))

    def convert_record(self, record: ExperimentRecord) -> ConversionResult:
        try:
            exp = self._classify(record)
            writer = _DictionaryWriter()
            writer.lines(DICTIONARY_BANNER)
            writer.lines([""])
            writer.lines(self._metadata_lines(record))
            writer.lines([""])
            additional, reactor_type, n_sim = self._renderers[exp.key](exp, writer)
        except ConversionError as exc:
            logger.error("Conversion failed | file: %s | experiment type: %s | %s",
                         record.file_name, record.experiment_type, exc)
            raise

        for w in exp.warnings:
            logger.warning("%s: %s", record.file_name, w)

        return ConversionResult(
            file_name           = record.file_name,
            experiment_type     = record.experiment_type,
            apparatus_kind      = exp.kind,
            experiment_key      = exp.key,
            rule_id             = exp.rule["id"],
            analysis            = exp.rule["then"]["analysis"],
            constant_quantities = [n for n, s in COMMON_PROPERTIES.items() if exp.flags[s]],
            variable_quantities = [DATAGROUP_COMPOSITION if s == "X" else SYMBOL_QUANTITY[s]
                                   for s in exp.rule["then"]["read"]],
            reactor             = exp.model["dictionary"],
            reactor_type        = reactor_type,
            n_simulations       = n_sim,
            dictionary_text     = writer.text(),
            additional_files    = additional,
            warnings            = exp.warnings,
        )

    def convert_many(self, files: Sequence[Union[str, Path]], *,
                     write: bool = False) -> List[ConversionResult]:
        """Convert every file; failures are reported in ``result.error``."""
        results: List[ConversionResult] = []
        for f in files:
            try:
                results.append(self.convert_one(f, write=write))
            except ConversionError as exc:
                results.append(ConversionResult(file_name=Path(f).name, error=str(exc)))
        n_ok = sum(1 for r in results if r.ok)
        logger.info("Converted %d of %d files", n_ok, len(results))
        return results

    def write(self, result: ConversionResult) -> Path:
        """Write ``<output>/<stem>/<stem>.dic`` plus additional files."""
        stem = Path(result.file_name).stem
        folder = self.settings.output_folder / stem
        folder.mkdir(parents=True, exist_ok=True)
        path = folder / f"{stem}.dic"
        path.write_text(result.dictionary_text)
        for name, content in result.additional_files.items():
            (folder / name).write_text(content)
        result.output_path = str(path)
        logger.info("Written %s", path)
        return path

    # ── Classification ─────────────────────────────────────────────────────

    def _classify(self, record: ExperimentRecord) -> _Experiment:
        exp_def = EXPERIMENT_TYPES.get(record.experiment_type)
        if exp_def is None:
            raise UnsupportedExperimentError(
                f"Unknown experiment type: {record.experiment_type}. Available: "
                + " | ".join(EXPERIMENT_TYPES))
        key = exp_def["key"]

        kind = record.apparatus_kind
        if kind not in exp_def["kinds"]:
            raise ClassificationError(
                f"Unknown kind: {kind}. Available: {' | '.join(exp_def['kinds'])}")
        if "modes" in exp_def:
            mode = record.apparatus_mode or exp_def["mode_default"]
            if mode not in exp_def["modes"]:
                raise ClassificationError(
                    f"Unknown mode: {mode}. Available: {' | '.join(exp_def['modes'])}")

        logger.info(" * Reading commonProperties section...")
        flags = record.constant_flags()
        warnings: List[str] = []

        constants: Dict[str, Series] = {}
        compositions: List[Composition] = []
        for name, sym in COMMON_PROPERTIES.items():
            if not flags[sym]:
                continue
            if sym == "X":
                comp = record.read_initial_composition()
                warnings.extend(comp.resolve(self._species, self.settings.case_sensitive, self._database))
                compositions.append(comp)
            else:
                constants[sym] = record.read_constant(name)

        logger.info(" * Checking input data from commonProperties section...")
        rule = self._classifier.apply(key, flags)
        logger.info("   - %s → %s (%s)", record.experiment_type, rule["then"]["analysis"], rule["id"])

        variables: Dict[str, Series] = {}
        for sym in rule["then"]["read"]:
            if sym == "X":
                logger.info(" * Reading dataGroup section (composition)...")
                compositions = record.read_variable_compositions()
                for comp in compositions:
                    warnings.extend(comp.resolve(self._species, self.settings.case_sensitive, self._database))
                if not compositions:
                    raise ClassificationError("No data points found for variable composition")
                continue
            quantity = SYMBOL_QUANTITY[sym]
            logger.info(" * Reading dataGroup section (%s)...", quantity)
            series = record.read_variable(quantity)
            if not series.values:
                raise ClassificationError(f"No data points found for variable {quantity}")
            variables[sym] = series

        model = REACTOR_MODELS.get((key, kind)) or REACTOR_MODELS[(key, "*")]
        return _Experiment(record, key, kind, flags, rule, model, constants, compositions,
                           variables, warnings)

    # ── Rendering helpers ──────────────────────────────────────────────────

    def _metadata_lines(self, record: ExperimentRecord) -> List[str]:
        lines = [
            f"// File name:         {record.file_name}",
            f"// File author:       {record.file_author}",
        ]
        if record.file_doi:
            lines.append(f"// File DOI:          {record.file_doi}")
        lines.append(f"// File version:      {record.file_version[0]}.{record.file_version[1]}")
        lines.append(f"// ReSpecTh version:  {record.respecth_version[0]}.{record.respecth_version[1]}")
        lines.append(f"// Experiment type:   {record.experiment_type}")
        lines.append(f"// Apparatus kind:    {record.apparatus_kind}")
        if record.bibliography.get("preferredKey"):
            lines.append(f"// Reference:         {record.bibliography['preferredKey']}")
        if record.bibliography.get("doi"):
            lines.append(f"// Reference DOI:     {record.bibliography['doi']}")
        return lines

    def _kinetics(self) -> str:
        return Path(self.settings.kinetics_folder_remote).as_posix()

    def _simulation_folder(self, exp: _Experiment) -> str:
        return (Path(self.settings.output_folder_remote) / exp.stem).as_posix()

    def _reactor_head(self, reactor_type: str) -> List[Entry]:
        return [
            ("@KineticsFolder", self._kinetics()),
            ("@Type",           reactor_type),
        ]

    # ── Renderers (one per experiment key) ─────────────────────────────────
    # Each returns (additional files, reactor type, number of simulations).

    def _render_ignition_delay(self, exp: _Experiment, w: _DictionaryWriter):
        record, model = exp.record, exp.model
        logger.info(" * Reading dataGroup section (ignition delay)...")
        idt = record.read_variable("ignition delay")
        if not idt.values:
            raise ClassificationError("No data points found for variable ignition delay")
        ignition = record.read_ignition_type()

        histories = []
        for volume, time in record.read_profiles(VOLUME_HISTORY_LABEL, "volume", "time"):
            t, v, dropped = force_monotonic(time.values, volume.values)
            if dropped:
                exp.warnings.append(f"{dropped} non-monotonic point(s) removed from a volume history")
            histories.append((Series(v, volume.units), Series(t, time.units)))

        reactor_type = model["type_history"] if histories else model["type"]
        end_time = END_TIME_FACTOR * max(idt.values)

        entries = self._reactor_head(reactor_type) + [
            (model["status_key"],   model["status_name"]),
            (model["time_key"],     f"{_fmt(end_time)} {idt.units}"),
            ("@Volume",             IDT_REACTOR_VOLUME),
            ("@OdeParameters",      "ode-parameters"),
            ("@Options",            "output-options"),
            ("@ParametricAnalysis", "parametric-analysis"),
            ("@IgnitionDelayTimes", "ignition-delay-times"),
        ]
        if "dpdt" in exp.constants:
            entries.append(("//@PressureCoefficient", exp.quantity("dpdt")))
        w.block(model["dictionary"], entries)
        w.block(model["status_name"], _mix_status_entries(exp))
        w.block("ode-parameters", _ode_entries())
        w.block("ignition-delay-times",
                _ignition_entries(ignition, exp.kind == "rapid compression machine"))

        additional: Dict[str, str] = {}
        n_points = exp.n_points()
        if not histories:
            w.block("parametric-analysis", _parametric_entries(
                exp.rule["then"]["analysis"],
                *[exp.variables[s] for s in exp.rule["then"]["read"]]))
            n_sim = n_points
        else:
            if len(histories) > n_points:
                raise ClassificationError(
                    f"Number of volume histories ({len(histories)}) exceeds "
                    f"number of data points ({n_points})")
            names = []
            for i, (volume, time) in enumerate(histories):
                name = f"{exp.stem}.{i + 1}.csv"
                names.append(name)
                header = [("temperature", exp.value("T", i), exp.units("T")),
                          ("pressure",    exp.value("P", i), exp.units("P"))]
                additional[name] = _profile_csv(header, "time", time, "volume", volume)
            w.block("parametric-analysis", _parametric_files_entries("temperature-pressure", names))
            n_sim = len(histories)

        w.block("output-options", _output_options_entries(OUTPUT_OPTIONS["IDT"], self._simulation_folder(exp)))
        return additional, reactor_type, n_sim

    def _render_jet_stirred_reactor(self, exp: _Experiment, w: _DictionaryWriter):
        model = exp.model
        (variable,) = exp.rule["then"]["read"]
        w.block(model["dictionary"], self._reactor_head(model["type"]) + [
            (model["status_key"],   model["status_name"]),
            ("@ResidenceTime",      exp.quantity("tau")),
            ("@Volume",             exp.quantity("V")),
            ("@Options",            "output-options"),
            ("@ParametricAnalysis", "parametric-analysis"),
        ])
        w.block(model["status_name"], _mix_status_entries(exp))
        w.block("parametric-analysis",
                _parametric_entries(exp.rule["then"]["analysis"], exp.variables[variable]))
        w.block("output-options", _output_options_entries(OUTPUT_OPTIONS["JSR"], self._simulation_folder(exp)))
        return {}, model["type"], exp.n_points()

    def _render_laminar_burning_velocity(self, exp: _Experiment, w: _DictionaryWriter):
        model = exp.model
        n = exp.n_points()
        streams = [f"{model['status_name']}-{i + 1}" for i in range(n)]
        w.block(model["dictionary"], self._reactor_head(model["type"]) + [
            (model["status_key"], " ".join(streams)),
            ("@InletVelocity",    LBV_INLET_VELOCITY),
            ("@Grid",             "grid"),
            ("@Output",           self._simulation_folder(exp)),
            ("@UseDaeSolver",     "true"),
        ])
        for i, name in enumerate(streams):
            w.block(name, _mix_status_entries(exp, i))
        w.block("grid", [("@Length", GRID_SETTINGS["lengths"]["LBV"])] + GRID_SETTINGS["entries"])
        return {}, model["type"], n

    def _render_burner_stabilized_flame(self, exp: _Experiment, w: _DictionaryWriter):
        record, model = exp.record, exp.model
        logger.info(" * Reading dataGroup section (distance)...")
        x = record.read_variable("distance")
        logger.info(" * Reading dataGroup section (temperature)...")
        t = record.read_variable("temperature")

        fixed_profile = bool(t.values)
        if fixed_profile:
            if len(x) != len(t):
                raise ClassificationError(
                    f"Temperature profile has {len(t)} points but distance has {len(x)}")
            if x.values[0] != 0.0:
                x = Series([0.0] + x.values, x.units)
                t = Series([exp.value("T")] + t.values, t.units)

        entries = self._reactor_head(model["type"]) + [
            (model["status_key"], model["status_name"]),
        ]
        if exp.rule["then"]["analysis"] == "mass-flux":
            entries.append(("@InletMassFlux", exp.quantity("m")))
        else:
            entries.append(("@InletVelocity", exp.quantity("sl")))
        entries += [
            ("@Grid",         "grid"),
            ("@Output",       self._simulation_folder(exp)),
            ("@UseDaeSolver", "true"),
        ]
        if fixed_profile:
            entries.append(("@FixedTemperatureProfile", "T-Profile"))
        w.block(model["dictionary"], entries)
        w.block(model["status_name"], _mix_status_entries(exp))

        length = f"{_fmt(x.values[-1])} {x.units}" if fixed_profile else GRID_SETTINGS["lengths"]["BSF"]
        w.block("grid", [("@Length", length)] + GRID_SETTINGS["entries"])

        if fixed_profile:
            profile: List[Entry] = [
                ("@XVariable", "length"),
                ("@YVariable", "temperature"),
                ("@XUnits",    x.units),
                ("@YUnits",    t.units),
                (None,         "@Profile"),
            ]
            profile += [(None, f"{_fmt(a)} {_fmt(b)}") for a, b in zip(x.values, t.values)]
            profile.append((None, ";"))
            w.block("T-Profile", profile)
        return {}, model["type"], 1

    def _render_concentration_time_profile(self, exp: _Experiment, w: _DictionaryWriter):
        record, model = exp.record, exp.model
        logger.info(" * Reading dataGroup section (time)...")
        time = record.read_variable("time")
        if not time.values:
            raise ClassificationError("No data points found for variable time")
        w.block(model["dictionary"], self._reactor_head(model["type"]) + [
            (model["status_key"], model["status_name"]),
            (model["time_key"],   f"{_fmt(time.values[-1])} {time.units}"),
        ] + list(model.get("extra", [])) + [
            ("@Options",          "output-options"),
        ])
        w.block(model["status_name"], _mix_status_entries(exp))
        w.block("output-options", _output_options_entries(OUTPUT_OPTIONS["CTP"], self._simulation_folder(exp)))
        return {}, model["type"], 1

    def _render_outlet_concentration(self, exp: _Experiment, w: _DictionaryWriter):
        model = exp.model
        tau_sym, other = exp.rule["then"]["read"]
        w.block(model["dictionary"], self._reactor_head(model["type"]) + [
            (model["status_key"], model["status_name"]),
            (model["time_key"],   exp.quantity(tau_sym)),
        ] + list(model.get("extra", [])) + [
            ("@Options",            "output-options"),
            ("@ParametricAnalysis", "parametric-analysis"),
        ])
        w.block(model["status_name"], _mix_status_entries(exp))
        w.block("parametric-analysis", _parametric_entries(
            exp.rule["then"]["analysis"], exp.variables[tau_sym], exp.variables[other]))
        w.block("output-options", _output_options_entries(OUTPUT_OPTIONS["OC"], self._simulation_folder(exp)))
        return {}, model["type"], exp.n_points()


# ═══════════════════════════════════════════════════════════════════════════════
#  ZONE C — UTILITIES
# ═══════════════════════════════════════════════════════════════════════════════

def write_report(results: Sequence[ConversionResult], file_name: Union[str, Path]) -> Path:
    """Fixed-width FileName / Status / ErrorType report of a batch conversion."""
    width = 30
    lines = [
        f"{'FileName':<{width + 10}}{'Status':<{width}}ErrorType",
        "=" * 80,
    ]
    for r in results:
        status, error = ("Converted", "None") if r.ok else ("Errors Occurred", r.error)
        lines.append(f"{r.file_name:<{width + 10}}{status:<{width}}{error}")
    path = Path(file_name)
    path.write_text("\n".join(lines) + "\n")
    return path


def to_dataframe(results: List[ConversionResult]):
    """Convert a list of ConversionResult objects to a pandas DataFrame."""
    import pandas as pd
    rows = []
    for r in results:
        rows.append({
            "file_name":        r.file_name,
            "status":           "Converted" if r.ok else "Errors Occurred",
            "error":            r.error,
            "experiment_type":  r.experiment_type,
            "experiment_key":   r.experiment_key,
            "apparatus_kind":   r.apparatus_kind,
            "rule_id":          r.rule_id,
            "analysis":         r.analysis,
            "reactor":          r.reactor,
            "reactor_type":     r.reactor_type,
            "n_simulations":    r.n_simulations,
            "constant":         ",".join(r.constant_quantities),
            "variable":         ",".join(r.variable_quantities),
            "n_warnings":       len(r.warnings),
            "n_additional":     len(r.additional_files),
            "output_path":      r.output_path,
        })
    return pd.DataFrame(rows)


def _collect_inputs(path: Path) -> List[Path]:
    if path.is_dir():
        return sorted(p for p in path.iterdir() if p.suffix.lower() == ".xml")
    return [path]


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Convert ReSpecTh experiment XML files into OpenSMOKE++ dictionaries.")
    parser.add_argument("--input", required=True, type=Path,
                        help="ReSpecTh XML file, or folder of XML files")
    parser.add_argument("--output", default=Path("output"), type=Path,
                        help="folder receiving one sub-folder per experiment")
    parser.add_argument("--kinetics", default=Path("kinetics"), type=Path,
                        help="OpenSMOKE++ kinetics folder (kinetics.xml)")
    parser.add_argument("--kinetics-remote", type=Path,
                        help="kinetics folder written in the dictionaries (default: --kinetics)")
    parser.add_argument("--output-remote", type=Path,
                        help="simulation output folder written in the dictionaries (default: --output)")
    parser.add_argument("--species-database", type=Path,
                        help="XML database of species names (CAS / chemName aliases)")
    parser.add_argument("--case-sensitive", action="store_true",
                        help="treat species names as case sensitive")
    parser.add_argument("--report", type=Path,
                        help="write a conversion report to this file")
    parser.add_argument("-v", "--verbose", action="count", default=0)
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose > 0 else logging.INFO,
                        format="%(asctime)s [%(levelname)s] %(message)s")

    if not args.input.exists():
        parser.error(f"input {args.input} does not exist")

    settings = ConverterSettings(
        kinetics_folder=args.kinetics,
        output_folder=args.output,
        kinetics_folder_remote=args.kinetics_remote,
        output_folder_remote=args.output_remote,
        species_database=args.species_database,
        case_sensitive=args.case_sensitive,
    )
    try:
        converter = Respecth2OpenSMOKE(settings)
    except ConversionError as exc:
        logger.error("%s", exc)
        return 2

    results = converter.convert_many(_collect_inputs(args.input), write=True)
    if args.report is not None:
        write_report(results, args.report)
    for r in results:
        if not r.ok:
            print(f"  ⚠  {r.file_name}: {r.error}")
    return 0 if all(r.ok for r in results) else 1


if __name__ == "__main__":
    sys.exit(main())
