"""
Domain Configuration
====================

Declarative definitions for every measurement domain of the redox study.

This module centralizes domain specifications to:
1. Keep the column schemas and level tables in one place
2. Enable batch processing via the runner
3. Document the statistical design of each domain

Each domain is defined as a DomainConfig dict with:
- name: Table name in the bundle (equals the DOMAINS key)
- description: What was measured and how it is analysed
- start, end: Inclusive column range in the wide spreadsheet
- schema: Token roles of the column names (None = no reshape)
- levels: Role (or column, for unreshaped domains) -> ordered (raw, label) pairs
- factor_names: Role -> output factor column
- metric_var: Name of the stacked metric column
- within: Within-subject factors of the analysis
- group_by: Columns that define one model each
- analysis: "rm_anova", "paired" or "descriptive"
- paired_tests: Metric -> "ttest" / "wilcoxon" (paired domains only)
- expected_metrics: Metric tokens in wide-table order
- columns: Column names of an unreshaped domain
"""

from itertools import product
from typing import Dict, Any, List


DomainConfig = Dict[str, Any]


CONDITION_LEVELS = [("con", "Control"), ("ecc", "Oxidative-stress")]

FACTOR_NAMES = {
    "condition": "Condition",
    "timepoint": "Timepoint",
    "limb": "Limb",
    "dose": "Dose",
}


DOMAINS: dict[str, DomainConfig] = {
    # =========================================================================
    # Participant characteristics
    # =========================================================================
    "demographics": {
        "name": "demographics",
        "description": """
        Participant characteristics measured once at inclusion: age, sex,
        anthropometrics and maximal oxygen uptake.

        Reported as mean +/- SD (numeric) and counts (sex); no inference.
        """,
        "start": "Age",
        "end": "VO2max",
        "schema": None,
        "levels": {"Sex": [("m", "Male"), ("f", "Female")]},
        "factor_names": {},
        "metric_var": "Variable",
        "within": [],
        "group_by": [],
        "analysis": "descriptive",
        "columns": ["Age", "Sex", "Height", "Weight", "BMI", "VO2max"],
        "expected_metrics": ["Age", "Height", "Weight", "BMI", "VO2max"],
    },

    # =========================================================================
    # Erythrocyte glycolysis flux
    # =========================================================================
    "glycolysis": {
        "name": "glycolysis",
        "description": """
        Glucose consumption and lactate production of isolated erythrocytes,
        sampled at rest and up to 48 h after the exercise bout.

        Model: Measurement ~ Condition * Timepoint, within participants,
        one model per metric.
        """,
        "start": "glucose_con_rest",
        "end": "lactate_ecc_48h",
        "schema": [".value", "condition", "timepoint"],
        "levels": {
            "condition": CONDITION_LEVELS,
            "timepoint": [
                ("rest", "Baseline"),
                ("post", "Post"),
                ("2h", "2 h"),
                ("24h", "24 h"),
                ("48h", "48 h"),
            ],
        },
        "factor_names": FACTOR_NAMES,
        "metric_var": "Metric",
        "within": ["Condition", "Timepoint"],
        "group_by": ["Metric"],
        "analysis": "rm_anova",
        "expected_metrics": ["glucose", "lactate"],
    },

    # =========================================================================
    # Metabolic enzymes and redox panel
    # =========================================================================
    "enzymes": {
        "name": "enzymes",
        "description": """
        Erythrocyte enzyme activities (glycolysis and pentose-phosphate
        pathway), antioxidant enzymes and oxidative-stress markers at rest,
        immediately post and 24 h after exercise.

        Model: Measurement ~ Condition * Timepoint, within participants,
        one model per molecule; post-hoc contrasts when the interaction is
        significant.
        """,
        "start": "HK_con_rest",
        "end": "NADPH_ecc_24h",
        "schema": [".value", "condition", "timepoint"],
        "levels": {
            "condition": CONDITION_LEVELS,
            "timepoint": [("rest", "Baseline"), ("post", "Post"), ("24h", "24 h")],
        },
        "factor_names": FACTOR_NAMES,
        "metric_var": "Molecule",
        "within": ["Condition", "Timepoint"],
        "group_by": ["Molecule"],
        "analysis": "rm_anova",
        "expected_metrics": [
            "HK", "PFK", "PK", "LDH", "G6PD", "6PGD", "GR", "GPX", "CAT",
            "SOD", "TAC", "TBARS", "PC", "GSH", "GSSG", "GSHratio", "NADPH",
        ],
    },

    # =========================================================================
    # Cardiopulmonary exercise test
    # =========================================================================
    "cpet": {
        "name": "cpet",
        "description": """
        Gas exchange and heart rate averaged over the exercise bout, one value
        per condition.

        Model: paired comparison Control vs Oxidative-stress per metric
        (t-test, Wilcoxon for RER whose differences are skewed).
        """,
        "start": "vo2_con",
        "end": "hr_ecc",
        "schema": [".value", "condition"],
        "levels": {"condition": CONDITION_LEVELS},
        "factor_names": FACTOR_NAMES,
        "metric_var": "Metric",
        "within": ["Condition"],
        "group_by": ["Metric"],
        "analysis": "paired",
        "paired_tests": {"rer": "wilcoxon"},
        "expected_metrics": ["vo2", "vco2", "rer", "ve", "hr"],
    },

    # =========================================================================
    # Isokinetic strength
    # =========================================================================
    "strength": {
        "name": "strength",
        "description": """
        Knee extensor/flexor peak torque, total work and average power at
        60 and 180 deg/s, before and after the exercise bout.

        Model: Measurement ~ Condition * Timepoint, within participants,
        one model per test.
        """,
        "start": "pt60ext_con_rest",
        "end": "ap180flex_ecc_post",
        "schema": [".value", "condition", "timepoint"],
        "levels": {
            "condition": CONDITION_LEVELS,
            "timepoint": [("rest", "Baseline"), ("post", "Post")],
        },
        "factor_names": FACTOR_NAMES,
        "metric_var": "Test",
        "within": ["Condition", "Timepoint"],
        "group_by": ["Test"],
        "analysis": "rm_anova",
        "expected_metrics": [
            "pt60ext", "pt60flex", "pt180ext", "pt180flex",
            "tw60ext", "tw60flex", "tw180ext", "tw180flex",
            "ap180ext", "ap180flex",
        ],
    },

    # =========================================================================
    # Erythrocyte osmotic fragility
    # =========================================================================
    "fragility": {
        "name": "fragility",
        "description": """
        Osmotic fragility curve parameters: NaCl concentration at 50 %
        haemolysis (H50) and transition width.

        Model: Measurement ~ Condition * Timepoint, within participants.
        """,
        "start": "h50_con_rest",
        "end": "width_ecc_24h",
        "schema": [".value", "condition", "timepoint"],
        "levels": {
            "condition": CONDITION_LEVELS,
            "timepoint": [("rest", "Baseline"), ("post", "Post"), ("24h", "24 h")],
        },
        "factor_names": FACTOR_NAMES,
        "metric_var": "Metric",
        "within": ["Condition", "Timepoint"],
        "group_by": ["Metric"],
        "analysis": "rm_anova",
        "expected_metrics": ["h50", "width"],
    },

    # =========================================================================
    # Near-infrared spectroscopy
    # =========================================================================
    "nirs": {
        "name": "nirs",
        "description": """
        Muscle oxygenation of the vastus lateralis of both legs. Column names
        carry a leading device token ("nirs") that is parsed and dropped.

        Model: Measurement ~ Condition * Timepoint, within participants,
        one model per metric and limb.
        """,
        "start": "nirs_tsi_con_rest_dom",
        "end": "nirs_thb_ecc_post_nondom",
        "schema": ["dummy", ".value", "condition", "timepoint", "limb"],
        "dummy_token": "nirs",
        "levels": {
            "condition": CONDITION_LEVELS,
            "timepoint": [("rest", "Baseline"), ("post", "Post")],
            "limb": [("dom", "Dominant"), ("nondom", "Non-dominant")],
        },
        "factor_names": FACTOR_NAMES,
        "metric_var": "Metric",
        "within": ["Condition", "Timepoint"],
        "group_by": ["Metric", "Limb"],
        "analysis": "rm_anova",
        "expected_metrics": ["tsi", "o2hb", "hhb", "thb"],
    },

    # =========================================================================
    # Ex-vivo dose response
    # =========================================================================
    "exvivo": {
        "name": "exvivo",
        "description": """
        Erythrocytes drawn after each condition and incubated with increasing
        oxidant doses; lipid peroxidation and glutathione measured per dose.

        Model: Measurement ~ Condition * Dose, within participants.
        """,
        "start": "tbars_con_0",
        "end": "gsh_ecc_200",
        "schema": [".value", "condition", "dose"],
        "levels": {
            "condition": CONDITION_LEVELS,
            "dose": [("0", "0 uM"), ("50", "50 uM"), ("100", "100 uM"), ("200", "200 uM")],
        },
        "factor_names": FACTOR_NAMES,
        "metric_var": "Metric",
        "within": ["Condition", "Dose"],
        "group_by": ["Metric"],
        "analysis": "rm_anova",
        "expected_metrics": ["tbars", "gsh"],
    },
}


def get_domain(name: str) -> DomainConfig:
    """Get configuration for a specific domain."""
    if name not in DOMAINS:
        raise ValueError(f"Unknown domain: {name}. Available: {list(DOMAINS.keys())}")
    return DOMAINS[name]


def list_domains() -> List[str]:
    """List all available domain names."""
    return list(DOMAINS.keys())


def labels_for(name: str) -> Dict[str, List[str]]:
    """
    Ordered display labels of every factor of a domain.

    Returns a fresh dict on each call, keyed by output factor column
    (e.g. {"Condition": ["Control", "Oxidative-stress"], "Timepoint": [...]}).
    """
    config = get_domain(name)
    factor_names = config.get("factor_names", {})
    labels = {}
    for role, levels in config.get("levels", {}).items():
        labels[factor_names.get(role, role)] = [label for _, label in levels]
    return labels


def domain_columns(name: str) -> List[str]:
    """
    Column names a complete wide spreadsheet holds for a domain, in order.

    Tokens vary slowest from the left of the schema, so the first and last
    names equal the configured ``start`` and ``end``.
    """
    config = get_domain(name)
    schema = config.get("schema")
    if not schema:
        return list(config["columns"])
    token_sets = []
    for role in schema:
        if role == ".value":
            token_sets.append(list(config["expected_metrics"]))
        elif role == "dummy":
            token_sets.append([config["dummy_token"]])
        else:
            token_sets.append([raw for raw, _ in config["levels"][role]])
    return [config.get("sep", "_").join(tokens) for tokens in product(*token_sets)]
