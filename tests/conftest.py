"""
Shared fixtures: seeded synthetic spreadsheets laid out like the study file.
"""

import numpy as np
import pandas as pd
import pytest

from study.config import CONDITION_LEVELS, DOMAINS, FACTOR_NAMES, domain_columns


def build_wide(n=20, seed=0, domains=None, id_col="Participant"):
    """Wide table with one row per participant and every configured column."""
    rng = np.random.default_rng(seed)
    domains = domains or list(DOMAINS)
    data = {id_col: [f"P{i + 1:02d}" for i in range(n)]}
    for name in domains:
        if DOMAINS[name]["schema"] is None:
            height = rng.normal(176.0, 6.0, size=n).round(1)
            weight = rng.normal(75.0, 8.0, size=n).round(1)
            data["Age"] = rng.integers(19, 35, size=n)
            data["Sex"] = np.where(np.arange(n) % 3 == 0, "f", "m")
            data["Height"] = height
            data["Weight"] = weight
            data["BMI"] = (weight / (height / 100) ** 2).round(2)
            data["VO2max"] = rng.normal(48.0, 5.0, size=n).round(1)
        else:
            for col in domain_columns(name):
                data[col] = rng.normal(50.0, 5.0, size=n)
    return pd.DataFrame(data)


def make_config(metrics, timepoints=("rest", "post", "24h"), name="panel", metric_var="Molecule"):
    """Condition x timepoint domain config over ``metrics``."""
    tp_labels = {"rest": "Baseline", "post": "Post", "24h": "24 h", "48h": "48 h"}
    columns = [
        f"{m}_{c}_{t}" for m in metrics for c, _ in CONDITION_LEVELS for t in timepoints
    ]
    return {
        "name": name,
        "start": columns[0],
        "end": columns[-1],
        "schema": [".value", "condition", "timepoint"],
        "levels": {
            "condition": CONDITION_LEVELS,
            "timepoint": [(t, tp_labels[t]) for t in timepoints],
        },
        "factor_names": FACTOR_NAMES,
        "metric_var": metric_var,
        "within": ["Condition", "Timepoint"],
        "group_by": [metric_var],
        "analysis": "rm_anova",
        "expected_metrics": list(metrics),
    }, columns


@pytest.fixture
def wide():
    """Full synthetic spreadsheet, 20 participants."""
    return build_wide()


@pytest.fixture
def three_participant_wide():
    """
    One metric, 2 conditions x 2 timepoints, 3 participants.

    Oxidative-stress minus Control differences sum to zero over participants
    and timepoints, so the condition effect is exactly zero.
    """
    return pd.DataFrame({
        "Participant": ["P1", "P2", "P3"],
        "GPX_con_rest": [10.0, 11.0, 9.0],
        "GPX_con_post": [12.0, 15.0, 10.0],
        "GPX_ecc_rest": [11.0, 10.0, 9.0],
        "GPX_ecc_post": [12.0, 16.0, 9.0],
    })


@pytest.fixture
def three_participant_config():
    config, _ = make_config(["GPX"], timepoints=("rest", "post"), name="gpx")
    return config


@pytest.fixture
def panel():
    """Five-metric condition x timepoint panel, 20 participants."""
    metrics = ["m1", "m2", "m3", "m4", "m5"]
    config, columns = make_config(metrics)
    rng = np.random.default_rng(7)
    n = 20
    baseline = rng.normal(100.0, 10.0, size=n)
    data = {"Participant": [f"S{i + 1:02d}" for i in range(n)]}
    for col in columns:
        data[col] = baseline + rng.normal(0.0, 5.0, size=n)
    return pd.DataFrame(data), config
