"""
Tests for post-hoc contrasts and effect sizes.

Validates:
    - Hedges' J exact vs approximate agreement and reference values
    - Multiplicity adjustment (Sidak, Bonferroni)
    - Pairwise cell contrasts and the auxiliary residual SD
    - Significant-contrast filter (idempotent, sorted)
    - Contrasts joined to fits by group key
"""

import numpy as np
import pandas as pd
import pytest

from redox_stats import (
    adjust_pvalues,
    combine_contrasts,
    fit_all_metrics,
    hedges_g,
    hedges_j,
    hedges_j_approx,
    pairwise_contrasts,
    prepare_domain,
    residual_sd,
    run_posthoc,
    significance_stars,
    significant_contrasts,
)

from conftest import make_config

WITHIN = ["Condition", "Timepoint"]


@pytest.fixture
def interaction_table():
    """Metric x responds only in the Oxidative-stress Post cell; y is noise."""
    config, columns = make_config(["x", "y"])
    rng = np.random.default_rng(11)
    n = 20
    baseline = rng.normal(50.0, 8.0, size=n)
    data = {"Participant": [f"S{i + 1:02d}" for i in range(n)]}
    for col in columns:
        shift = 15.0 if col == "x_ecc_post" else 0.0
        data[col] = baseline + shift + rng.normal(0.0, 3.0, size=n)
    return prepare_domain(pd.DataFrame(data), config)


def _partition(table, metric):
    data = table["data"]
    return data[data["Molecule"] == metric].copy()


# ═══════════════════════════════════════════════════════════════════════
# Effect sizes
# ═══════════════════════════════════════════════════════════════════════


class TestHedgesJ:

    def test_reference_values_df19(self):
        assert hedges_j(19) == pytest.approx(0.95990, abs=1e-4)
        assert hedges_j_approx(19) == pytest.approx(0.96)

    def test_exact_and_approx_agree(self):
        for df in range(2, 200):
            assert abs(hedges_j(df) - hedges_j_approx(df)) < 0.01

    def test_tends_to_one(self):
        assert hedges_j(10_000) == pytest.approx(1.0, abs=1e-3)
        assert hedges_j(5) < hedges_j(50) < 1.0

    def test_undefined_for_small_df(self):
        assert np.isnan(hedges_j(1))
        assert np.isnan(hedges_j_approx(0))


class TestHedgesG:

    def test_reference_value(self):
        assert hedges_g(0.5, 20) == pytest.approx(0.480, abs=1e-3)

    def test_approx_reference_value(self):
        assert hedges_g(0.5, 20, exact=False) == pytest.approx(0.48)

    def test_shrinks_towards_zero(self):
        assert abs(hedges_g(-0.8, 10)) < 0.8


class TestSignificanceStars:

    @pytest.mark.parametrize("p,stars", [
        (0.0005, "***"), (0.005, "**"), (0.03, "*"), (0.05, ""), (0.2, ""), (np.nan, ""),
    ])
    def test_thresholds(self, p, stars):
        assert significance_stars(p) == stars


# ═══════════════════════════════════════════════════════════════════════
# Multiplicity
# ═══════════════════════════════════════════════════════════════════════


class TestAdjustPvalues:

    def test_sidak(self):
        adjusted = adjust_pvalues([0.01, 0.04, np.nan], method="sidak")
        assert adjusted[0] == pytest.approx(1 - 0.99 ** 2)
        assert adjusted[1] == pytest.approx(1 - 0.96 ** 2)
        assert np.isnan(adjusted[2])

    def test_bonferroni(self):
        adjusted = adjust_pvalues([0.01, 0.04], method="bonferroni")
        np.testing.assert_allclose(adjusted, [0.02, 0.08])

    def test_unknown_method(self):
        with pytest.raises(ValueError, match="Unknown correction method"):
            adjust_pvalues([0.01], method="holm")


# ═══════════════════════════════════════════════════════════════════════
# Pairwise contrasts
# ═══════════════════════════════════════════════════════════════════════


class TestPairwiseContrasts:

    def test_all_cell_pairs(self, interaction_table):
        part = _partition(interaction_table, "x")
        contrasts = pairwise_contrasts(part, "Measurement", WITHIN, "Participant")
        assert len(contrasts) == 15
        assert contrasts["contrast"].iloc[0] == "Control Baseline - Control Post"
        assert contrasts["contrast"].iloc[-1] == "Oxidative-stress Post - Oxidative-stress 24 h"

    def test_estimate_is_mean_paired_difference(self, interaction_table):
        part = _partition(interaction_table, "x")
        contrasts = pairwise_contrasts(part, "Measurement", WITHIN, "Participant")
        row = contrasts[contrasts["contrast"] == "Control Post - Oxidative-stress Post"].iloc[0]

        cells = part.set_index(["Participant", "Condition", "Timepoint"], append=False)["Measurement"]
        con = cells.xs(("Control", "Post"), level=["Condition", "Timepoint"])
        ecc = cells.xs(("Oxidative-stress", "Post"), level=["Condition", "Timepoint"])
        diff = con - ecc
        assert row["estimate"] == pytest.approx(diff.mean())
        assert row["std_error"] == pytest.approx(diff.std(ddof=1) / np.sqrt(20))
        assert row["df"] == 19
        assert row["estimate"] < 0

    def test_effect_size_columns(self, interaction_table):
        part = _partition(interaction_table, "x")
        contrasts = pairwise_contrasts(part, "Measurement", WITHIN, "Participant")
        sigma, edf = residual_sd(part, "Measurement", WITHIN)
        assert (contrasts["sigma"] == sigma).all()
        assert (contrasts["edf"] == edf).all()
        np.testing.assert_allclose(contrasts["d"], contrasts["estimate"] / sigma)
        np.testing.assert_allclose(contrasts["J"], hedges_j(19))
        np.testing.assert_allclose(contrasts["hedges_g"], contrasts["d"] * contrasts["J"])

    def test_approx_j(self, interaction_table):
        part = _partition(interaction_table, "x")
        contrasts = pairwise_contrasts(part, "Measurement", WITHIN, "Participant", exact_j=False)
        np.testing.assert_allclose(contrasts["J"], 0.96)

    def test_adjusted_not_below_raw(self, interaction_table):
        part = _partition(interaction_table, "x")
        for method in ("sidak", "bonferroni"):
            contrasts = pairwise_contrasts(part, "Measurement", WITHIN, "Participant", method=method)
            assert (contrasts["p_adjusted"] >= contrasts["p_value"] - 1e-12).all()

    def test_residual_sd_is_pooled_cell_sd(self, interaction_table):
        part = _partition(interaction_table, "x")
        sigma, edf = residual_sd(part, "Measurement", WITHIN)
        cell_means = part.groupby(WITHIN, observed=True)["Measurement"].transform("mean")
        ss = ((part["Measurement"] - cell_means) ** 2).sum()
        assert edf == 120 - 6
        assert sigma == pytest.approx(np.sqrt(ss / edf))


class TestSignificantContrasts:

    def test_filter_and_sort(self, interaction_table):
        part = _partition(interaction_table, "x")
        contrasts = pairwise_contrasts(part, "Measurement", WITHIN, "Participant")
        kept = significant_contrasts(contrasts)
        assert len(kept) > 0
        assert (kept["p_adjusted"] < 0.05).all()
        assert kept["contrast"].tolist() == sorted(kept["contrast"])

    def test_idempotent(self, interaction_table):
        part = _partition(interaction_table, "x")
        contrasts = pairwise_contrasts(part, "Measurement", WITHIN, "Participant")
        once = significant_contrasts(contrasts)
        twice = significant_contrasts(once)
        pd.testing.assert_frame_equal(once, twice)

    def test_empty_input(self):
        empty = combine_contrasts({}, ["Molecule"])
        kept = significant_contrasts(empty, by=["Molecule"])
        assert kept.empty
        assert "contrast" in kept.columns


# ═══════════════════════════════════════════════════════════════════════
# Batch post-hoc
# ═══════════════════════════════════════════════════════════════════════


class TestRunPosthoc:

    def test_significant_interaction_gets_contrasts(self, interaction_table):
        fits = fit_all_metrics(interaction_table)
        assert fits["x"]["p_interaction"] < 0.05
        contrasts = run_posthoc(interaction_table["data"], fits, group_by="Molecule")
        assert "x" in contrasts
        assert len(contrasts["x"]) == 15

    def test_joined_by_key_not_position(self, interaction_table):
        fits = fit_all_metrics(interaction_table)
        reordered = dict(reversed(list(fits.items())))
        contrasts = run_posthoc(interaction_table["data"], reordered, group_by="Molecule")
        expected = pairwise_contrasts(
            _partition(interaction_table, "x"), "Measurement", WITHIN, "Participant",
        )
        pd.testing.assert_frame_equal(contrasts["x"], expected)

    def test_failed_fit_skipped(self, interaction_table):
        fits = fit_all_metrics(interaction_table)
        fits["x"] = dict(fits["x"], ok=False)
        contrasts = run_posthoc(interaction_table["data"], fits, group_by="Molecule")
        assert "x" not in contrasts


class TestCombineContrasts:

    def test_scalar_keys(self, interaction_table):
        part = _partition(interaction_table, "x")
        table = pairwise_contrasts(part, "Measurement", WITHIN, "Participant")
        combined = combine_contrasts({"x": table, "z": table}, ["Molecule"])
        assert list(combined.columns[:2]) == ["Molecule", "contrast"]
        assert len(combined) == 30
        assert combined["Molecule"].tolist()[:1] == ["x"]

    def test_tuple_keys(self, interaction_table):
        part = _partition(interaction_table, "x")
        table = pairwise_contrasts(part, "Measurement", WITHIN, "Participant")
        combined = combine_contrasts({("tsi", "Dominant"): table}, ["Metric", "Limb"])
        assert list(combined.columns[:3]) == ["Metric", "Limb", "contrast"]
        assert set(combined["Limb"]) == {"Dominant"}
