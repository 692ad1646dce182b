"""
Tests for the grouped repeated-measures ANOVA engine.

Validates:
    - Three-participant end-to-end scenario with a zero condition effect
    - Partial-failure isolation across metrics
    - Incomplete designs and repeated observations
    - Greenhouse-Geisser reporting driven by Mauchly's test
"""

import numpy as np
import pandas as pd
import pytest

import redox_stats.rmanova as rmanova
from redox_stats import (
    IncompleteDesign,
    ModelFitFailure,
    failed_fits,
    fit_grouped,
    fit_all_metrics,
    fit_rm_anova,
    get_term,
    is_significant,
    iter_partitions,
    prepare_domain,
    run_posthoc,
    successful_fits,
    summarize_rm_anova_result,
)

WITHIN = ["Condition", "Timepoint"]


def _partition(table, metric):
    data = table["data"]
    return data[data[table["metric_var"]] == metric].copy()


# ═══════════════════════════════════════════════════════════════════════
# End-to-end
# ═══════════════════════════════════════════════════════════════════════


class TestThreeParticipantScenario:

    def test_tidy_rows(self, three_participant_wide, three_participant_config):
        table = prepare_domain(three_participant_wide, three_participant_config)
        assert len(table["data"]) == 3 * 2 * 2 * 1 == 12

    def test_zero_condition_effect(self, three_participant_wide, three_participant_config):
        table = prepare_domain(three_participant_wide, three_participant_config)
        fits = fit_all_metrics(table)

        assert list(fits) == ["GPX"]
        fit = fits["GPX"]
        assert fit["ok"]
        assert fit["n_subjects"] == 3
        assert fit["n_obs"] == 12

        condition = get_term(fit, "Condition")
        assert condition["F"] == pytest.approx(0.0, abs=1e-10)
        assert condition["df1"] == 1
        assert condition["df2"] == 2
        assert condition["p_value"] > 0.05

        timepoint = get_term(fit, "Timepoint")
        assert timepoint["F"] > 0

    def test_no_posthoc_without_interaction(self, three_participant_wide, three_participant_config):
        table = prepare_domain(three_participant_wide, three_participant_config)
        fits = fit_all_metrics(table)
        assert fits["GPX"]["interaction"] == "Condition * Timepoint"
        assert not is_significant(fits["GPX"])
        assert run_posthoc(table["data"], fits, group_by="Molecule") == {}


# ═══════════════════════════════════════════════════════════════════════
# Batch fitting
# ═══════════════════════════════════════════════════════════════════════


class TestPartialFailure:

    def test_one_unbalanced_metric(self, panel):
        wide, config = panel
        wide.loc[4, "m3_ecc_post"] = np.nan
        with pytest.warns(UserWarning, match="Unbalanced"):
            table = prepare_domain(wide, config)

        with pytest.warns(UserWarning, match="Failed to fit model for m3"):
            fits = fit_all_metrics(table)

        assert list(fits) == ["m1", "m2", "m3", "m4", "m5"]
        assert list(successful_fits(fits)) == ["m1", "m2", "m4", "m5"]
        assert list(failed_fits(fits)) == ["m3"]
        failed = fits["m3"]
        assert failed["error_type"] == "IncompleteDesign"
        assert "FAILED" in summarize_rm_anova_result(failed)

    def test_participant_absent_from_one_metric(self, panel):
        wide, config = panel
        table = prepare_domain(wide, config)
        data = table["data"]
        data = data[~((data["Molecule"] == "m3") & (data["Participant"] == "S05"))]

        with pytest.warns(UserWarning, match="Failed to fit model for m3"):
            fits = fit_grouped(data, "Measurement", WITHIN, "Participant", group_by="Molecule")

        assert not fits["m3"]["ok"]
        assert fits["m3"]["error_type"] == "IncompleteDesign"
        assert "S05" in fits["m3"]["error"]
        for key in ("m1", "m2", "m4", "m5"):
            assert fits[key]["ok"]
            assert fits[key]["n_subjects"] == 20

    def test_expected_participants_checked(self, panel):
        wide, config = panel
        part = _partition(prepare_domain(wide, config), "m1")
        part = part[part["Participant"] != "S05"]
        with pytest.raises(IncompleteDesign) as err:
            fit_rm_anova(
                part, "Measurement", WITHIN, "Participant",
                subjects=[f"S{i + 1:02d}" for i in range(20)],
            )
        assert len(err.value.missing) == 2 * 3
        assert all(cell[0] == "S05" for cell in err.value.missing)

    def test_results_keyed_by_group(self, panel):
        wide, config = panel
        table = prepare_domain(wide, config)
        fits = fit_all_metrics(table)
        for key, fit in fits.items():
            assert fit["key"] == key
            assert len(fit["table"]) == 3

    def test_requires_stacked_table(self, panel):
        wide, config = panel
        table = prepare_domain(wide, config, stack=False)
        with pytest.raises(ValueError, match="stacked"):
            fit_all_metrics(table)


class TestIterPartitions:

    def test_scalar_keys_for_single_column(self, panel):
        wide, config = panel
        table = prepare_domain(wide, config)
        keys = [key for key, _ in iter_partitions(table["data"], ["Molecule"])]
        assert keys == ["m1", "m2", "m3", "m4", "m5"]

    def test_tuple_keys_for_several_columns(self, panel):
        wide, config = panel
        table = prepare_domain(wide, config)
        keys = [key for key, _ in iter_partitions(table["data"], ["Molecule", "Condition"])]
        assert keys[0] == ("m1", "Control")
        assert len(keys) == 10


# ═══════════════════════════════════════════════════════════════════════
# Design checks
# ═══════════════════════════════════════════════════════════════════════


class TestDesignChecks:

    def test_absent_row(self, panel):
        wide, config = panel
        part = _partition(prepare_domain(wide, config), "m1").iloc[1:]
        with pytest.raises(IncompleteDesign) as err:
            fit_rm_anova(part, "Measurement", WITHIN, "Participant", key="m1")
        assert err.value.metric == "m1"
        assert err.value.missing == [("S01", "Control", "Baseline")]

    def test_declared_level_without_data(self, panel):
        wide, config = panel
        part = _partition(prepare_domain(wide, config), "m1")
        part["Timepoint"] = part["Timepoint"].cat.add_categories(["48 h"])
        with pytest.raises(IncompleteDesign) as err:
            fit_rm_anova(part, "Measurement", WITHIN, "Participant")
        assert len(err.value.missing) == 20 * 2

    def test_repeated_observation(self, panel):
        wide, config = panel
        part = _partition(prepare_domain(wide, config), "m1")
        part = pd.concat([part, part.iloc[[0]]], ignore_index=True)
        with pytest.raises(ModelFitFailure, match="repeated"):
            fit_rm_anova(part, "Measurement", WITHIN, "Participant")

    def test_unknown_column(self, panel):
        wide, config = panel
        part = _partition(prepare_domain(wide, config), "m1")
        with pytest.raises(ValueError, match="not found"):
            fit_rm_anova(part, "Measurement", ["Condition", "Dose"], "Participant")

    def test_constant_metric(self, three_participant_wide, three_participant_config):
        constant = three_participant_wide.copy()
        constant.iloc[:, 1:] = 5.0
        part = prepare_domain(constant, three_participant_config)["data"]
        with pytest.raises(ModelFitFailure):
            fit_rm_anova(part, "Measurement", WITHIN, "Participant", key="GPX")


# ═══════════════════════════════════════════════════════════════════════
# Sphericity
# ═══════════════════════════════════════════════════════════════════════


class TestSphericity:

    @pytest.fixture
    def part(self, panel):
        wide, config = panel
        return _partition(prepare_domain(wide, config), "m2")

    def test_violation_reports_gg(self, part, monkeypatch):
        monkeypatch.setattr(rmanova, "_sphericity", lambda *a, **k: (False, 0.4, 0.001))
        fit = fit_rm_anova(part, "Measurement", WITHIN, "Participant")

        timepoint = get_term(fit, "Timepoint")
        assert timepoint["sphericity_corrected"]
        assert timepoint["p_value"] == timepoint["p_gg"]
        assert timepoint["mauchly_p"] == 0.001

        # One numerator df: never tested, never corrected
        condition = get_term(fit, "Condition")
        assert not condition["sphericity_corrected"]
        assert condition["p_value"] == condition["p_unc"]
        assert np.isnan(condition["mauchly_w"])

    def test_sphericity_holds(self, part, monkeypatch):
        monkeypatch.setattr(rmanova, "_sphericity", lambda *a, **k: (True, 0.9, 0.6))
        fit = fit_rm_anova(part, "Measurement", WITHIN, "Participant")
        for _, row in fit["table"].iterrows():
            assert not row["sphericity_corrected"]
            assert row["p_value"] == row["p_unc"]

    def test_untestable_sphericity_applies_gg(self, part, monkeypatch):
        def fail(*args, **kwargs):
            raise ValueError("singular")

        monkeypatch.setattr(rmanova, "_sphericity", fail)
        fit = fit_rm_anova(part, "Measurement", WITHIN, "Participant")
        interaction = get_term(fit, "Condition * Timepoint")
        assert interaction["sphericity_corrected"]
        assert any("Sphericity test unavailable" in w for w in fit["warnings"])

    def test_real_mauchly_runs(self, part):
        fit = fit_rm_anova(part, "Measurement", WITHIN, "Participant")
        timepoint = get_term(fit, "Timepoint")
        assert 0 < timepoint["mauchly_w"] <= 1
        assert 0 <= timepoint["mauchly_p"] <= 1

    def test_one_way(self, part):
        control = part[part["Condition"] == "Control"]
        fit = fit_rm_anova(control, "Measurement", "Timepoint", "Participant")
        assert fit["within"] == ["Timepoint"]
        assert list(fit["table"]["term"]) == ["Timepoint"]
        assert fit["interaction"] == "Timepoint"

    def test_real_three_level_design(self, part):
        fit = fit_rm_anova(part, "Measurement", WITHIN, "Participant")
        assert fit["ok"]
        for term in ("Timepoint", "Condition * Timepoint"):
            row = get_term(fit, term)
            assert row["df1"] == 2
            assert np.isfinite(row["p_gg"])
            assert np.isfinite(row["eps"])
            assert np.isfinite(row["mauchly_p"])
            if row["sphericity_corrected"]:
                assert row["p_value"] == row["p_gg"]
            else:
                assert row["p_value"] == row["p_unc"]


# ═══════════════════════════════════════════════════════════════════════
# pingouin output schema
# ═══════════════════════════════════════════════════════════════════════


def _pingouin_table(snake_case):
    aov = pd.DataFrame({
        "Source": ["Condition", "Timepoint", "Condition * Timepoint"],
        "ddof1": [1, 2, 2],
        "ddof2": [19, 38, 38],
        "F": [0.5, 6.0, 4.0],
        "p-unc": [0.49, 0.005, 0.03],
        "p-GG-corr": [0.49, 0.008, 0.04],
        "np2": [0.03, 0.24, 0.17],
        "eps": [1.0, 0.8, 0.85],
    })
    if snake_case:
        aov.columns = [c.replace("-", "_") for c in aov.columns]
    return aov


class TestPingouinSchema:

    @pytest.fixture
    def part(self, panel):
        wide, config = panel
        return _partition(prepare_domain(wide, config), "m1")

    @pytest.mark.parametrize("snake_case", [False, True])
    def test_both_column_styles(self, part, monkeypatch, snake_case):
        monkeypatch.setattr(rmanova.pg, "rm_anova", lambda **k: _pingouin_table(snake_case))
        monkeypatch.setattr(rmanova, "_sphericity", lambda *a, **k: (False, 0.5, 0.01))
        fit = fit_rm_anova(part, "Measurement", WITHIN, "Participant")

        timepoint = get_term(fit, "Timepoint")
        assert timepoint["p_unc"] == 0.005
        assert timepoint["p_gg"] == 0.008
        assert timepoint["p_value"] == 0.008
        assert timepoint["eps"] == 0.8
        assert fit["p_interaction"] == 0.04

    def test_unexpected_columns_fail_the_fit(self, part, monkeypatch):
        broken = _pingouin_table(True).drop(columns=["p_unc"])
        monkeypatch.setattr(rmanova.pg, "rm_anova", lambda **k: broken)
        with pytest.raises(ModelFitFailure, match="KeyError"):
            fit_rm_anova(part, "Measurement", WITHIN, "Participant", key="m1")

    def test_unexpected_columns_isolated_in_batch(self, panel, monkeypatch):
        wide, config = panel
        table = prepare_domain(wide, config)
        broken = _pingouin_table(True).drop(columns=["Source"])
        monkeypatch.setattr(rmanova.pg, "rm_anova", lambda **k: broken)
        with pytest.warns(UserWarning, match="Failed to fit model"):
            fits = fit_all_metrics(table)
        assert list(fits) == ["m1", "m2", "m3", "m4", "m5"]
        assert all(f["error_type"] == "ModelFitFailure" for f in fits.values())
