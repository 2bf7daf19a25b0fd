"""Tests for p-value adjustment and permutation-based thresholding."""

import numpy as np
import pytest

from lesion_analytics.exceptions import ConfigurationError, NumericAnomalyWarning
from lesion_analytics.stats import (
    PADJUST_METHODS,
    NullDistribution,
    TestResult,
    adjust_pvalues,
    apply_correction,
)


def _result(statistic, pvalue=None, zscore=None, test="ttest"):
    return TestResult(
        test=test,
        statistic=np.asarray(statistic, dtype=float),
        pvalue=None if pvalue is None else np.asarray(pvalue, dtype=float),
        zscore=None if zscore is None else np.asarray(zscore, dtype=float),
    )


@pytest.mark.parametrize("method", [m for m in PADJUST_METHODS if m != "none"])
def test_adjusted_pvalues_not_below_raw(method, rng):
    raw = rng.uniform(0, 0.2, 30)
    adjusted = adjust_pvalues(raw, method)
    assert np.all(adjusted >= raw - 1e-12)
    assert np.all(adjusted <= 1.0)
    # order preserved
    order = np.argsort(raw)
    assert np.all(np.diff(adjusted[order]) >= -1e-12)


def test_fdr_alias_and_none():
    raw = np.array([0.01, 0.02, 0.03, 0.5])
    np.testing.assert_allclose(adjust_pvalues(raw, "fdr"), adjust_pvalues(raw, "BH"))
    np.testing.assert_allclose(adjust_pvalues(raw, "fdr"), [0.04, 0.04, 0.04, 0.5])
    np.testing.assert_array_equal(adjust_pvalues(raw, "none"), raw)
    np.testing.assert_allclose(adjust_pvalues(raw, "bonferroni"), [0.04, 0.08, 0.12, 1.0])


def test_adjust_keeps_nan():
    adjusted = adjust_pvalues(np.array([0.01, np.nan, 0.02]), "bonferroni")
    assert np.isnan(adjusted[1])
    np.testing.assert_allclose(adjusted[[0, 2]], [0.02, 0.04])


def test_unknown_adjustment():
    with pytest.raises(ConfigurationError):
        adjust_pvalues(np.array([0.1]), "sidak-ish")
    with pytest.raises(ConfigurationError):
        apply_correction(_result([1.0], [0.1]), "tfce")


def test_padjust_zeroes_nonsignificant():
    result = _result([4.0, 1.0, 3.0], [0.001, 0.4, 0.01], [3.1, 0.25, 2.3])
    corrected = apply_correction(result, "bonferroni", 0.05)
    np.testing.assert_array_equal(corrected.statistic, [4.0, 0.0, 3.0])
    np.testing.assert_array_equal(corrected.zscore, [3.1, 0.0, 2.3])
    np.testing.assert_allclose(corrected.pvalue, [0.003, 1.0, 0.03])
    assert corrected.n_significant == 2
    # input untouched
    assert result.statistic[1] == 1.0


def test_flip_sign():
    result = _result([4.0, 1.0], [0.001, 0.4], [3.1, 0.25])
    corrected = apply_correction(result, "none", 0.05, flip_sign=True)
    np.testing.assert_array_equal(corrected.statistic, [-4.0, 0.0])
    np.testing.assert_array_equal(corrected.zscore, [-3.1, 0.0])


def test_anomalies_are_zeroed():
    result = _result([np.nan, 5.0, np.inf], [np.nan, 0.001, 0.0], [np.nan, 3.0, 8.0])
    with pytest.warns(NumericAnomalyWarning):
        corrected = apply_correction(result, "none", 0.05)
    np.testing.assert_array_equal(corrected.statistic, [0.0, 5.0, 0.0])
    assert corrected.pvalue[0] == 1.0
    fields = {entry["field"] for entry in corrected.anomalies}
    assert "statistic" in fields
    statistic_entry = next(e for e in corrected.anomalies if e["field"] == "statistic")
    assert statistic_entry["columns"] == [0, 2]


def test_no_pvalues_requires_none():
    result = _result([0.2, 1.0, 0.0])
    corrected = apply_correction(result, "none")
    np.testing.assert_array_equal(corrected.statistic, [0.2, 1.0, 0.0])
    assert corrected.pvalue is None
    with pytest.raises(ConfigurationError):
        apply_correction(result, "fdr")


def test_fwer_threshold():
    null = NullDistribution(values=np.arange(100.0), mode="fwer", n_requested=100)
    result = _result([99.5, 94.0, 94.1, -120.0], [0.001, 0.01, 0.01, 0.99], [3.0, 2.3, 2.3, -2.3])
    corrected = apply_correction(result, "FWERperm", 0.05, null=null)
    assert corrected.threshold == pytest.approx(94.05)
    np.testing.assert_array_equal(corrected.statistic, [99.5, 0.0, 94.1, 0.0])
    # share of null peaks at least as large, add-one
    assert corrected.pvalue[0] == pytest.approx(1 / 101)
    assert corrected.pvalue[2] == pytest.approx(6 / 101)
    assert corrected.null is null


def test_fwer_two_sided_uses_magnitude():
    null = NullDistribution(values=np.arange(100.0), mode="fwer", n_requested=100)
    result = TestResult(
        test="BMfast",
        statistic=np.array([99.5, -99.5]),
        pvalue=np.array([0.001, 0.001]),
        alternative="two-sided",
    )
    corrected = apply_correction(result, "FWERperm", 0.05, null=null)
    np.testing.assert_array_equal(corrected.statistic, [99.5, -99.5])


def test_fwer_needs_null():
    with pytest.raises(ConfigurationError):
        apply_correction(_result([1.0], [0.1]), "FWERperm")


def test_cluster_correction():
    null = NullDistribution(values=np.array([1.0, 2.0, 3.0, 4.0, 5.0]), mode="cluster", n_requested=5)
    result = _result([5.0, 4.0, 0.5, 3.0], [0.001, 0.002, 0.5, 0.01], [3.0, 2.9, 0.0, 2.3])
    calls = {}

    def cluster_filter(surviving, min_size):
        calls["surviving"] = surviving.copy()
        calls["min_size"] = min_size
        # columns 0 and 1 form one large cluster, column 3 a small one
        return np.array([True, True, False, False]), 1, 1

    corrected = apply_correction(
        result, "clusterPerm", 0.05, null=null, cluster_filter=cluster_filter,
        cluster_p_threshold=0.2,
    )
    np.testing.assert_array_equal(calls["surviving"], [True, True, False, True])
    assert calls["min_size"] == pytest.approx(np.quantile(null.values, 0.8))
    np.testing.assert_array_equal(corrected.statistic, [5.0, 4.0, 0.0, 0.0])
    np.testing.assert_array_equal(corrected.pvalue, [0.001, 0.002, 1.0, 1.0])
    assert corrected.cluster_info == {"clusters_kept": 1, "clusters_dropped": 1}


def test_cluster_correction_needs_filter():
    null = NullDistribution(values=np.array([1.0]), mode="cluster", n_requested=1)
    with pytest.raises(ConfigurationError):
        apply_correction(_result([1.0], [0.01]), "clusterPerm", null=null)


def test_invalid_threshold():
    with pytest.raises(ConfigurationError):
        apply_correction(_result([1.0], [0.01]), "fdr", p_threshold=0.0)
