"""Tests for the permutation engine and null distributions."""

import numpy as np
import pytest

from lesion_analytics.exceptions import ConfigurationError
from lesion_analytics.stats import (
    BrunnerMunzelTest,
    NullDistribution,
    PermutationEngine,
    RegressionTest,
    TTest,
)
from lesion_analytics.stats.permutation import peak_statistic


@pytest.fixture
def null_data(rng):
    matrix = (rng.random((40, 25)) < 0.3).astype(float)
    behavior = rng.normal(0, 1, 40)
    return matrix, behavior


def test_zero_permutations_rejected():
    with pytest.raises(ConfigurationError):
        PermutationEngine(0, "fwer")
    with pytest.raises(ConfigurationError):
        PermutationEngine(-5, "cluster")


def test_unknown_mode_rejected():
    with pytest.raises(ConfigurationError):
        PermutationEngine(10, "tfce")


def test_unsupported_test_rejected(null_data):
    matrix, behavior = null_data
    engine = PermutationEngine(10, "fwer")
    with pytest.raises(ConfigurationError):
        engine.run(matrix, behavior, TTest())
    cluster = PermutationEngine(10, "cluster")
    with pytest.raises(ConfigurationError):
        cluster.run(matrix, behavior, BrunnerMunzelTest(fast=True))
    with pytest.raises(ConfigurationError):
        cluster.run(matrix, behavior, RegressionTest("regresfast"))  # no cluster sizer


def test_seeded_runs_are_identical(null_data):
    matrix, behavior = null_data
    test = RegressionTest("regresfast")
    a = PermutationEngine(50, "fwer", seed=4).run(matrix, behavior, test)
    b = PermutationEngine(50, "fwer", seed=4).run(matrix, behavior, test)
    c = PermutationEngine(50, "fwer", seed=5).run(matrix, behavior, test)
    np.testing.assert_array_equal(a.values, b.values)
    assert not np.array_equal(a.values, c.values)
    assert a.completed == 50
    assert not a.partial


def test_inputs_not_mutated(null_data):
    matrix, behavior = null_data
    before = behavior.copy()
    PermutationEngine(20, "fwer", seed=1).run(matrix, behavior, BrunnerMunzelTest(fast=True))
    np.testing.assert_array_equal(behavior, before)


def test_thresholds_converge(null_data):
    matrix, behavior = null_data
    test = RegressionTest("regresfast")
    thresholds = [
        PermutationEngine(400, "fwer", seed=s).run(matrix, behavior, test).threshold(0.05)
        for s in (1, 2)
    ]
    # 95th percentile of the max t over 25 columns
    assert 2.0 < thresholds[0] < 4.5
    assert abs(thresholds[0] - thresholds[1]) < 0.6


def test_peak_rank_lowers_threshold(null_data):
    matrix, behavior = null_data
    test = BrunnerMunzelTest(fast=True)
    first = PermutationEngine(100, "fwer", seed=3).run(matrix, behavior, test)
    second = PermutationEngine(100, "fwer", peak_rank=2, seed=3).run(matrix, behavior, test)
    assert np.all(second.values <= first.values)


def test_peak_statistic_directions():
    stat = np.array([1.0, -3.0, 2.0, np.nan])
    assert peak_statistic(stat, "greater") == 2.0
    assert peak_statistic(stat, "less") == 3.0
    assert peak_statistic(stat, "two-sided") == 3.0
    assert peak_statistic(stat, "greater", rank=2) == 1.0


def test_early_stop(null_data):
    matrix, behavior = null_data
    calls = []

    def should_stop():
        calls.append(1)
        return len(calls) > 5

    null = PermutationEngine(100, "fwer", seed=0, should_stop=should_stop).run(
        matrix, behavior, RegressionTest("regresfast"),
    )
    assert null.completed == 5
    assert null.n_requested == 100
    assert null.partial


def test_freedman_lane_with_covariates(null_data, rng):
    matrix, behavior = null_data
    covariates = rng.normal(0, 1, (40, 1))
    behavior = behavior + 3.0 * covariates[:, 0]
    null = PermutationEngine(30, "fwer", seed=0).run(
        matrix, behavior, RegressionTest("regresfast"), covariates=covariates,
    )
    assert null.completed == 30
    assert np.all(np.isfinite(null.values))


def test_cluster_mode_records_sizes(null_data):
    matrix, behavior = null_data
    seen = []

    def sizer(surviving):
        seen.append(surviving.copy())
        return int(surviving.sum())

    null = PermutationEngine(20, "cluster", cluster_voxel_threshold=0.5, seed=0).run(
        matrix, behavior, RegressionTest("regresfast"), cluster_sizer=sizer,
    )
    assert len(seen) == 20
    assert seen[0].dtype == bool and seen[0].shape == (25,)
    np.testing.assert_array_equal(null.values, [s.sum() for s in seen])


def test_null_threshold_is_linear_quantile():
    null = NullDistribution(values=np.arange(100.0), mode="fwer", n_requested=100)
    assert null.threshold(0.05) == pytest.approx(94.05)
    assert null.threshold(0.05) == pytest.approx(np.quantile(np.arange(100.0), 0.95))


def test_empty_null_threshold():
    null = NullDistribution(values=np.array([]), mode="fwer", n_requested=10)
    with pytest.raises(ConfigurationError):
        null.threshold(0.05)


def test_merge_null_slices():
    a = NullDistribution(values=np.array([1.0, 2.0]), mode="fwer", n_requested=2)
    b = NullDistribution(values=np.array([3.0]), mode="fwer", n_requested=1)
    merged = a.merge(b)
    np.testing.assert_array_equal(merged.values, [1.0, 2.0, 3.0])
    assert merged.n_requested == 3
    with pytest.raises(ConfigurationError):
        a.merge(NullDistribution(values=np.array([1.0]), mode="cluster"))
