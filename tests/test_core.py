"""Tests for the mapping pipeline."""

import logging

import numpy as np
import pytest

from lesion_analytics import METHOD_REGISTRY, run_mapping
from lesion_analytics.core import make_test, method_description
from lesion_analytics.exceptions import (
    ConfigurationError,
    InputShapeError,
    NumericAnomalyWarning,
)

from conftest import CRITICAL, N_SUBJECTS, OTHER, SHAPE


@pytest.fixture
def two_group_matrix():
    """20 subjects x 5 identical columns, subjects 1-10 lesioned."""
    matrix = np.zeros((20, 5))
    matrix[:10] = 1
    return matrix


def test_identical_columns_all_significant(two_group_matrix, rng):
    # lesioned subjects hold the low scores so the statistic is positive;
    # jitter keeps the within-group variance above zero
    behavior = np.r_[np.full(10, 1.0), np.full(10, 5.0)] + rng.normal(0, 0.1, 20)
    result = run_mapping(two_group_matrix, behavior, method="ttest", correction="fdr")
    assert result.n_significant == 5
    assert np.all(result.statistic > 10)
    assert np.all(result.pvalue < 1e-6)
    assert result.patch_info is None


@pytest.mark.parametrize("lesioned_score, spared_score", [(1.0, 5.0), (5.0, 1.0)])
def test_zero_variance_groups_flagged(two_group_matrix, lesioned_score, spared_score):
    behavior = np.r_[np.full(10, lesioned_score), np.full(10, spared_score)]
    with pytest.warns(NumericAnomalyWarning):
        result = run_mapping(two_group_matrix, behavior, method="ttest", correction="fdr")
    assert result.anomalies
    assert result.n_significant == 0
    assert np.all(np.isfinite(result.statistic))


def test_behavior_length_mismatch(two_group_matrix):
    with pytest.raises(InputShapeError, match="Different lengths"):
        run_mapping(two_group_matrix, np.ones(19), method="ttest")


def test_chisq_requires_binary(two_group_matrix):
    behavior = np.tile([0.0, 1.0, 2.0], 7)[:20]
    with pytest.raises(InputShapeError, match="binary"):
        run_mapping(two_group_matrix, behavior, method="chisq", correction="none")


def test_chisq_run_reports_no_anomalies(rng):
    matrix = (rng.random((40, 30)) < 0.5).astype(float)
    matrix[:, 0] = np.arange(40) < 20
    outcome = (np.arange(40) % 2).astype(float)
    result = run_mapping(matrix, outcome, method="chisq", correction="none")
    assert result.raw.pvalue[0] == pytest.approx(1.0)
    assert result.anomalies == []
    assert np.all(np.isfinite(result.zscore))


def test_nested_list_matrix_matches_array(rng):
    matrix = (rng.random((40, 6)) < 0.3).astype(float)
    matrix[:, 5] = np.arange(40) < 2  # below the default volume mask threshold
    behavior = rng.normal(0, 1, 40)
    from_array = run_mapping(matrix, behavior, method="regresfast", correction="none")
    from_list = run_mapping(matrix.tolist(), behavior, method="regresfast", correction="none")
    assert from_array.n_columns == 6
    assert from_list.n_columns == 6
    assert from_list.patch_info is None
    np.testing.assert_allclose(from_list.statistic, from_array.statistic)


def test_cluster_correction_needs_permutations(lesion_set, behavior):
    with pytest.raises(ConfigurationError):
        run_mapping(lesion_set, behavior, method="regresfast", correction="clusterPerm",
                    n_permutations=0)


@pytest.mark.parametrize("kwargs", [
    {"method": "ttest", "covariates": np.ones((N_SUBJECTS, 1))},
    {"method": "nonexistent"},
    {"method": "ttest", "correction": "FWERperm"},
    {"method": "BM", "correction": "FWERperm"},
    {"method": "ttest", "correction": "clusterPerm"},
    {"method": "ttest", "correct_by_lesion_size": "voxel"},
    {"method": "chisq", "correct_by_lesion_size": "behavior"},
    {"method": "ttest", "correction": "sidak-ish"},
    {"method": "ttest", "alternative": "sideways"},
    {"method": "ttest", "p_threshold": 1.5},
    {"method": "ttest", "sparseness": 0.1},
])
def test_configuration_errors(lesion_set, behavior, kwargs):
    with pytest.raises(ConfigurationError):
        run_mapping(lesion_set, behavior, **kwargs)


def test_cluster_correction_needs_spatial_information(rng):
    matrix = (rng.random((30, 4)) < 0.5).astype(float)
    with pytest.raises(ConfigurationError, match="spatial"):
        run_mapping(matrix, rng.normal(0, 1, 30), method="regresfast",
                    correction="clusterPerm", n_permutations=10)


def test_binary_check(rng):
    matrix = rng.random((30, 4))
    behavior = rng.normal(0, 1, 30)
    with pytest.raises(InputShapeError):
        run_mapping(matrix, behavior, method="regresfast", binary_check=True)
    result = run_mapping(matrix, behavior, method="regresfast", correction="none")
    assert result.n_columns == 4


def test_make_test_passes_shared_settings():
    test = make_test("BM", alternative="two.sided", seed=3, n_permutations=500)
    assert test.alternative == "two-sided"
    assert test.name == "BM"
    welch = make_test("welch", var_equal=False)
    assert welch.name == "welch"
    with pytest.raises(ConfigurationError):
        make_test("ttest", sparseness=0.1)


def test_every_method_has_description():
    for name in METHOD_REGISTRY:
        assert method_description(name)


def test_ttest_volumes_find_critical_region(lesion_set, behavior):
    result = run_mapping(lesion_set, behavior, method="ttest", correction="fdr")
    assert result.n_columns == 2
    assert result.patch_info.n_voxels == 26
    assert result.statistic[0] > 0
    assert result.statistic[1] == 0
    assert result.raw.statistic[1] == pytest.approx(0.0, abs=1e-8)

    volume = result.image().get_fdata()
    assert volume.shape == SHAPE
    assert np.all(volume[CRITICAL] > 0)
    assert np.all(volume[OTHER] == 0)


def test_brunner_munzel_volumes(lesion_set, behavior):
    result = run_mapping(lesion_set, behavior, method="BM", correction="fdr")
    assert result.statistic[0] > 0
    assert result.pvalue[0] < 1e-4
    assert result.raw.pvalue[0] < result.raw.pvalue[1]
    assert result.average.shape == SHAPE


def test_fwer_permutation_volumes(lesion_set, behavior):
    result = run_mapping(lesion_set, behavior, method="BMfast", correction="FWERperm",
                         n_permutations=50, seed=1)
    assert result.null.completed == 50
    assert result.threshold is not None
    assert result.statistic[0] > result.threshold
    assert result.call_info["n_permutations_completed"] == 50


def test_cluster_permutation_volumes(lesion_set, behavior):
    result = run_mapping(lesion_set, behavior, method="regresfast", correction="clusterPerm",
                         n_permutations=200, cluster_p_threshold=0.2, seed=5)
    assert result.null.mode == "cluster"
    assert result.statistic[0] > 0
    assert result.statistic[1] == 0
    assert result.corrected.cluster_info["clusters_kept"] == 1


@pytest.mark.parametrize("method", [
    "ttest", "welch", "BM", "BMfast", "regres", "regresfast", "regresPerm", "chisq", "chisqPerm",
])
def test_patching_does_not_change_results(lesion_set, behavior, method):
    if method.startswith("chisq"):
        behavior = (behavior < behavior.mean()).astype(float)
    kwargs = dict(method=method, correction="none", n_permutations=60, seed=4)
    patched = run_mapping(lesion_set, behavior, **kwargs)
    voxels = run_mapping(lesion_set, behavior, patching=False, **kwargs)
    assert patched.n_columns == 2
    assert voxels.n_columns == 26
    np.testing.assert_allclose(patched.location_values("statistic"),
                               voxels.location_values("statistic"), atol=1e-10)
    np.testing.assert_allclose(patched.location_values("pvalue"),
                               voxels.location_values("pvalue"), atol=1e-12)


def test_patching_does_not_change_fwer_threshold(lesion_set, behavior):
    kwargs = dict(method="regresfast", correction="FWERperm", n_permutations=40, seed=9)
    patched = run_mapping(lesion_set, behavior, **kwargs)
    voxels = run_mapping(lesion_set, behavior, patching=False, **kwargs)
    assert patched.threshold == pytest.approx(voxels.threshold, rel=1e-8)
    np.testing.assert_allclose(patched.location_values("statistic"),
                               voxels.location_values("statistic"), rtol=1e-8)


def test_reuse_patch_info(lesion_set, behavior):
    first = run_mapping(lesion_set, behavior, method="ttest", correction="none")
    second = run_mapping(lesion_set, behavior, method="ttest", correction="none",
                         patch_info=first.patch_info)
    assert second.patch_info is first.patch_info
    np.testing.assert_allclose(first.statistic, second.statistic)


def test_multivariate_mapping(lesion_set, behavior):
    result = run_mapping(lesion_set, behavior, method="sccan", correction="fdr", seed=2)
    assert not result.null_result
    assert result.correction == "none"
    assert not result.patch_info.patched
    assert result.n_columns == 26
    assert result.pvalue is None
    volume = result.image().get_fdata()
    assert volume[CRITICAL].max() == pytest.approx(1.0)
    assert "sparseness" in result.call_info


def test_multivariate_null_result(rng):
    matrix = (rng.random((40, 20)) < 0.3).astype(float)
    result = run_mapping(matrix, rng.normal(0, 1, 40), method="sccan", correction="none",
                         p_threshold=1e-6, seed=2)
    assert result.null_result
    assert result.statistic is None
    assert result.n_significant == 0
    assert "not significant" in result.message


def test_regression_with_covariates(lesion_set, behavior, rng):
    covariates = rng.normal(0, 1, (N_SUBJECTS, 2))
    result = run_mapping(lesion_set, behavior, method="regresfast", correction="FWERperm",
                         covariates=covariates, n_permutations=30, seed=0)
    assert result.call_info["covariates"] == 2
    assert result.statistic[0] > 0


def test_lesion_size_correction(lesion_set, behavior):
    result = run_mapping(lesion_set, behavior, method="BM", correction="none",
                         correct_by_lesion_size="behavior")
    assert result.call_info["correct_by_lesion_size"] == "behavior"
    assert any("regressed out" in line for line in result.log)

    voxel = run_mapping(lesion_set, behavior, method="regresfast", correction="none",
                        correct_by_lesion_size="voxel")
    assert voxel.n_columns == 2
    assert any("sqrt(lesion size)" in line for line in voxel.log)


def test_explicit_lesion_sizes_checked(lesion_set, behavior):
    with pytest.raises(InputShapeError):
        run_mapping(lesion_set, behavior, method="regresfast", correction="none",
                    correct_by_lesion_size="voxel", lesion_size=np.ones(3))


def test_flip_sign(lesion_set, behavior):
    result = run_mapping(lesion_set, behavior, method="ttest", correction="fdr", flip_sign=True)
    assert result.statistic[0] < 0
    assert result.raw.statistic[0] > 0


def test_explicit_mask(lesion_set, behavior, critical_mask):
    result = run_mapping(lesion_set, behavior, method="ttest", correction="none",
                         mask=critical_mask)
    assert result.n_columns == 1
    assert result.patch_info.n_voxels == 18


def test_log_is_captured(lesion_set, behavior):
    result = run_mapping(lesion_set, behavior, method="ttest", correction="fdr")
    assert any("Running ttest" in line for line in result.log)
    # records from the patch builder propagate to the package logger
    assert any("patches" in line for line in result.log)


def test_injected_logger(lesion_set, behavior):
    logger = logging.getLogger("mapping.test")
    result = run_mapping(lesion_set, behavior, method="ttest", correction="fdr", logger=logger)
    assert any("Running ttest" in line for line in result.log)
    assert logger.level == logging.NOTSET
    assert not logger.handlers


def test_call_info(lesion_set, behavior):
    result = run_mapping(lesion_set, behavior, method="BMfast", correction="bonferroni", seed=4)
    info = result.call_info
    assert info["method"] == "BMfast"
    assert info["n_subjects"] == N_SUBJECTS
    assert info["n_voxels"] == 26
    assert info["alternative"] == "greater"
    assert info["n_significant"] == result.n_significant


def test_result_frame(lesion_set, behavior):
    result = run_mapping(lesion_set, behavior, method="ttest", correction="fdr")
    frame = result.to_frame()
    assert len(frame) == 2
    assert {"statistic", "pvalue", "zscore", "raw_statistic", "n_voxels"} <= set(frame.columns)
    assert frame["n_voxels"].tolist() == [18, 8]


def test_matrix_result_has_no_image(two_group_matrix, rng):
    behavior = np.r_[np.full(10, 1.0), np.full(10, 5.0)] + rng.normal(0, 0.1, 20)
    result = run_mapping(two_group_matrix, behavior, method="ttest", correction="none")
    with pytest.raises(ConfigurationError):
        result.image()
