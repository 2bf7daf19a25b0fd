"""Brunner-Munzel rank test between spared and lesioned subjects.

The Brunner-Munzel (generalized Wilcoxon) test compares the stochastic
ordering of two groups without assuming equal variances. Its t
approximation is unreliable when a group has fewer than
:data:`PERMUTE_N_THRESHOLD` subjects; such columns get a permutation
p-value instead when running the ``BM`` method.

All columns are computed at once: the combined ranks of the behavior are
the same for every column, and within-group ranks follow from one pairwise
comparison matrix.
"""

from __future__ import annotations

import logging

import numpy as np
from scipy import stats

from .base import (
    StatisticalTest,
    TestResult,
    check_inputs,
    directional,
    group_counts,
    t_pvalue,
    zscore_from_p,
)

logger = logging.getLogger(__name__)

# Brunner-Munzel is not valid for groups smaller than this
PERMUTE_N_THRESHOLD = 9

_CHUNK = 2048
_VAR_TOL = 1e-12


def _comparison_matrix(behavior: np.ndarray) -> np.ndarray:
    """C[i, j] = 1 if y_j < y_i, 0.5 if tied (including i == j), else 0."""
    diff = behavior[:, None] - behavior[None, :]
    return (diff > 0).astype(float) + 0.5 * (diff == 0)


def _bm_statistic(
    groups: np.ndarray,
    ranks: np.ndarray,
    comparison: np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    """Brunner-Munzel statistic and df for a (n_subjects, k) block of columns.

    ``groups`` is 1 for lesioned subjects and 0 for spared ones. A positive
    statistic means spared subjects rank higher.
    """
    lesioned = (groups != 0).astype(float)
    spared = 1.0 - lesioned
    n1 = lesioned.sum(axis=0)
    n0 = spared.sum(axis=0)

    with np.errstate(divide="ignore", invalid="ignore"):
        rbar0 = (ranks @ spared) / n0
        rbar1 = (ranks @ lesioned) / n1

        # within-group ranks of every subject for every column
        within0 = comparison @ spared + 0.5
        within1 = comparison @ lesioned + 0.5

        dev0 = ranks[:, None] - within0 - (rbar0 - (n0 + 1) / 2.0)[None, :]
        dev1 = ranks[:, None] - within1 - (rbar1 - (n1 + 1) / 2.0)[None, :]
        s0 = (spared * dev0**2).sum(axis=0) / (n0 - 1)
        s1 = (lesioned * dev1**2).sum(axis=0) / (n1 - 1)
        # complete separation leaves no placement variance; use half a boundary swap
        s0 = np.where(s0 < _VAR_TOL, 0.5 / n0, s0)
        s1 = np.where(s1 < _VAR_TOL, 0.5 / n1, s1)

        v0 = n0 * s0
        v1 = n1 * s1
        statistic = n0 * n1 * (rbar0 - rbar1) / ((n0 + n1) * np.sqrt(v0 + v1))
        df = (v0 + v1) ** 2 / (v0**2 / (n0 - 1) + v1**2 / (n1 - 1))

    return statistic, df


def brunner_munzel_columns(
    lesion_matrix: np.ndarray,
    behavior: np.ndarray,
    alternative: str = "greater",
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Brunner-Munzel statistic, p-value and df for every column.

    Columns where either group has fewer than two subjects get a statistic
    of 0 and a p-value of 1.
    """
    ranks = stats.rankdata(behavior)
    comparison = _comparison_matrix(behavior)
    n_columns = lesion_matrix.shape[1]

    statistic = np.zeros(n_columns)
    df = np.full(n_columns, np.nan)
    for start in range(0, n_columns, _CHUNK):
        block = slice(start, start + _CHUNK)
        statistic[block], df[block] = _bm_statistic(lesion_matrix[:, block], ranks, comparison)

    n0, n1 = group_counts(lesion_matrix)
    untestable = (n0 < 2) | (n1 < 2)
    statistic[untestable] = 0.0
    df[untestable] = np.nan

    with np.errstate(invalid="ignore"):
        pvalue = t_pvalue(statistic, df, alternative)
    pvalue[untestable] = 1.0
    return statistic, pvalue, df


def permuted_pvalues(
    lesion_columns: np.ndarray,
    behavior: np.ndarray,
    observed: np.ndarray,
    n_permutations: int,
    alternative: str,
    rng: np.random.Generator,
) -> np.ndarray:
    """Permutation p-values (add-one estimator) for a subset of columns."""
    ranks = stats.rankdata(behavior)
    comparison = _comparison_matrix(behavior)
    target = directional(observed, alternative)
    exceed = np.ones(lesion_columns.shape[1])

    for _ in range(n_permutations):
        # permuting group labels is equivalent to permuting behavior
        order = rng.permutation(lesion_columns.shape[0])
        perm_stat, _ = _bm_statistic(lesion_columns[order], ranks, comparison)
        perm_stat = np.nan_to_num(perm_stat, nan=0.0)
        exceed += directional(perm_stat, alternative) >= target

    return exceed / (n_permutations + 1.0)


class BrunnerMunzelTest(StatisticalTest):
    """Brunner-Munzel test per column.

    Parameters
    ----------
    fast : bool
        ``True`` (``BMfast``) skips the small-group permutation fallback and
        allows permutation-based FWER thresholding.
    permute_n_threshold : int
        Columns whose smaller group has fewer subjects get permutation p-values.
    n_permutations_voxel : int
        Permutations used for each small-group column.
    alternative : str
        ``"greater"``, ``"less"`` or ``"two-sided"``.
    seed : int, optional
        Seed of the small-group permutations.
    """

    def __init__(
        self,
        fast: bool = False,
        permute_n_threshold: int = PERMUTE_N_THRESHOLD,
        n_permutations_voxel: int = 20000,
        alternative: str = "greater",
        seed: int | None = None,
    ):
        super().__init__(alternative)
        self.fast = fast
        self.name = "BMfast" if fast else "BM"
        self.supports_fwer = fast
        self.permute_n_threshold = permute_n_threshold
        self.n_permutations_voxel = n_permutations_voxel
        self.seed = seed

    def run(self, lesion_matrix, behavior, covariates=None) -> TestResult:
        lesion_matrix, behavior, _ = check_inputs(lesion_matrix, behavior)
        statistic, pvalue, df = brunner_munzel_columns(lesion_matrix, behavior, self.alternative)

        extras = {}
        if not self.fast and self.n_permutations_voxel > 0:
            n0, n1 = group_counts(lesion_matrix)
            small = (np.minimum(n0, n1) < self.permute_n_threshold) & (np.minimum(n0, n1) >= 2)
            if small.any():
                logger.info(
                    "Permutation p-values for %d columns with groups < %d subjects (%d permutations)",
                    int(small.sum()), self.permute_n_threshold, self.n_permutations_voxel,
                )
                rng = np.random.default_rng(self.seed)
                pvalue[small] = permuted_pvalues(
                    lesion_matrix[:, small],
                    behavior,
                    statistic[small],
                    self.n_permutations_voxel,
                    self.alternative,
                    rng,
                )
            extras["permuted_columns"] = small

        with np.errstate(invalid="ignore", divide="ignore"):
            zscore = zscore_from_p(pvalue, statistic, self.alternative)
        return TestResult(
            test=self.name,
            statistic=statistic,
            pvalue=pvalue,
            zscore=zscore,
            df=df,
            alternative=self.alternative,
            extras=extras,
        )
