"""Parametric two-group tests: Student and Welch t-tests per column."""

from __future__ import annotations

import logging

import numpy as np

from .base import (
    StatisticalTest,
    TestResult,
    check_inputs,
    group_counts,
    t_pvalue,
    zscore_from_p,
)

logger = logging.getLogger(__name__)


def _group_moments(
    lesion_matrix: np.ndarray,
    behavior: np.ndarray,
) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """Per-column count, mean and within-group sum of squares in each group."""
    lesioned = (lesion_matrix != 0).astype(float)
    spared = 1.0 - lesioned
    # centre first to limit cancellation in the sum-of-squares form
    y = behavior - behavior.mean()
    y2 = y**2

    n0, n1 = group_counts(lesion_matrix)
    n0 = n0.astype(float)
    n1 = n1.astype(float)

    with np.errstate(divide="ignore", invalid="ignore"):
        mean0 = (y @ spared) / n0
        mean1 = (y @ lesioned) / n1
        ss0 = np.maximum((y2 @ spared) - n0 * mean0**2, 0.0)
        ss1 = np.maximum((y2 @ lesioned) - n1 * mean1**2, 0.0)
    return n0, n1, mean0, mean1, ss0, ss1


def ttest_columns(
    lesion_matrix: np.ndarray,
    behavior: np.ndarray,
    var_equal: bool = True,
    alternative: str = "greater",
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Independent-samples t-test at every column.

    Group 0 holds subjects with a zero value in the column, group 1 the
    lesioned ones; the statistic is ``mean0 - mean1`` over its standard error.

    Returns
    -------
    t : ndarray, shape (n_columns,)
    p : ndarray, shape (n_columns,)
    df : ndarray, shape (n_columns,)
    """
    n0, n1, mean0, mean1, ss0, ss1 = _group_moments(lesion_matrix, behavior)

    with np.errstate(divide="ignore", invalid="ignore"):
        if var_equal:
            # a single-subject group contributes no variance but still counts toward df
            df = n0 + n1 - 2
            pooled = (ss0 + ss1) / df
            se = np.sqrt(pooled * (1.0 / n0 + 1.0 / n1))
        else:
            # undefined (NaN) when either group has a single subject
            a = ss0 / (n0 - 1) / n0
            b = ss1 / (n1 - 1) / n1
            se = np.sqrt(a + b)
            # Welch-Satterthwaite degrees of freedom
            df = (a + b) ** 2 / (a**2 / (n0 - 1) + b**2 / (n1 - 1))
        t = (mean0 - mean1) / se

    p = t_pvalue(t, df, alternative)
    return t, p, df


class TTest(StatisticalTest):
    """Student (``var_equal=True``) or Welch t-test between spared and lesioned subjects.

    Parameters
    ----------
    var_equal : bool
        Assume equal group variances (Student). ``False`` gives Welch's test.
    alternative : str
        ``"greater"`` (default; spared subjects score higher), ``"less"`` or
        ``"two-sided"``.
    """

    supports_fwer = False

    def __init__(self, var_equal: bool = True, alternative: str = "greater"):
        super().__init__(alternative)
        self.var_equal = var_equal
        self.name = "ttest" if var_equal else "welch"

    def run(self, lesion_matrix, behavior, covariates=None) -> TestResult:
        lesion_matrix, behavior, _ = check_inputs(lesion_matrix, behavior)
        t, p, df = ttest_columns(lesion_matrix, behavior, self.var_equal, self.alternative)
        with np.errstate(invalid="ignore"):
            z = zscore_from_p(p, t, self.alternative)
        return TestResult(
            test=self.name,
            statistic=t,
            pvalue=p,
            zscore=z,
            df=df,
            alternative=self.alternative,
        )
