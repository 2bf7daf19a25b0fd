"""Chi-square test between lesion status and a binary behavioral outcome."""

from __future__ import annotations

import logging

import numpy as np
from scipy import stats

from ..exceptions import InputShapeError
from .base import StatisticalTest, TestResult, check_inputs, zscore_from_p

logger = logging.getLogger(__name__)


def binarize_behavior(behavior: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Map a two-valued behavior vector to 0/1 (lower value -> 0).

    Raises InputShapeError unless exactly two distinct values are present.
    """
    behavior = np.asarray(behavior)
    levels = np.unique(behavior)
    if levels.size != 2:
        raise InputShapeError(
            f"Chi-square tests require binary behavioral scores; found {levels.size} distinct values."
        )
    return (behavior == levels[1]).astype(float), levels


def chisq_columns(
    lesion_matrix: np.ndarray,
    behavior01: np.ndarray,
    yates: bool = True,
) -> np.ndarray:
    """Chi-square statistic of the 2x2 lesion x outcome table for every column."""
    lesioned = (lesion_matrix != 0).astype(float)
    n = float(behavior01.size)
    outcome_on = behavior01.sum()
    outcome_off = n - outcome_on

    les_on = lesioned.sum(axis=0)
    a = lesioned.T @ behavior01  # lesioned, outcome 1
    b = les_on - a  # lesioned, outcome 0
    c = outcome_on - a  # spared, outcome 1
    d = outcome_off - b  # spared, outcome 0

    denom = (a + b) * (c + d) * (a + c) * (b + d)
    valid = denom > 0
    statistic = np.zeros_like(a)
    if not valid.any():
        return statistic

    diff = np.abs(a * d - b * c)
    if yates:
        diff = np.maximum(0.0, diff - n / 2.0)
    statistic[valid] = n * diff[valid] ** 2 / denom[valid]
    return statistic


class ChiSquareTest(StatisticalTest):
    """Yates-corrected chi-square test per column.

    Parameters
    ----------
    yates : bool
        Apply the continuity correction (default True).
    permutation : bool
        Replace asymptotic p-values with permutation ones (``chisqPerm``).
    n_permutations : int
        Number of permutations when ``permutation`` is set.
    seed : int, optional
    """

    requires_binary_behavior = True

    def __init__(
        self,
        yates: bool = True,
        permutation: bool = False,
        n_permutations: int = 1000,
        seed: int | None = None,
    ):
        super().__init__("two-sided")
        self.yates = yates
        self.permutation = permutation
        self.n_permutations = n_permutations
        self.seed = seed
        self.name = "chisqPerm" if permutation else "chisq"

    def check_behavior(self, behavior: np.ndarray) -> None:
        binarize_behavior(behavior)

    def run(self, lesion_matrix, behavior, covariates=None) -> TestResult:
        lesion_matrix, behavior, _ = check_inputs(lesion_matrix, behavior)
        outcome, levels = binarize_behavior(behavior)
        statistic = chisq_columns(lesion_matrix, outcome, self.yates)

        if self.permutation:
            rng = np.random.default_rng(self.seed)
            exceed = np.ones_like(statistic)
            for _ in range(self.n_permutations):
                exceed += chisq_columns(lesion_matrix, rng.permutation(outcome), self.yates) >= statistic
            pvalue = exceed / (self.n_permutations + 1.0)
        else:
            pvalue = stats.chi2.sf(statistic, df=1)

        return TestResult(
            test=self.name,
            statistic=statistic,
            pvalue=pvalue,
            # chi-square p-values are upper-tail regardless of direction
            zscore=zscore_from_p(pvalue, statistic, "greater"),
            df=np.ones_like(statistic),
            alternative=self.alternative,
            extras={"levels": levels, "yates": self.yates},
        )
