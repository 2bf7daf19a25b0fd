"""Statistical tests, permutation nulls and multiple comparison correction."""

from .base import TestResult, StatisticalTest, normalize_alternative, zscore_from_p
from .parametric import TTest, ttest_columns
from .rank import PERMUTE_N_THRESHOLD, BrunnerMunzelTest, brunner_munzel_columns
from .regression import RegressionTest, ols_columns
from .chisq import ChiSquareTest, binarize_behavior, chisq_columns
from .sccan import SCCANTest, stratified_folds
from .resampling import BehaviorShuffler, residualize
from .permutation import NullDistribution, PermutationEngine
from .correction import (
    CORRECTIONS,
    PADJUST_METHODS,
    CorrectionResult,
    adjust_pvalues,
    apply_correction,
)

__all__ = [
    "TestResult",
    "StatisticalTest",
    "normalize_alternative",
    "zscore_from_p",
    "TTest",
    "ttest_columns",
    "PERMUTE_N_THRESHOLD",
    "BrunnerMunzelTest",
    "brunner_munzel_columns",
    "RegressionTest",
    "ols_columns",
    "ChiSquareTest",
    "binarize_behavior",
    "chisq_columns",
    "SCCANTest",
    "stratified_folds",
    "BehaviorShuffler",
    "residualize",
    "NullDistribution",
    "PermutationEngine",
    "CORRECTIONS",
    "PADJUST_METHODS",
    "CorrectionResult",
    "adjust_pvalues",
    "apply_correction",
]
