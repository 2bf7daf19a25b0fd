"""Linear regression between lesion columns and behavior.

Three variants share one model, ``behavior ~ column (+ covariates)``:

* ``regres`` fits each column with statsmodels OLS,
* ``regresfast`` solves all columns at once through the Frisch-Waugh-Lovell
  partialling of the covariates and supports permutation thresholding,
* ``regresPerm`` replaces the parametric p-values with permutation ones.

The reported statistic is the negated t value of the column coefficient, so
a positive statistic means lesioned subjects score lower.
"""

from __future__ import annotations

import logging

import numpy as np

from ..exceptions import ConfigurationError
from .base import (
    StatisticalTest,
    TestResult,
    check_inputs,
    directional,
    t_pvalue,
    zscore_from_p,
)
from .resampling import BehaviorShuffler, nuisance_design, residualize

logger = logging.getLogger(__name__)


def ols_columns(
    lesion_matrix: np.ndarray,
    behavior: np.ndarray,
    covariates: np.ndarray | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """t value of the column coefficient for every column.

    Parameters
    ----------
    lesion_matrix : ndarray, shape (n_subjects, n_columns)
    behavior : ndarray, shape (n_subjects,)
    covariates : ndarray, shape (n_subjects, n_covariates), optional

    Returns
    -------
    t : ndarray, shape (n_columns,)
    df : int
        Residual degrees of freedom.
    """
    n_subjects = lesion_matrix.shape[0]
    n_nuisance = nuisance_design(covariates, n_subjects).shape[1]
    df = n_subjects - n_nuisance - 1

    resid_y, _ = residualize(behavior, covariates)
    resid_x, _ = residualize(lesion_matrix, covariates)

    with np.errstate(divide="ignore", invalid="ignore"):
        sxx = (resid_x**2).sum(axis=0)
        sxy = resid_x.T @ resid_y
        beta = sxy / sxx
        sse = np.maximum((resid_y**2).sum() - beta * sxy, 0.0)
        se = np.sqrt(sse / df / sxx)
        t = beta / se

    return t, df


class RegressionTest(StatisticalTest):
    """Column-wise linear regression, optionally with covariates.

    Parameters
    ----------
    variant : {"regres", "regresfast", "regresPerm"}
    alternative : str
        ``"greater"`` (default; lesion lowers the score), ``"less"`` or ``"two-sided"``.
    n_permutations : int
        Permutations for ``regresPerm`` p-values.
    seed : int, optional
        Seed for ``regresPerm``.
    """

    accepts_covariates = True
    uses_lesion_values = True

    def __init__(
        self,
        variant: str = "regresfast",
        alternative: str = "greater",
        n_permutations: int = 1000,
        seed: int | None = None,
    ):
        super().__init__(alternative)
        if variant not in ("regres", "regresfast", "regresPerm"):
            raise ConfigurationError(f"Unknown regression variant '{variant}'")
        self.name = variant
        self.supports_fwer = variant == "regresfast"
        self.supports_cluster = variant == "regresfast"
        self.n_permutations = n_permutations
        self.seed = seed

    def run(self, lesion_matrix, behavior, covariates=None) -> TestResult:
        lesion_matrix, behavior, covariates = check_inputs(lesion_matrix, behavior, covariates)

        if self.name == "regres":
            t, df = self._fit_statsmodels(lesion_matrix, behavior, covariates)
        else:
            t, df = ols_columns(lesion_matrix, behavior, covariates)
        statistic = -t

        extras = {}
        with np.errstate(invalid="ignore"):
            if self.name == "regresPerm":
                pvalue = self._permutation_pvalues(lesion_matrix, behavior, covariates, statistic)
                extras["n_permutations"] = self.n_permutations
            else:
                pvalue = t_pvalue(statistic, df, self.alternative)
            zscore = zscore_from_p(pvalue, statistic, self.alternative)

        return TestResult(
            test=self.name,
            statistic=statistic,
            pvalue=pvalue,
            zscore=zscore,
            df=np.full(statistic.shape, float(df)),
            alternative=self.alternative,
            extras=extras,
        )

    @staticmethod
    def _fit_statsmodels(lesion_matrix, behavior, covariates):
        import statsmodels.api as sm

        nuisance = nuisance_design(covariates, lesion_matrix.shape[0])
        t = np.zeros(lesion_matrix.shape[1])
        df = lesion_matrix.shape[0] - nuisance.shape[1] - 1
        for col in range(lesion_matrix.shape[1]):
            design = np.column_stack([lesion_matrix[:, col], nuisance])
            fit = sm.OLS(behavior, design).fit()
            t[col] = fit.tvalues[0]
            df = fit.df_resid
        return t, df

    def _permutation_pvalues(self, lesion_matrix, behavior, covariates, observed):
        shuffler = BehaviorShuffler(behavior, covariates, np.random.default_rng(self.seed))
        target = directional(observed, self.alternative)
        exceed = np.ones(observed.shape)
        for _ in range(self.n_permutations):
            t, _ = ols_columns(lesion_matrix, shuffler(), covariates)
            perm = np.nan_to_num(directional(-t, self.alternative), nan=-np.inf)
            exceed += perm >= target
        return exceed / (self.n_permutations + 1.0)
