"""Covariate residualization and null-behavior generation.

``residualize`` is the single transform used both for lesion-size
correction of behavior and for Freedman-Lane permutations, where the
covariate-residualized behavior is shuffled and added back to the
covariate fit (Freedman & Lane, 1983; Winkler et al., 2014).
"""

from __future__ import annotations

import numpy as np


def nuisance_design(covariates: np.ndarray | None, n_subjects: int) -> np.ndarray:
    """Intercept plus covariate columns."""
    intercept = np.ones((n_subjects, 1))
    if covariates is None:
        return intercept
    covariates = np.asarray(covariates, dtype=float)
    if covariates.ndim == 1:
        covariates = covariates[:, None]
    return np.hstack([intercept, covariates])


def residualize(
    data: np.ndarray,
    covariates: np.ndarray | None,
) -> tuple[np.ndarray, np.ndarray]:
    """Regress ``covariates`` (plus an intercept) out of ``data``.

    Parameters
    ----------
    data : ndarray, shape (n_subjects,) or (n_subjects, n_columns)
    covariates : ndarray, shape (n_subjects, n_covariates), optional

    Returns
    -------
    residuals : ndarray, same shape as data
    fitted : ndarray, same shape as data
    """
    data = np.asarray(data, dtype=float)
    design = nuisance_design(covariates, data.shape[0])
    coef, *_ = np.linalg.lstsq(design, data, rcond=None)
    fitted = design @ coef
    return data - fitted, fitted


class BehaviorShuffler:
    """Generate behavior vectors under the null hypothesis.

    Without covariates the behavior is simply permuted. With covariates the
    Freedman-Lane scheme permutes the covariate residuals and adds back the
    covariate fit, preserving the nuisance effects.
    """

    def __init__(
        self,
        behavior: np.ndarray,
        covariates: np.ndarray | None = None,
        rng: np.random.Generator | None = None,
    ):
        self.behavior = np.asarray(behavior, dtype=float)
        self.covariates = covariates
        self.rng = rng if rng is not None else np.random.default_rng()
        if covariates is not None:
            self._residuals, self._fitted = residualize(self.behavior, covariates)
        else:
            self._residuals, self._fitted = None, None

    @property
    def freedman_lane(self) -> bool:
        return self._residuals is not None

    def __call__(self) -> np.ndarray:
        order = self.rng.permutation(self.behavior.shape[0])
        if self._residuals is None:
            return self.behavior[order]
        return self._fitted + self._residuals[order]
