"""Sparse canonical correlation between the lesion matrix and behavior.

With a single behavioral score, the canonical direction of the lesion
matrix is the weight vector ``w`` maximizing ``corr(X w, y)``. Sparseness is
enforced as the fraction of non-zero weights: ``w`` is found by iterative
hard thresholding of the least-squares fit of ``y`` on the centred and
scaled lesion matrix, keeping the ``sparseness * n_columns`` largest weights.

The sparseness giving the best k-fold cross-validated predictive
correlation is searched unless a fixed value is requested. If the
predictive correlation is not significant at ``p_threshold`` the result is
flagged as null and the pipeline discards the map.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy import optimize, stats
from sklearn.model_selection import LeaveOneOut, StratifiedKFold
from sklearn.preprocessing import StandardScaler

from .base import StatisticalTest, TestResult, check_inputs

logger = logging.getLogger(__name__)

SPARSENESS_BOUNDS = (0.005, 0.9)


@dataclass
class SparsenessSearch:
    """Outcome of the cross-validated sparseness evaluation."""

    sparseness: float
    cv_correlation: float
    cv_pvalue: float
    n_folds: int
    n_evaluations: int


def stratified_folds(
    behavior: np.ndarray,
    n_folds: int = 4,
    seed: int | None = None,
) -> list[tuple[np.ndarray, np.ndarray]]:
    """k-fold split balanced over quantile bins of a continuous score.

    The score is cut into 2-5 quantile bins (fewer when the sample is small)
    and folds are stratified on the bins. With ``n_folds >= n_subjects``
    leave-one-out is used.
    """
    behavior = np.asarray(behavior, dtype=float)
    n = behavior.size
    if n_folds >= n:
        return list(LeaveOneOut().split(behavior))

    n_bins = int(np.clip(n // n_folds, 2, 5))
    breaks = np.unique(np.quantile(behavior, np.linspace(0, 1, n_bins)))
    if breaks.size < 2:
        bins = np.zeros(n, dtype=int)
    else:
        bins = pd.cut(behavior, breaks, include_lowest=True, labels=False)
        bins = np.asarray(bins, dtype=int)

    random_state = None if seed is None else int(seed)
    splitter = StratifiedKFold(n_splits=n_folds, shuffle=True, random_state=random_state)
    with warnings.catch_warnings():
        # small bins are expected with few subjects
        warnings.filterwarnings("ignore", category=UserWarning, module="sklearn")
        return list(splitter.split(np.zeros(n), bins))


def _prepare(X: np.ndarray, y: np.ndarray, robust: bool) -> tuple[np.ndarray, np.ndarray]:
    if robust:
        X = stats.rankdata(X, axis=0)
        y = stats.rankdata(y)
    return X, y


def rank_against(reference: np.ndarray, values: np.ndarray) -> np.ndarray:
    """Average rank of each value within the columns of ``reference``.

    Values present in ``reference`` get the same rank ``rankdata`` gives
    them there; unseen values fall halfway between their neighbours.
    """
    ranks = np.empty(values.shape, dtype=float)
    for j in range(reference.shape[1]):
        column = np.sort(reference[:, j])
        left = np.searchsorted(column, values[:, j], side="left")
        right = np.searchsorted(column, values[:, j], side="right")
        ranks[:, j] = (left + right + 1) / 2.0
    return ranks


def sparse_weights(
    X: np.ndarray,
    y: np.ndarray,
    sparseness: float,
    n_iter: int = 20,
) -> np.ndarray:
    """Sparse weight vector for already centred and scaled ``X`` and ``y``.

    Parameters
    ----------
    X : ndarray, shape (n_subjects, n_columns)
    y : ndarray, shape (n_subjects,)
    sparseness : float
        Fraction of columns allowed a non-zero weight.
    n_iter : int
        Hard-thresholding iterations.

    Returns
    -------
    w : ndarray, shape (n_columns,)
        Unit-norm weights (all zeros if no signal).
    """
    n_columns = X.shape[1]
    k = int(np.clip(round(sparseness * n_columns), 1, n_columns))

    def keep_top(v):
        out = np.zeros_like(v)
        idx = np.argpartition(np.abs(v), n_columns - k)[n_columns - k:]
        out[idx] = v[idx]
        return out

    step = 1.0 / max(np.linalg.norm(X, 2) ** 2, np.finfo(float).eps)
    w = keep_top(X.T @ y)
    for _ in range(n_iter):
        w = keep_top(w + step * (X.T @ (y - X @ w)))

    norm = np.linalg.norm(w)
    return w / norm if norm > 0 else w


def _fit(X_train, y_train, sparseness, robust, n_iter):
    X_train, y_train = _prepare(X_train, y_train, robust)
    x_scaler = StandardScaler().fit(X_train)
    y_mean, y_std = y_train.mean(), y_train.std() or 1.0
    w = sparse_weights(x_scaler.transform(X_train), (y_train - y_mean) / y_std, sparseness, n_iter)
    return w, x_scaler


def cross_validated_correlation(
    X: np.ndarray,
    y: np.ndarray,
    sparseness: float,
    folds: list[tuple[np.ndarray, np.ndarray]],
    robust: bool = True,
    n_iter: int = 20,
) -> tuple[float, float]:
    """Correlation between held-out predictions and observed scores.

    In each fold the weights are learned on the training subjects, a linear
    model maps the training projections to behavior, and the held-out
    subjects are predicted from their projections.

    Returns
    -------
    r : float
    p : float
        One-sided p-value of a positive correlation.
    """
    predicted = np.zeros_like(y, dtype=float)
    for train, test in folds:
        w, scaler = _fit(X[train], y[train], sparseness, robust, n_iter)
        proj_train = scaler.transform(_prepare(X[train], y[train], robust)[0]) @ w
        X_test = X[test]
        if robust:
            X_test = rank_against(X[train], X_test)
        proj_test = scaler.transform(X_test) @ w
        if np.ptp(proj_train) == 0:
            predicted[test] = y[train].mean()
            continue
        slope, intercept = np.polyfit(proj_train, y[train], 1)
        predicted[test] = intercept + slope * proj_test

    if np.ptp(predicted) == 0:
        return 0.0, 1.0
    r, p = stats.pearsonr(predicted, y, alternative="greater")
    return float(r), float(p)


class SCCANTest(StatisticalTest):
    """Sparse canonical correlation over all columns jointly.

    Parameters
    ----------
    sparseness : float
        Fraction of non-zero weights used when not optimizing.
    optimize_sparseness : bool
        Search the sparseness maximizing cross-validated correlation.
    validate_sparseness : bool
        Compute the cross-validated correlation for a fixed sparseness.
    p_threshold : float
        Significance required of the predictive correlation.
    n_folds : int
        Cross-validation folds.
    raw_stat : bool
        Return signed normalized weights instead of non-negative ones.
    robust : bool
        Rank-transform lesion columns and behavior before scaling.
    n_iter : int
        Hard-thresholding iterations per fit.
    seed : int, optional
        Seed of the fold assignment.
    """

    name = "sccan"
    multivariate = True
    uses_lesion_values = True

    def __init__(
        self,
        sparseness: float = 0.045,
        optimize_sparseness: bool = True,
        validate_sparseness: bool = False,
        p_threshold: float = 0.05,
        n_folds: int = 4,
        raw_stat: bool = False,
        robust: bool = True,
        n_iter: int = 20,
        tolerance: float = 0.03,
        seed: int | None = None,
    ):
        super().__init__("greater")
        self.sparseness = sparseness
        self.optimize_sparseness = optimize_sparseness
        self.validate_sparseness = validate_sparseness
        self.p_threshold = p_threshold
        self.n_folds = n_folds
        self.raw_stat = raw_stat
        self.robust = robust
        self.n_iter = n_iter
        self.tolerance = tolerance
        self.seed = seed

    def search_sparseness(self, X: np.ndarray, y: np.ndarray) -> SparsenessSearch:
        """Bounded scalar search of the sparseness maximizing CV correlation."""
        folds = stratified_folds(y, self.n_folds, self.seed)
        cache: dict[float, tuple[float, float]] = {}

        def objective(s):
            cache[s] = cross_validated_correlation(X, y, s, folds, self.robust, self.n_iter)
            logger.debug("sparseness=%.4f cv r=%.3f", s, cache[s][0])
            return -cache[s][0]

        if self.optimize_sparseness:
            res = optimize.minimize_scalar(
                objective,
                bounds=SPARSENESS_BOUNDS,
                method="bounded",
                options={"xatol": self.tolerance},
            )
            best = float(res.x)
            if best not in cache:
                objective(best)
        else:
            best = self.sparseness
            objective(best)

        r, p = cache[best]
        return SparsenessSearch(
            sparseness=best,
            cv_correlation=r,
            cv_pvalue=p,
            n_folds=len(folds),
            n_evaluations=len(cache),
        )

    def run(self, lesion_matrix, behavior, covariates=None) -> TestResult:
        X, y, _ = check_inputs(lesion_matrix, behavior)

        search = None
        sparseness = self.sparseness
        if self.optimize_sparseness or self.validate_sparseness:
            search = self.search_sparseness(X, y)
            sparseness = search.sparseness
            logger.info(
                "SCCAN sparseness %.4f: cross-validated r=%.3f, p=%.2g",
                search.sparseness, search.cv_correlation, search.cv_pvalue,
            )

        w, _ = _fit(X, y, sparseness, self.robust, self.n_iter)
        # lesion in a positive-weight column predicts a higher score; flip so
        # positive weights mark deficits, like the univariate statistics
        raw = -w
        peak = np.max(np.abs(raw)) if raw.size else 0.0
        normalized = raw / peak if peak > 0 else raw
        statistic = normalized if self.raw_stat else np.abs(normalized)

        null_result = search is not None and not search.cv_pvalue < self.p_threshold
        extras = {
            "raw_weights": raw,
            "sparseness": sparseness,
            "null_result": null_result,
        }
        if search is not None:
            extras.update(
                cv_correlation=search.cv_correlation,
                cv_pvalue=search.cv_pvalue,
                n_folds=search.n_folds,
            )
        return TestResult(
            test=self.name,
            statistic=statistic,
            alternative=self.alternative,
            extras=extras,
        )
