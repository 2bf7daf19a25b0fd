"""Multiple comparison correction of column-wise test results.

Three families are supported:

* p-value adjustment (``holm``, ``hochberg``, ``hommel``, ``bonferroni``,
  ``BH``/``fdr``, ``BY``, ``none``) through statsmodels,
* ``FWERperm``: statistics below the permutation peak-statistic threshold
  are zeroed,
* ``clusterPerm``: columns above the cluster-forming p-value are grouped into
  spatial clusters and whole clusters smaller than the permutation
  cluster-size threshold are dropped.

Non-finite values are never propagated: the affected columns are zeroed and
reported as numeric anomalies.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Any, Callable

import numpy as np
from statsmodels.stats.multitest import multipletests

from ..exceptions import ConfigurationError, NumericAnomalyWarning
from .base import TestResult, directional, normalize_alternative
from .permutation import NullDistribution

logger = logging.getLogger(__name__)

# user-facing name -> statsmodels multipletests method
PADJUST_METHODS = {
    "holm": "holm",
    "hochberg": "simes-hochberg",
    "hommel": "hommel",
    "bonferroni": "bonferroni",
    "BH": "fdr_bh",
    "fdr": "fdr_bh",
    "BY": "fdr_by",
    "none": None,
}
PERMUTATION_METHODS = ("FWERperm", "clusterPerm")
CORRECTIONS = tuple(PADJUST_METHODS) + PERMUTATION_METHODS


@dataclass
class CorrectionResult:
    """Thresholded statistics after multiple comparison correction."""

    statistic: np.ndarray  # (n_columns,) zero where not significant
    pvalue: np.ndarray | None  # (n_columns,) adjusted
    zscore: np.ndarray | None  # (n_columns,) zero where not significant
    method: str
    p_threshold: float
    threshold: float | None = None  # permutation statistic or cluster-size threshold
    null: NullDistribution | None = None
    anomalies: list[dict[str, Any]] = field(default_factory=list)
    cluster_info: dict[str, int] = field(default_factory=dict)

    @property
    def n_significant(self) -> int:
        return int(np.count_nonzero(self.statistic))


def adjust_pvalues(p_values: np.ndarray, method: str = "fdr") -> np.ndarray:
    """Adjust p-values for multiple comparisons.

    Parameters
    ----------
    p_values : array-like
        Uncorrected p-values. NaNs are kept and excluded from the family.
    method : str
        One of ``holm``, ``hochberg``, ``hommel``, ``bonferroni``, ``BH``,
        ``fdr``, ``BY`` or ``none``.

    Returns
    -------
    adjusted : ndarray
    """
    if method not in PADJUST_METHODS:
        raise ConfigurationError(
            f"Unknown p-value adjustment '{method}'. Use one of {', '.join(PADJUST_METHODS)}"
        )
    pvals = np.asarray(p_values, dtype=float)
    sm_method = PADJUST_METHODS[method]
    if sm_method is None or pvals.size == 0:
        return pvals.copy()

    adjusted = np.full(pvals.shape, np.nan)
    valid = ~np.isnan(pvals)
    if valid.any():
        _, adjusted[valid], _, _ = multipletests(pvals[valid], method=sm_method)
    return adjusted


def find_anomalies(result: TestResult) -> tuple[np.ndarray, list[dict[str, Any]]]:
    """Columns where the statistic, p-value or z-score is NaN or infinite."""
    bad = np.zeros(result.n_columns, dtype=bool)
    report = []
    for name in ("statistic", "pvalue", "zscore"):
        values = getattr(result, name)
        if values is None:
            continue
        nonfinite = ~np.isfinite(np.asarray(values, dtype=float))
        if nonfinite.any():
            report.append({
                "field": name,
                "n_columns": int(nonfinite.sum()),
                "columns": np.flatnonzero(nonfinite).tolist(),
            })
            bad |= nonfinite
    return bad, report


def _zero_anomalies(statistic, pvalue, zscore, result: TestResult):
    bad, report = find_anomalies(result)
    if not bad.any():
        return report
    for entry in report:
        message = (
            f"{entry['n_columns']} NaN/Inf values in {entry['field']} of {result.test}; "
            "columns set to 0 (p = 1)"
        )
        warnings.warn(message, NumericAnomalyWarning, stacklevel=3)
        logger.warning(message)
    statistic[bad] = 0.0
    if pvalue is not None:
        pvalue[bad] = 1.0
    if zscore is not None:
        zscore[bad] = 0.0
    return report


def apply_correction(
    test_result: TestResult,
    method: str = "fdr",
    p_threshold: float = 0.05,
    null: NullDistribution | None = None,
    cluster_filter: Callable[[np.ndarray, float], tuple[np.ndarray, int, int]] | None = None,
    alternative: str | None = None,
    cluster_p_threshold: float = 0.05,
    flip_sign: bool = False,
) -> CorrectionResult:
    """Correct a test result for multiple comparisons.

    Parameters
    ----------
    test_result : TestResult
    method : str
        A p-value adjustment name, ``"FWERperm"`` or ``"clusterPerm"``.
    p_threshold : float
        Significance level. For ``FWERperm`` the null quantile, for
        ``clusterPerm`` the cluster-forming voxel p-value.
    null : NullDistribution, optional
        Required by the permutation methods.
    cluster_filter : callable, optional
        Required by ``clusterPerm``; see
        :func:`lesion_analytics.lesion.make_cluster_filter`.
    alternative : str, optional
        Direction for ``FWERperm``; defaults to the test's alternative.
    cluster_p_threshold : float
        Quantile of the cluster-size null used by ``clusterPerm``.
    flip_sign : bool
        Negate the final statistic and z-score.

    Returns
    -------
    CorrectionResult
    """
    if method not in CORRECTIONS:
        raise ConfigurationError(
            f"Unknown correction '{method}'. Use one of {', '.join(CORRECTIONS)}"
        )
    if not 0.0 < p_threshold <= 1.0:
        raise ConfigurationError(f"p_threshold must be in (0, 1], got {p_threshold}")
    alternative = normalize_alternative(alternative or test_result.alternative)

    statistic = np.array(test_result.statistic, dtype=float)
    pvalue = None if test_result.pvalue is None else np.array(test_result.pvalue, dtype=float)
    zscore = None if test_result.zscore is None else np.array(test_result.zscore, dtype=float)
    anomalies = _zero_anomalies(statistic, pvalue, zscore, test_result)

    threshold = None
    cluster_info: dict[str, int] = {}
    if method in PADJUST_METHODS:
        if pvalue is None:
            if method != "none":
                raise ConfigurationError(
                    f"Method '{test_result.test}' produces no p-values; correction must be 'none'"
                )
            keep = np.ones(statistic.shape, dtype=bool)
        else:
            pvalue = adjust_pvalues(pvalue, method)
            keep = pvalue < p_threshold
        logger.info("%s correction: %d of %d columns below p = %g",
                    method, int(keep.sum()), keep.size, p_threshold)

    elif method == "FWERperm":
        if null is None:
            raise ConfigurationError("FWERperm correction needs a null distribution")
        threshold = null.threshold(p_threshold)
        observed = directional(statistic, alternative)
        keep = observed >= threshold
        # family-wise p: share of permutation peaks at least as large
        exceed = (null.values[None, :] >= observed[:, None]).sum(axis=1)
        pvalue = (exceed + 1.0) / (null.completed + 1.0)
        logger.info("FWER threshold %.4f (rank %d, %d permutations): %d columns survive",
                    threshold, null.peak_rank, null.completed, int(keep.sum()))

    else:
        if null is None:
            raise ConfigurationError("clusterPerm correction needs a null distribution")
        if cluster_filter is None:
            raise ConfigurationError("clusterPerm correction needs spatial information")
        if pvalue is None:
            raise ConfigurationError(f"Method '{test_result.test}' produces no p-values")
        threshold = null.threshold(cluster_p_threshold)
        forming = pvalue < p_threshold
        keep, n_kept, n_dropped = cluster_filter(forming, threshold)
        keep &= forming
        cluster_info = {"clusters_kept": n_kept, "clusters_dropped": n_dropped}
        pvalue = np.where(keep, pvalue, 1.0)

    statistic[~keep] = 0.0
    if zscore is not None:
        zscore[~keep] = 0.0
    if flip_sign:
        statistic = -statistic
        if zscore is not None:
            zscore = -zscore

    return CorrectionResult(
        statistic=statistic,
        pvalue=pvalue,
        zscore=zscore,
        method=method,
        p_threshold=p_threshold,
        threshold=threshold,
        null=null,
        anomalies=anomalies,
        cluster_info=cluster_info,
    )
