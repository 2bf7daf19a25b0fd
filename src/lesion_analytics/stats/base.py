"""StatisticalTest interface and helpers shared by all test variants.

Every variant maps ``(lesion_matrix, behavior, covariates)`` to a
:class:`TestResult` with one entry per lesion-matrix column. Statistics are
oriented so that a positive value means subjects lesioned at that column
score *lower* (non-lesioned minus lesioned); ``alternative="greater"`` tests
that direction.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import numpy as np
from scipy import stats

from ..exceptions import ConfigurationError, InputShapeError

ALTERNATIVES = ("greater", "less", "two-sided")

_P_FLOOR = np.finfo(float).tiny
_P_EPS = np.finfo(float).eps

_ALTERNATIVE_ALIASES = {
    "greater": "greater",
    "g": "greater",
    "less": "less",
    "l": "less",
    "two-sided": "two-sided",
    "two.sided": "two-sided",
    "two_sided": "two-sided",
    "t": "two-sided",
}


@dataclass
class TestResult:
    """Per-column output of a statistical test."""

    __test__ = False  # not a pytest class

    test: str
    statistic: np.ndarray  # (n_columns,)
    pvalue: np.ndarray | None = None  # (n_columns,)
    zscore: np.ndarray | None = None  # (n_columns,)
    df: np.ndarray | None = None
    alternative: str = "greater"
    extras: dict[str, Any] = field(default_factory=dict)

    @property
    def n_columns(self) -> int:
        return int(len(self.statistic))


def normalize_alternative(alternative: str) -> str:
    """Map accepted spellings (``"g"``, ``"two.sided"``...) to a canonical name."""
    try:
        return _ALTERNATIVE_ALIASES[str(alternative).lower()]
    except KeyError:
        raise ConfigurationError(
            f"Unknown alternative '{alternative}'. Use one of {', '.join(ALTERNATIVES)}"
        ) from None


def directional(statistic: np.ndarray, alternative: str) -> np.ndarray:
    """Statistic transformed so that larger always means stronger evidence."""
    statistic = np.asarray(statistic, dtype=float)
    if alternative == "greater":
        return statistic
    if alternative == "less":
        return -statistic
    return np.abs(statistic)


def t_pvalue(t: np.ndarray, df: np.ndarray | float, alternative: str) -> np.ndarray:
    """p-value of a t statistic for the given alternative."""
    if alternative == "greater":
        return stats.t.sf(t, df)
    if alternative == "less":
        return stats.t.cdf(t, df)
    return 2.0 * stats.t.sf(np.abs(t), df)


def zscore_from_p(pvalue: np.ndarray, statistic: np.ndarray, alternative: str) -> np.ndarray:
    """Convert p-values to z-scores.

    One-tailed p-values use the upper tail, so ``greater`` and ``less``
    give z-scores of opposite sign for the same data. Two-tailed p-values
    take the sign of the statistic. p-values are clipped away from 0 and 1
    so z-scores stay finite.
    """
    pvalue = np.clip(np.asarray(pvalue, dtype=float), _P_FLOOR, 1.0 - _P_EPS)
    if alternative == "two-sided":
        return np.sign(statistic) * stats.norm.isf(pvalue / 2.0)
    return stats.norm.isf(pvalue)


def as_matrix(lesion_matrix: np.ndarray) -> np.ndarray:
    lesion_matrix = np.asarray(lesion_matrix, dtype=float)
    if lesion_matrix.ndim == 1:
        lesion_matrix = lesion_matrix[:, None]
    if lesion_matrix.ndim != 2:
        raise InputShapeError("Lesion matrix must be 2-D (subjects x columns)")
    return lesion_matrix


def check_inputs(
    lesion_matrix: np.ndarray,
    behavior: np.ndarray,
    covariates: np.ndarray | None = None,
) -> tuple[np.ndarray, np.ndarray, np.ndarray | None]:
    """Validate and coerce test inputs.

    Raises InputShapeError on subject-count mismatches.
    """
    lesion_matrix = as_matrix(lesion_matrix)
    behavior = np.asarray(behavior, dtype=float).reshape(-1)
    if lesion_matrix.shape[0] != behavior.size:
        raise InputShapeError(
            f"Different lengths between lesions ({lesion_matrix.shape[0]}) "
            f"and behavior vector ({behavior.size})."
        )
    if covariates is not None:
        covariates = np.asarray(covariates, dtype=float)
        if covariates.ndim == 1:
            covariates = covariates[:, None]
        if covariates.shape[0] != behavior.size:
            raise InputShapeError(
                f"Covariates have {covariates.shape[0]} rows for {behavior.size} subjects"
            )
    return lesion_matrix, behavior, covariates


def group_counts(lesion_matrix: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Number of non-lesioned (0) and lesioned (non-zero) subjects per column."""
    lesioned = (lesion_matrix != 0).sum(axis=0)
    return lesion_matrix.shape[0] - lesioned, lesioned


class StatisticalTest(ABC):
    """A column-wise (or multivariate) lesion-behavior test.

    Subclasses hold only configuration; ``run`` keeps no state between calls.
    """

    name: str = "base"
    supports_fwer: bool = False
    supports_cluster: bool = False
    requires_binary_behavior: bool = False
    accepts_covariates: bool = False
    uses_lesion_values: bool = False  # True if non-binary lesion values matter
    multivariate: bool = False

    def __init__(self, alternative: str = "greater"):
        self.alternative = normalize_alternative(alternative)

    @abstractmethod
    def run(
        self,
        lesion_matrix: np.ndarray,
        behavior: np.ndarray,
        covariates: np.ndarray | None = None,
    ) -> TestResult:
        """Test every column of ``lesion_matrix`` against ``behavior``."""
        ...

    def check_behavior(self, behavior: np.ndarray) -> None:
        """Method-specific behavior checks (overridden by binary-outcome tests)."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, alternative={self.alternative!r})"
