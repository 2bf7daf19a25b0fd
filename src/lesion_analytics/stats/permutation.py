"""Permutation null distributions for family-wise and cluster-extent control.

Each permutation shuffles behavior (or, with covariates, the covariate
residuals of behavior following Freedman & Lane, 1983), re-runs the test on
the unchanged lesion matrix and records one scalar:

* ``"fwer"`` -- the ``peak_rank``-th largest direction-adjusted statistic,
* ``"cluster"`` -- the size of the largest spatial cluster of columns whose
  permuted p-value is below the cluster-forming threshold.

The observed map is later thresholded at an upper quantile of these values.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

import numpy as np

from ..exceptions import ConfigurationError
from .base import StatisticalTest, check_inputs, directional, normalize_alternative
from .resampling import BehaviorShuffler

logger = logging.getLogger(__name__)

MODES = ("fwer", "cluster")


@dataclass
class NullDistribution:
    """Scalar summaries of the test under permuted behavior."""

    values: np.ndarray  # (completed,)
    mode: str
    peak_rank: int = 1
    n_requested: int = 0

    @property
    def completed(self) -> int:
        return int(self.values.size)

    @property
    def partial(self) -> bool:
        return self.completed < self.n_requested

    def threshold(self, p: float) -> float:
        """Empirical ``1 - p`` quantile with linear interpolation."""
        if self.completed == 0:
            raise ConfigurationError("Null distribution is empty; no permutation completed")
        return float(np.quantile(self.values, 1.0 - p, method="linear"))

    def merge(self, other: NullDistribution) -> NullDistribution:
        """Concatenate two independent slices of the same null distribution."""
        if other.mode != self.mode or other.peak_rank != self.peak_rank:
            raise ConfigurationError(
                f"Cannot merge {other.mode}/rank {other.peak_rank} into "
                f"{self.mode}/rank {self.peak_rank} null distribution"
            )
        return NullDistribution(
            values=np.concatenate([self.values, other.values]),
            mode=self.mode,
            peak_rank=self.peak_rank,
            n_requested=self.n_requested + other.n_requested,
        )


def peak_statistic(statistic: np.ndarray, alternative: str, rank: int = 1) -> float:
    """``rank``-th largest direction-adjusted statistic (NaN counts as lowest)."""
    values = np.nan_to_num(directional(statistic, alternative), nan=-np.inf)
    rank = min(rank, values.size)
    return float(np.partition(values, values.size - rank)[values.size - rank])


class PermutationEngine:
    """Re-run a statistical test under shuffled behavior.

    Parameters
    ----------
    n_permutations : int
        Permutations to run; must be positive.
    mode : {"fwer", "cluster"}
    peak_rank : int
        Record the k-th highest statistic instead of the maximum (``"fwer"``).
    cluster_voxel_threshold : float
        Voxel-wise p-value forming clusters (``"cluster"``).
    seed : int, optional
        Seed of the permutation generator.
    deadline : float, optional
        Wall-clock budget in seconds; the loop stops once it is exceeded.
    should_stop : callable, optional
        Polled before each permutation; returning True stops the loop.
    """

    def __init__(
        self,
        n_permutations: int,
        mode: str = "fwer",
        peak_rank: int = 1,
        cluster_voxel_threshold: float = 0.05,
        seed: int | None = None,
        deadline: float | None = None,
        should_stop: Callable[[], bool] | None = None,
    ):
        if n_permutations is None or int(n_permutations) <= 0:
            raise ConfigurationError(
                f"Permutation-based correction needs n_permutations > 0, got {n_permutations}"
            )
        if mode not in MODES:
            raise ConfigurationError(f"Unknown permutation mode '{mode}'. Use one of {MODES}")
        if int(peak_rank) < 1:
            raise ConfigurationError(f"peak_rank must be >= 1, got {peak_rank}")
        self.n_permutations = int(n_permutations)
        self.mode = mode
        self.peak_rank = int(peak_rank)
        self.cluster_voxel_threshold = cluster_voxel_threshold
        self.seed = seed
        self.deadline = deadline
        self.should_stop = should_stop

    def _stop_requested(self, started: float) -> bool:
        if self.should_stop is not None and self.should_stop():
            return True
        return self.deadline is not None and time.monotonic() - started > self.deadline

    def _record(self, result, alternative: str, cluster_sizer) -> float:
        if self.mode == "fwer":
            return peak_statistic(result.statistic, alternative, self.peak_rank)
        surviving = np.nan_to_num(result.pvalue, nan=1.0) < self.cluster_voxel_threshold
        return float(cluster_sizer(surviving))

    def run(
        self,
        lesion_matrix: np.ndarray,
        behavior: np.ndarray,
        test: StatisticalTest,
        covariates: np.ndarray | None = None,
        alternative: str = "greater",
        cluster_sizer: Callable[[np.ndarray], int] | None = None,
    ) -> NullDistribution:
        """Build the null distribution.

        Parameters
        ----------
        lesion_matrix : ndarray, shape (n_subjects, n_columns)
        behavior : ndarray, shape (n_subjects,)
        test : StatisticalTest
            Must support the requested mode.
        covariates : ndarray, optional
            Switches shuffling to Freedman-Lane.
        alternative : str
            Direction used to rank statistics in ``"fwer"`` mode.
        cluster_sizer : callable
            Maps a boolean vector of surviving columns to the largest
            cluster size (``"cluster"`` mode).

        Returns
        -------
        NullDistribution
        """
        alternative = normalize_alternative(alternative)
        if self.mode == "fwer" and not test.supports_fwer:
            raise ConfigurationError(f"Method '{test.name}' does not support FWER permutations")
        if self.mode == "cluster":
            if not test.supports_cluster:
                raise ConfigurationError(f"Method '{test.name}' does not support cluster permutations")
            if cluster_sizer is None:
                raise ConfigurationError("Cluster permutations need spatial information (cluster_sizer)")
        lesion_matrix, behavior, covariates = check_inputs(lesion_matrix, behavior, covariates)

        shuffler = BehaviorShuffler(behavior, covariates, np.random.default_rng(self.seed))
        logger.info(
            "Running %d %s permutations%s",
            self.n_permutations,
            self.mode,
            " (Freedman-Lane)" if shuffler.freedman_lane else "",
        )

        values = np.empty(self.n_permutations)
        started = time.monotonic()
        completed = 0
        for i in range(self.n_permutations):
            if self._stop_requested(started):
                break
            result = test.run(lesion_matrix, shuffler(), covariates)
            values[i] = self._record(result, alternative, cluster_sizer)
            completed += 1
            if (i + 1) % 500 == 0:
                logger.debug("  %d/%d permutations", i + 1, self.n_permutations)

        if completed < self.n_permutations:
            logger.warning(
                "Permutations stopped early: %d of %d completed", completed, self.n_permutations
            )

        return NullDistribution(
            values=values[:completed],
            mode=self.mode,
            peak_rank=self.peak_rank,
            n_requested=self.n_permutations,
        )
