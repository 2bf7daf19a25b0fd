"""Lesion-to-symptom mapping: validation, patching, testing and correction.

:func:`run_mapping` is the programmatic entry point; :class:`LesionMapper`
runs the same pipeline from a :class:`MappingConfig` and saves the outputs.
"""

from __future__ import annotations

import datetime
import inspect
import logging
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Any, Callable, Sequence

import numpy as np
import pandas as pd

from . import __version__
from .config import MappingConfig
from .exceptions import ConfigurationError, InputShapeError
from .io.images import make_image
from .io.loader import load_behavior, load_covariates, load_lesions, load_mask
from .lesion import (
    LesionSet,
    PatchInfo,
    average_lesion_map,
    build_patches,
    compute_mask,
    lesion_matrix_from_patches,
    lesion_sizes,
    make_cluster_filter,
    make_cluster_sizer,
)
from .stats import (
    CORRECTIONS,
    BrunnerMunzelTest,
    ChiSquareTest,
    CorrectionResult,
    NullDistribution,
    PermutationEngine,
    RegressionTest,
    SCCANTest,
    StatisticalTest,
    TestResult,
    TTest,
    apply_correction,
    normalize_alternative,
    residualize,
)

# Registry of available methods
METHOD_REGISTRY: dict[str, Callable[..., StatisticalTest]] = {
    "BM": partial(BrunnerMunzelTest, fast=False),
    "BMfast": partial(BrunnerMunzelTest, fast=True),
    "ttest": partial(TTest, var_equal=True),
    "welch": partial(TTest, var_equal=False),
    "regres": partial(RegressionTest, variant="regres"),
    "regresfast": partial(RegressionTest, variant="regresfast"),
    "regresPerm": partial(RegressionTest, variant="regresPerm"),
    "chisq": partial(ChiSquareTest, permutation=False),
    "chisqPerm": partial(ChiSquareTest, permutation=True),
    "sccan": SCCANTest,
}

LESION_SIZE_CORRECTIONS = ("none", "voxel", "behavior")


def method_description(name: str) -> str:
    """First docstring line of the test class behind a method name."""
    cls = getattr(METHOD_REGISTRY[name], "func", METHOD_REGISTRY[name])
    return cls.__doc__.strip().splitlines()[0] if cls.__doc__ else "No description"


def make_test(
    method: str,
    alternative: str = "greater",
    seed: int | None = None,
    n_permutations: int = 1000,
    p_threshold: float = 0.05,
    **options,
) -> StatisticalTest:
    """Instantiate the test registered under ``method``.

    Shared settings are passed only to tests that accept them; ``options``
    must all be parameters of the test.
    """
    if method not in METHOD_REGISTRY:
        available = ", ".join(METHOD_REGISTRY.keys())
        raise ConfigurationError(f"Unknown method '{method}'. Available: {available}")
    factory = METHOD_REGISTRY[method]
    cls = getattr(factory, "func", factory)
    accepted = inspect.signature(cls).parameters

    unknown = sorted(set(options) - set(accepted))
    if unknown:
        raise ConfigurationError(f"Method '{method}' does not accept options: {', '.join(unknown)}")

    shared = {
        "alternative": alternative,
        "seed": seed,
        "n_permutations": n_permutations,
        "p_threshold": p_threshold,
    }
    kwargs = {k: v for k, v in shared.items() if k in accepted}
    kwargs.update(options)
    return factory(**kwargs)


class _ListHandler(logging.Handler):
    """Collect formatted records emitted during one run."""

    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.lines: list[str] = []
        self.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s", "%H:%M:%S"))

    def emit(self, record):
        self.lines.append(self.format(record))


@dataclass
class MappingResult:
    """Outcome of one mapping run.

    Column-space vectors have one entry per lesion-matrix column (patch).
    :meth:`location_values` broadcasts them to every masked location and
    :meth:`image` rebuilds a NIfTI image when spatial information exists.
    ``null_result`` is set when a multivariate fit is not predictive; the
    statistic is then ``None`` and ``message`` holds the reason.
    """

    method: str
    correction: str
    statistic: np.ndarray | None  # (n_columns,)
    pvalue: np.ndarray | None = None  # (n_columns,) adjusted
    zscore: np.ndarray | None = None  # (n_columns,)
    raw: TestResult | None = None
    corrected: CorrectionResult | None = None
    null: NullDistribution | None = None
    patch_info: PatchInfo | None = None
    average: np.ndarray | None = None
    call_info: dict[str, Any] = field(default_factory=dict)
    log: list[str] = field(default_factory=list)
    anomalies: list[dict[str, Any]] = field(default_factory=list)
    null_result: bool = False
    message: str = ""

    @property
    def mask(self) -> np.ndarray | None:
        return None if self.patch_info is None else self.patch_info.mask

    @property
    def n_columns(self) -> int:
        return 0 if self.statistic is None else int(len(self.statistic))

    @property
    def n_significant(self) -> int:
        return 0 if self.statistic is None else int(np.count_nonzero(self.statistic))

    @property
    def threshold(self) -> float | None:
        return None if self.corrected is None else self.corrected.threshold

    def location_values(self, kind: str = "statistic") -> np.ndarray | None:
        """Column values of ``kind`` expanded to masked locations."""
        values = getattr(self, kind)
        if values is None or self.patch_info is None:
            return values
        return self.patch_info.expand(values)

    def image(self, kind: str = "statistic"):
        """``nibabel`` image of ``statistic``, ``pvalue`` or ``zscore``.

        Locations outside the mask are 0, or 1 for p-values.
        """
        if self.patch_info is None:
            raise ConfigurationError("No spatial information: the run used a lesion matrix")
        values = self.location_values(kind)
        if values is None:
            raise ConfigurationError(f"Result has no {kind} values")
        fill = 1.0 if kind == "pvalue" else 0.0
        return make_image(self.patch_info.mask, self.patch_info.geometry, values, fill=fill)

    def to_frame(self) -> pd.DataFrame:
        """One row per column with raw and corrected values."""
        frame = pd.DataFrame({"column": np.arange(self.n_columns)})
        for kind in ("statistic", "pvalue", "zscore"):
            values = getattr(self, kind)
            if values is not None:
                frame[kind] = values
            raw = None if self.raw is None else getattr(self.raw, kind)
            if raw is not None:
                frame[f"raw_{kind}"] = raw
        if self.patch_info is not None and self.patch_info.n_patches == self.n_columns:
            frame["n_voxels"] = self.patch_info.voxel_counts
        return frame


def _as_lesion_input(lesions_or_matrix) -> tuple[LesionSet | None, np.ndarray | None]:
    """Split the first argument into a LesionSet or a plain lesion matrix."""
    if isinstance(lesions_or_matrix, LesionSet):
        return lesions_or_matrix, None
    if isinstance(lesions_or_matrix, (str, Path)):
        return load_lesions(lesions_or_matrix), None
    if isinstance(lesions_or_matrix, (list, tuple)):
        if lesions_or_matrix and isinstance(lesions_or_matrix[0], (str, Path)):
            return load_lesions(lesions_or_matrix), None
        if lesions_or_matrix and np.ndim(lesions_or_matrix[0]) >= 2:
            return LesionSet.from_arrays(lesions_or_matrix), None
        # rows of a subjects x columns matrix
    data = np.asarray(lesions_or_matrix)
    if data.ndim == 2:
        return None, data.astype(float)
    if data.ndim >= 3:
        return LesionSet.from_arrays(list(data)), None
    raise InputShapeError("Lesions must be volumes or a 2-D subjects x columns matrix")


def _as_behavior(behavior) -> np.ndarray:
    if isinstance(behavior, (str, Path)):
        return load_behavior(behavior)
    values = np.asarray(behavior, dtype=float)
    if values.ndim != 1:
        values = values.reshape(-1)
    if not np.isfinite(values).all():
        raise InputShapeError("Behavioral scores contain NaN or infinite values")
    return values


def _as_covariates(covariates, n_subjects: int) -> np.ndarray | None:
    if covariates is None:
        return None
    if isinstance(covariates, (str, Path)):
        covariates = load_covariates(covariates)
    values = np.asarray(covariates, dtype=float)
    if values.ndim == 1:
        values = values[:, None]
    if values.shape[0] != n_subjects:
        raise InputShapeError(f"Covariates have {values.shape[0]} rows for {n_subjects} subjects")
    if not np.isfinite(values).all():
        raise InputShapeError("Covariates contain NaN or infinite values")
    return values


def run_mapping(
    lesions_or_matrix,
    behavior,
    method: str = "BM",
    correction: str = "fdr",
    p_threshold: float = 0.05,
    n_permutations: int = 1000,
    patching: bool = True,
    correct_by_lesion_size: str = "none",
    alternative: str = "greater",
    covariates=None,
    *,
    mask=None,
    patch_info: PatchInfo | None = None,
    min_subjects_per_voxel: str | int | float = "10%",
    flip_sign: bool = False,
    binary_check: bool = False,
    lesion_size: Sequence[float] | None = None,
    peak_rank: int = 1,
    cluster_p_threshold: float = 0.05,
    cluster_connectivity: int = 1,
    seed: int | None = None,
    deadline: float | None = None,
    should_stop: Callable[[], bool] | None = None,
    logger: logging.Logger | None = None,
    **method_options,
) -> MappingResult:
    """Map lesion-behavior relationships.

    Parameters
    ----------
    lesions_or_matrix : LesionSet, list of arrays or paths, glob, or ndarray
        Lesion volumes, or an already built subjects x columns matrix.
    behavior : array-like or path
        One score per subject.
    method : str
        Key of :data:`METHOD_REGISTRY`.
    correction : str
        p-value adjustment name, ``"FWERperm"`` or ``"clusterPerm"``.
    p_threshold : float
        Significance level (cluster-forming level for ``clusterPerm``).
    n_permutations : int
        Permutations for permutation-based corrections and p-values.
    patching : bool
        Group voxels with identical lesion patterns into patches.
    correct_by_lesion_size : {"none", "voxel", "behavior"}
        Divide lesion values by sqrt(lesion size), or regress lesion size
        out of behavior.
    alternative : str
        ``"greater"`` tests that lesioned subjects score lower.
    covariates : array-like or path, optional
        Nuisance variables for regression methods.
    logger : logging.Logger, optional
        Logger whose records are captured into ``MappingResult.log``.
    **method_options
        Passed to the test, e.g. ``var_equal``, ``sparseness``.

    Returns
    -------
    MappingResult
    """
    log = logger or logging.getLogger(__package__)
    handler = _ListHandler()
    previous_level = log.level
    log.addHandler(handler)
    if log.getEffectiveLevel() > logging.INFO:
        log.setLevel(logging.INFO)
    try:
        result = _run(
            log,
            lesions_or_matrix,
            behavior,
            method=method,
            correction=correction,
            p_threshold=p_threshold,
            n_permutations=n_permutations,
            patching=patching,
            correct_by_lesion_size=correct_by_lesion_size,
            alternative=alternative,
            covariates=covariates,
            mask=mask,
            patch_info=patch_info,
            min_subjects_per_voxel=min_subjects_per_voxel,
            flip_sign=flip_sign,
            binary_check=binary_check,
            lesion_size=lesion_size,
            peak_rank=peak_rank,
            cluster_p_threshold=cluster_p_threshold,
            cluster_connectivity=cluster_connectivity,
            seed=seed,
            deadline=deadline,
            should_stop=should_stop,
            method_options=method_options,
        )
    finally:
        log.removeHandler(handler)
        log.setLevel(previous_level)
    result.log = handler.lines
    return result


def _run(
    log: logging.Logger,
    lesions_or_matrix,
    behavior,
    *,
    method,
    correction,
    p_threshold,
    n_permutations,
    patching,
    correct_by_lesion_size,
    alternative,
    covariates,
    mask,
    patch_info,
    min_subjects_per_voxel,
    flip_sign,
    binary_check,
    lesion_size,
    peak_rank,
    cluster_p_threshold,
    cluster_connectivity,
    seed,
    deadline,
    should_stop,
    method_options,
) -> MappingResult:
    started = datetime.datetime.now()

    # configuration checks
    if correction not in CORRECTIONS:
        raise ConfigurationError(
            f"Unknown correction '{correction}'. Available: {', '.join(CORRECTIONS)}"
        )
    if not 0.0 < p_threshold <= 1.0:
        raise ConfigurationError(f"p_threshold must be in (0, 1], got {p_threshold}")
    if correct_by_lesion_size not in LESION_SIZE_CORRECTIONS:
        raise ConfigurationError(
            f"correct_by_lesion_size must be one of {LESION_SIZE_CORRECTIONS}, "
            f"got '{correct_by_lesion_size}'"
        )
    alternative = normalize_alternative(alternative)
    test = make_test(method, alternative, seed, n_permutations, p_threshold, **method_options)

    if test.multivariate:
        if patching or correction != "none":
            log.info("%s uses all voxels jointly: patching off, correction 'none'", method)
        patching = False
        correction = "none"

    if correction == "FWERperm" and not test.supports_fwer:
        raise ConfigurationError(f"Method '{method}' does not support FWERperm correction")
    if correction == "clusterPerm" and not test.supports_cluster:
        raise ConfigurationError(f"Method '{method}' does not support clusterPerm correction")
    if correction in ("FWERperm", "clusterPerm") and (n_permutations is None or n_permutations <= 0):
        raise ConfigurationError(f"{correction} needs n_permutations > 0, got {n_permutations}")
    if correct_by_lesion_size == "voxel" and not test.uses_lesion_values:
        raise ConfigurationError(
            f"correct_by_lesion_size='voxel' needs a regression method, not '{method}'"
        )
    if correct_by_lesion_size == "behavior" and test.requires_binary_behavior:
        raise ConfigurationError(f"correct_by_lesion_size='behavior' is not valid for '{method}'")

    # input checks
    lesions, lesion_matrix = _as_lesion_input(lesions_or_matrix)
    behavior = _as_behavior(behavior)
    n_subjects = lesions.n_subjects if lesions is not None else lesion_matrix.shape[0]
    if n_subjects != behavior.size:
        raise InputShapeError(
            f"Different lengths between lesions ({n_subjects}) and behavior vector ({behavior.size})."
        )
    covariates = _as_covariates(covariates, n_subjects)
    if covariates is not None and not test.accepts_covariates:
        raise ConfigurationError(f"Method '{method}' does not accept covariates")
    test.check_behavior(behavior)
    if correction == "clusterPerm" and lesions is None and patch_info is None:
        raise ConfigurationError("clusterPerm needs spatial information: pass volumes or patch_info")
    if lesion_matrix is not None:
        if binary_check and not np.isin(lesion_matrix, (0, 1)).all():
            raise InputShapeError("Lesion matrix is not binary")
        if patch_info is not None and patch_info.n_patches != lesion_matrix.shape[1]:
            raise InputShapeError(
                f"patch_info has {patch_info.n_patches} patches for {lesion_matrix.shape[1]} columns"
            )
    if lesion_size is not None and len(lesion_size) != n_subjects:
        raise InputShapeError(f"{len(lesion_size)} lesion sizes for {n_subjects} subjects")

    log.info("Running %s with %s correction on %d subjects", method, correction, n_subjects)

    # lesion matrix
    average = None
    if lesions is not None:
        average = average_lesion_map(lesions)
        if patch_info is not None:
            lesion_matrix = lesion_matrix_from_patches(lesions, patch_info)
            log.info("Reusing %d patches from previous patch information", patch_info.n_patches)
        else:
            if mask is None:
                mask, average = compute_mask(lesions, min_subjects_per_voxel)
                mask_geometry = None
            elif isinstance(mask, (str, Path)):
                mask, mask_geometry = load_mask(mask, lesions.geometry)
            else:
                mask_geometry = None
            lesion_matrix, patch_info = build_patches(
                lesions, mask, no_patch=not patching, mask_geometry=mask_geometry,
            )

    if correct_by_lesion_size != "none":
        if lesion_size is not None:
            sizes = np.asarray(lesion_size, dtype=float)
        elif lesions is not None:
            sizes = lesion_sizes(lesions)
        else:
            weights = 1.0 if patch_info is None else patch_info.voxel_counts
            sizes = (lesion_matrix * weights).sum(axis=1)
        if correct_by_lesion_size == "voxel":
            with np.errstate(divide="ignore"):
                scale = np.where(sizes > 0, 1.0 / np.sqrt(sizes), 0.0)
            lesion_matrix = lesion_matrix * scale[:, None]
            log.info("Lesion values divided by sqrt(lesion size)")
        else:
            behavior, _ = residualize(behavior, sizes)
            log.info("Lesion size regressed out of behavior")

    # test
    log.info("Testing %d columns with %r", lesion_matrix.shape[1], test)
    raw = test.run(lesion_matrix, behavior, covariates)

    call_info: dict[str, Any] = {
        "version": __version__,
        "date": started.isoformat(timespec="seconds"),
        "method": method,
        "correction": correction,
        "p_threshold": p_threshold,
        "n_permutations": n_permutations,
        "patching": bool(patching),
        "alternative": test.alternative,
        "correct_by_lesion_size": correct_by_lesion_size,
        "n_subjects": int(n_subjects),
        "n_columns": int(lesion_matrix.shape[1]),
        "n_voxels": None if patch_info is None else patch_info.n_voxels,
        "covariates": 0 if covariates is None else int(covariates.shape[1]),
        "flip_sign": bool(flip_sign),
        "seed": seed,
        "options": dict(method_options),
    }
    for key in ("sparseness", "cv_correlation", "cv_pvalue"):
        if key in raw.extras:
            call_info[key] = float(raw.extras[key])

    if raw.extras.get("null_result"):
        message = (
            f"Predictive correlation not significant (r={raw.extras['cv_correlation']:.3f}, "
            f"p={raw.extras['cv_pvalue']:.3g} >= {p_threshold}); no map returned"
        )
        log.warning(message)
        return MappingResult(
            method=method,
            correction=correction,
            statistic=None,
            raw=raw,
            patch_info=patch_info,
            average=average,
            call_info=call_info,
            null_result=True,
            message=message,
        )

    # permutations
    null = None
    if correction in ("FWERperm", "clusterPerm"):
        mode = "fwer" if correction == "FWERperm" else "cluster"
        engine = PermutationEngine(
            n_permutations,
            mode,
            peak_rank=peak_rank,
            cluster_voxel_threshold=p_threshold,
            seed=seed,
            deadline=deadline,
            should_stop=should_stop,
        )
        sizer = make_cluster_sizer(patch_info, cluster_connectivity) if mode == "cluster" else None
        null = engine.run(lesion_matrix, behavior, test, covariates, test.alternative, sizer)
        call_info["n_permutations_completed"] = null.completed

    cluster_filter = None
    if correction == "clusterPerm":
        cluster_filter = make_cluster_filter(patch_info, cluster_connectivity)
    corrected = apply_correction(
        raw,
        correction,
        p_threshold,
        null=null,
        cluster_filter=cluster_filter,
        alternative=test.alternative,
        cluster_p_threshold=cluster_p_threshold,
        flip_sign=flip_sign,
    )
    if corrected.threshold is not None:
        call_info["threshold"] = corrected.threshold
    call_info["n_significant"] = corrected.n_significant

    log.info(
        "Done: %d of %d columns significant (%s)",
        corrected.n_significant, raw.n_columns, correction,
    )
    return MappingResult(
        method=method,
        correction=correction,
        statistic=corrected.statistic,
        pvalue=corrected.pvalue,
        zscore=corrected.zscore,
        raw=raw,
        corrected=corrected,
        null=null,
        patch_info=patch_info,
        average=average,
        call_info=call_info,
        anomalies=corrected.anomalies,
    )


class LesionMapper:
    """Run a mapping described by a :class:`MappingConfig`.

    Parameters
    ----------
    config : MappingConfig
    lesions : LesionSet, optional
        Pre-loaded lesions. If None, loaded from ``config.lesions``.
    behavior : array-like, optional
        Pre-loaded scores. If None, loaded from ``config.behavior``.
    covariates : array-like, optional
        Pre-loaded covariates. If None, loaded from ``config.covariates``.
    """

    def __init__(
        self,
        config: MappingConfig,
        lesions: LesionSet | None = None,
        behavior: np.ndarray | None = None,
        covariates: np.ndarray | None = None,
    ):
        self.config = config
        self.lesions = lesions if lesions is not None else self._load_lesions()
        self.behavior = behavior if behavior is not None else self._load_behavior()
        if covariates is None and config.covariates is not None:
            covariates = load_covariates(config.covariates, config.covariate_columns).to_numpy(dtype=float)
        self.covariates = covariates

    def _load_lesions(self) -> LesionSet:
        if not self.config.lesions:
            raise ConfigurationError("No lesions in config")
        return load_lesions(self.config.lesions)

    def _load_behavior(self) -> np.ndarray:
        if self.config.behavior is None:
            raise ConfigurationError("No behavior in config")
        if isinstance(self.config.behavior, (list, tuple)):
            return np.asarray(self.config.behavior, dtype=float)
        return load_behavior(self.config.behavior, self.config.behavior_column)

    def validate(self) -> list[str]:
        """Validate the configuration against the loaded data."""
        issues = self.config.validate()
        if self.lesions.n_subjects != len(self.behavior):
            issues.append(
                f"{self.lesions.n_subjects} lesion maps but {len(self.behavior)} behavioral scores"
            )
        if self.covariates is not None and len(self.covariates) != len(self.behavior):
            issues.append(f"{len(self.covariates)} covariate rows for {len(self.behavior)} subjects")
        return issues

    def run(self, logger: logging.Logger | None = None) -> MappingResult:
        cfg = self.config
        return run_mapping(
            self.lesions,
            self.behavior,
            method=cfg.method,
            correction=cfg.correction,
            p_threshold=cfg.p_threshold,
            n_permutations=cfg.n_permutations,
            patching=cfg.patching,
            correct_by_lesion_size=cfg.correct_by_lesion_size,
            alternative=cfg.alternative,
            covariates=self.covariates,
            mask=cfg.mask,
            min_subjects_per_voxel=cfg.min_subjects_per_voxel,
            flip_sign=cfg.flip_sign,
            seed=cfg.seed,
            logger=logger,
            **cfg.options,
        )

    def save(self, result: MappingResult) -> dict[str, Path]:
        """Write the result files into ``config.output_dir``."""
        from .io.export import save_result

        return save_result(result, self.config.output_dir)
