"""YAML-driven mapping configuration loader."""

from __future__ import annotations

import glob
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigurationError
from .stats import CORRECTIONS
from .stats.base import ALTERNATIVES, normalize_alternative


def _resolve(value: str | None, base: Path) -> str | None:
    """Make a relative path (or glob) relative to the config file directory."""
    if value is None:
        return None
    path = Path(value).expanduser()
    return str(path if path.is_absolute() else base / path)


@dataclass
class MappingConfig:
    """Complete mapping configuration loaded from YAML.

    Attributes
    ----------
    name : str
        Human-readable analysis name.
    output_dir : Path
        Directory receiving maps, call info and logs.
    lesions : str or list[str]
        Glob pattern or list of lesion NIfTI files (or one 4-D file).
    behavior : str or list[float]
        File with one score per subject, or the scores themselves.
    behavior_column : str or int, optional
        Column to read when the behavior file is a table.
    covariates : str, optional
        Table of nuisance covariates (regression methods).
    covariate_columns : list[str], optional
        Subset of covariate columns to use.
    mask : str, optional
        Analysis mask; derived from lesion frequency when missing.
    method, correction, p_threshold, n_permutations, patching,
    correct_by_lesion_size, alternative, min_subjects_per_voxel,
    flip_sign, seed
        Arguments of :func:`lesion_analytics.core.run_mapping`.
    options : dict
        Method-specific options passed through to the test.
    raw : dict
        The raw parsed YAML for extension.
    """

    name: str
    output_dir: Path
    lesions: str | list[str] = field(default_factory=list)
    behavior: str | list[float] | None = None
    behavior_column: str | int | None = None
    covariates: str | None = None
    covariate_columns: list[str] | None = None
    mask: str | None = None
    method: str = "BM"
    correction: str = "fdr"
    p_threshold: float = 0.05
    n_permutations: int = 1000
    patching: bool = True
    correct_by_lesion_size: str = "none"
    alternative: str = "greater"
    min_subjects_per_voxel: str | int = "10%"
    flip_sign: bool = False
    seed: int | None = None
    options: dict[str, Any] = field(default_factory=dict)
    raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_yaml(cls, path: str | Path) -> MappingConfig:
        """Load a mapping config from a YAML file.

        Relative paths are taken relative to the YAML file.
        """
        path = Path(path)
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        base = path.parent

        lesions = data.get("lesions", [])
        if isinstance(lesions, str):
            lesions = _resolve(lesions, base)
        else:
            lesions = [_resolve(p, base) for p in lesions]

        behavior = data.get("behavior")
        if isinstance(behavior, str):
            behavior = _resolve(behavior, base)

        return cls(
            name=data.get("name", path.stem),
            output_dir=Path(_resolve(data.get("output_dir", "results"), base)),
            lesions=lesions,
            behavior=behavior,
            behavior_column=data.get("behavior_column"),
            covariates=_resolve(data.get("covariates"), base),
            covariate_columns=data.get("covariate_columns"),
            mask=_resolve(data.get("mask"), base),
            method=data.get("method", "BM"),
            correction=data.get("correction", "fdr"),
            p_threshold=float(data.get("p_threshold", 0.05)),
            n_permutations=int(data.get("n_permutations", 1000)),
            patching=bool(data.get("patching", True)),
            correct_by_lesion_size=data.get("correct_by_lesion_size", "none"),
            alternative=data.get("alternative", "greater"),
            min_subjects_per_voxel=data.get("min_subjects_per_voxel", "10%"),
            flip_sign=bool(data.get("flip_sign", False)),
            seed=data.get("seed"),
            options=data.get("options", {}) or {},
            raw=data,
        )

    def lesion_paths(self) -> list[str]:
        """Lesion files after glob expansion."""
        if isinstance(self.lesions, str):
            if any(ch in self.lesions for ch in "*?["):
                return sorted(glob.glob(self.lesions))
            return [self.lesions]
        return list(self.lesions)

    def validate(self) -> list[str]:
        """Check configuration for common errors. Returns list of problems."""
        from .core import METHOD_REGISTRY, make_test

        issues = []
        if self.method not in METHOD_REGISTRY:
            issues.append(
                f"Unknown method '{self.method}'. Available: {', '.join(METHOD_REGISTRY)}"
            )
        if self.correction not in CORRECTIONS:
            issues.append(
                f"Unknown correction '{self.correction}'. Available: {', '.join(CORRECTIONS)}"
            )
        if not 0.0 < self.p_threshold <= 1.0:
            issues.append(f"p_threshold must be in (0, 1], got {self.p_threshold}")
        try:
            normalize_alternative(self.alternative)
        except ConfigurationError:
            issues.append(f"alternative must be one of {', '.join(ALTERNATIVES)}, got '{self.alternative}'")
        if self.correct_by_lesion_size not in ("none", "voxel", "behavior"):
            issues.append(f"Unknown correct_by_lesion_size '{self.correct_by_lesion_size}'")

        if self.method in METHOD_REGISTRY and not issues:
            run_keys = {
                "peak_rank", "cluster_p_threshold", "cluster_connectivity", "binary_check",
                "deadline", "patch_info", "lesion_size",
            }
            method_options = {k: v for k, v in self.options.items() if k not in run_keys}
            try:
                test = make_test(self.method, self.alternative, self.seed, self.n_permutations,
                                 self.p_threshold, **method_options)
            except (ConfigurationError, TypeError, ValueError) as e:
                issues.append(str(e))
            else:
                if self.correction == "FWERperm" and not test.supports_fwer:
                    issues.append(f"Method '{self.method}' does not support FWERperm")
                if self.correction == "clusterPerm" and not test.supports_cluster:
                    issues.append(f"Method '{self.method}' does not support clusterPerm")
                if self.covariates and not test.accepts_covariates:
                    issues.append(f"Method '{self.method}' does not accept covariates")
        if self.correction in ("FWERperm", "clusterPerm") and self.n_permutations <= 0:
            issues.append(f"{self.correction} needs n_permutations > 0")

        if not self.lesion_paths():
            issues.append(f"No lesion files found for {self.lesions!r}")
        else:
            missing = [p for p in self.lesion_paths() if not Path(p).exists()]
            if missing:
                issues.append(f"{len(missing)} lesion files do not exist (first: {missing[0]})")
        if self.behavior is None:
            issues.append("No behavior defined")
        elif isinstance(self.behavior, str) and not Path(self.behavior).exists():
            issues.append(f"Behavior file does not exist: {self.behavior}")
        if self.covariates and not Path(self.covariates).exists():
            issues.append(f"Covariate file does not exist: {self.covariates}")
        if self.mask and not Path(self.mask).exists():
            issues.append(f"Mask file does not exist: {self.mask}")
        return issues

    def check(self) -> None:
        """Raise ConfigurationError if :meth:`validate` finds problems."""
        issues = self.validate()
        if issues:
            raise ConfigurationError("; ".join(issues))
