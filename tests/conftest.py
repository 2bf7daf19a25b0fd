"""Synthetic lesion data fixtures for testing."""

from __future__ import annotations

import numpy as np
import pytest

from lesion_analytics.lesion import LesionSet, VolumeGeometry


SHAPE = (8, 8, 4)
N_SUBJECTS = 40
AFFINE = np.diag([2.0, 2.0, 2.0, 1.0])

# critical region: lesioned in the first half of subjects, lowers the score
CRITICAL = (slice(1, 4), slice(1, 4), slice(0, 2))  # 18 voxels
# unrelated region: lesioned in 16 subjects, balanced across the critical groups
OTHER = (slice(5, 7), slice(5, 7), slice(1, 3))  # 8 voxels


def _make_lesions() -> np.ndarray:
    data = np.zeros((N_SUBJECTS, *SHAPE), dtype=bool)
    hit = np.arange(N_SUBJECTS) < N_SUBJECTS // 2
    other = np.arange(N_SUBJECTS) % 5 < 2
    for i in range(N_SUBJECTS):
        data[i][CRITICAL] = hit[i]
        data[i][OTHER] = other[i]
    # one rarely lesioned voxel, outside the default 10% mask
    data[:2, 7, 0, 3] = True
    return data


def _make_behavior(rng: np.random.Generator) -> np.ndarray:
    hit = np.arange(N_SUBJECTS) < N_SUBJECTS // 2
    other = np.arange(N_SUBJECTS) % 5 < 2
    noise = rng.normal(0, 1, N_SUBJECTS)
    # zero-mean noise in every cell, so the unrelated region has no mean effect
    for cell in (hit & other, hit & ~other, ~hit & other, ~hit & ~other):
        noise[cell] -= noise[cell].mean()
    return 20.0 - 6.0 * hit + noise


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def lesion_set():
    """40 subjects with a behavior-relevant and an unrelated lesion region."""
    data = _make_lesions()
    return LesionSet(data, VolumeGeometry(SHAPE, AFFINE))


@pytest.fixture
def behavior():
    return _make_behavior(np.random.default_rng(7))


@pytest.fixture
def critical_mask():
    mask = np.zeros(SHAPE, dtype=bool)
    mask[CRITICAL] = True
    return mask


@pytest.fixture
def lesion_files(tmp_path, lesion_set, behavior):
    """Lesion NIfTI files, a behavior file and a covariate table on disk."""
    import nibabel as nib
    import pandas as pd

    lesion_dir = tmp_path / "lesions"
    lesion_dir.mkdir()
    paths = []
    for i, volume in enumerate(lesion_set.data):
        path = lesion_dir / f"sub-{i + 1:03d}.nii.gz"
        nib.save(nib.Nifti1Image(volume.astype(np.uint8), AFFINE), str(path))
        paths.append(path)

    behavior_path = tmp_path / "behavior.txt"
    behavior_path.write_text("\n".join(f"{v:.6f}" for v in behavior) + "\n")

    covariate_path = tmp_path / "covariates.csv"
    cov_rng = np.random.default_rng(3)
    pd.DataFrame({
        "age": cov_rng.normal(60, 10, N_SUBJECTS),
        "education": cov_rng.integers(8, 20, N_SUBJECTS),
    }).to_csv(covariate_path, index=False)

    return {
        "dir": lesion_dir,
        "paths": paths,
        "behavior": behavior_path,
        "covariates": covariate_path,
    }


@pytest.fixture
def sample_config_yaml(tmp_path, lesion_files):
    """A mapping YAML config pointing to the synthetic files."""
    config_text = f"""
name: "Synthetic mapping"
output_dir: "{tmp_path / 'output'}"

lesions: "{lesion_files['dir']}/*.nii.gz"
behavior: "{lesion_files['behavior']}"

method: BMfast
correction: FWERperm
p_threshold: 0.05
n_permutations: 50
patching: true
alternative: greater
min_subjects_per_voxel: "10%"
seed: 11
"""
    config_path = tmp_path / "mapping.yaml"
    config_path.write_text(config_text)
    return config_path
