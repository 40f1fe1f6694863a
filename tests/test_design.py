# tests/test_design.py

import numpy as np
import pandas as pd
import pytest
import anndata as ad

from scstate.design import build_design, sample_metadata_from_obs
from scstate.errors import ConfigurationError


def sample_table(conditions=None):
    conditions = conditions or {"stim2": "stim", "ctrl1": "ctrl", "stim1": "stim", "ctrl2": "ctrl"}
    return pd.DataFrame(
        {
            "sample_id": list(conditions.keys()),
            "condition": list(conditions.values()),
            "patient": ["p2", "p1", "p1", "p2"][: len(conditions)],
        }
    )


# -----------------------------------------------------------------------------
# Two-group designs
# -----------------------------------------------------------------------------
def test_two_groups_default_contrast():
    d = build_design(sample_table())

    assert d.samples == ("ctrl1", "ctrl2", "stim1", "stim2")
    assert d.groups == ("ctrl", "stim")
    assert d.reference == "ctrl"
    assert d.treatment == "stim"
    assert d.name == "stim_vs_ctrl"

    assert d.contrast.to_dict() == {"ctrl": -1.0, "stim": 1.0}
    assert d.contrast.sum() == 0.0

    expected = np.array([[1, 0], [1, 0], [0, 1], [0, 1]], dtype=float)
    np.testing.assert_array_equal(d.matrix.to_numpy(), expected)
    assert list(d.matrix.index) == list(d.samples)
    assert list(d.matrix.columns) == ["ctrl", "stim"]


def test_explicit_reference_flips_sign():
    d = build_design(sample_table(), reference="stim")
    assert d.treatment == "ctrl"
    assert d.contrast.to_dict() == {"ctrl": 1.0, "stim": -1.0}


def test_metadata_indexed_by_sample():
    md = sample_table().set_index("sample_id")
    d = build_design(md, sample_key="sample_id")
    assert d.samples == ("ctrl1", "ctrl2", "stim1", "stim2")


def test_samples_per_group():
    d = build_design(sample_table())
    assert d.samples_per_group().to_dict() == {"ctrl": 2, "stim": 2}


def test_subjects_are_aligned_to_samples():
    d = build_design(sample_table(), subject_key="patient")
    assert d.subjects.to_dict() == {"ctrl1": "p1", "ctrl2": "p2", "stim1": "p1", "stim2": "p2"}


# -----------------------------------------------------------------------------
# Failures
# -----------------------------------------------------------------------------
def test_single_group_is_configuration_error():
    md = sample_table({"a": "ctrl", "b": "ctrl"})
    with pytest.raises(ConfigurationError):
        build_design(md)


def test_duplicate_sample_ids():
    md = pd.DataFrame({"sample_id": ["s1", "s1", "s2"], "condition": ["ctrl", "ctrl", "stim"]})
    with pytest.raises(ConfigurationError, match="duplicate"):
        build_design(md)


def test_missing_group_label():
    md = pd.DataFrame({"sample_id": ["s1", "s2", "s3"], "condition": ["ctrl", None, "stim"]})
    with pytest.raises(ConfigurationError, match="s2"):
        build_design(md)


def test_missing_column():
    md = pd.DataFrame({"sample_id": ["s1", "s2"], "group": ["ctrl", "stim"]})
    with pytest.raises(ConfigurationError):
        build_design(md)


def test_unknown_reference():
    with pytest.raises(ConfigurationError):
        build_design(sample_table(), reference="placebo")


def test_configuration_error_is_value_error():
    with pytest.raises(ValueError):
        build_design(sample_table({"a": "ctrl", "b": "ctrl"}))


# -----------------------------------------------------------------------------
# More than two groups
# -----------------------------------------------------------------------------
def three_groups():
    return pd.DataFrame(
        {
            "sample_id": [f"s{i}" for i in range(6)],
            "condition": ["a", "a", "b", "b", "c", "c"],
        }
    )


def test_three_groups_need_explicit_contrast():
    with pytest.raises(ConfigurationError):
        build_design(three_groups())

    with pytest.raises(ConfigurationError):
        build_design(three_groups(), reference="a")


def test_three_groups_pairwise():
    d = build_design(three_groups(), reference="a", treatment="c")
    assert d.contrast.to_dict() == {"a": -1.0, "b": 0.0, "c": 1.0}
    assert d.name == "c_vs_a"


def test_three_groups_explicit_contrast():
    d = build_design(three_groups(), contrast={"a": -0.5, "b": -0.5, "c": 1.0})
    assert d.contrast.to_dict() == {"a": -0.5, "b": -0.5, "c": 1.0}
    assert d.reference is None and d.treatment is None
    assert "c" in d.name


@pytest.mark.parametrize(
    "contrast",
    [
        {"a": -1.0, "c": 0.5},
        {"a": 0.0, "c": 0.0},
        {"a": -1.0, "z": 1.0},
    ],
)
def test_bad_contrasts(contrast):
    with pytest.raises(ConfigurationError):
        build_design(three_groups(), contrast=contrast)


def test_contrast_and_pair_are_exclusive():
    with pytest.raises(ConfigurationError):
        build_design(three_groups(), contrast={"a": -1.0, "c": 1.0}, reference="a")


# -----------------------------------------------------------------------------
# subset
# -----------------------------------------------------------------------------
def test_subset_keeps_design_order_and_contrast():
    d = build_design(sample_table(), subject_key="patient")
    sub = d.subset(["stim2", "ctrl1", "stim1"])

    assert sub.samples == ("ctrl1", "stim1", "stim2")
    assert sub.samples_per_group().to_dict() == {"ctrl": 1, "stim": 2}
    assert sub.contrast.equals(d.contrast)
    assert list(sub.subjects.index) == ["ctrl1", "stim1", "stim2"]
    # original untouched
    assert d.samples == ("ctrl1", "ctrl2", "stim1", "stim2")


def test_subset_unknown_sample():
    d = build_design(sample_table())
    with pytest.raises(ConfigurationError):
        d.subset(["ctrl1", "ghost"])


# -----------------------------------------------------------------------------
# sample_metadata_from_obs
# -----------------------------------------------------------------------------
def obs_adata(conditions):
    obs = pd.DataFrame(
        {
            "sample_id": [s for s, _ in conditions],
            "condition": [c for _, c in conditions],
        },
        index=[f"cell{i}" for i in range(len(conditions))],
    )
    return ad.AnnData(X=np.zeros((len(conditions), 2)), obs=obs)


def test_sample_metadata_from_obs_counts_cells():
    adata = obs_adata([("s2", "stim"), ("s1", "ctrl"), ("s1", "ctrl"), ("s2", "stim"), ("s2", "stim")])
    md = sample_metadata_from_obs(adata, sample_key="sample_id", condition_key="condition")

    assert md["sample_id"].tolist() == ["s1", "s2"]
    assert md["condition"].tolist() == ["ctrl", "stim"]
    assert md["n_cells"].tolist() == [2, 3]


def test_sample_metadata_from_obs_conflicting_condition():
    adata = obs_adata([("s1", "ctrl"), ("s1", "stim"), ("s2", "stim")])
    with pytest.raises(ConfigurationError, match="s1"):
        sample_metadata_from_obs(adata, sample_key="sample_id", condition_key="condition")


def test_sample_metadata_from_obs_missing_column():
    adata = obs_adata([("s1", "ctrl")])
    with pytest.raises(ConfigurationError):
        sample_metadata_from_obs(adata, sample_key="sample_id", condition_key="treatment")
