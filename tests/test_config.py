import pytest
from pathlib import Path

from scstate.config import PseudobulkDEConfig
from scstate.de_utils import PseudobulkDEOptions


# -------------------------------------------------------------------------
# Defaults
# -------------------------------------------------------------------------
def test_defaults():
    cfg = PseudobulkDEConfig()

    assert cfg.sample_key == "sample_id"
    assert cfg.missing == "omit"
    assert cfg.size_factors == "poscounts"
    assert cfg.min_samples_per_group == 2
    assert cfg.n_jobs >= 1
    assert cfg.store_key == "scstate_de"


def test_to_options_carries_gates():
    cfg = PseudobulkDEConfig(min_total_counts=3, min_samples_per_group=3, alpha=0.1, size_factors="ratio")
    opts = cfg.to_options()

    assert isinstance(opts, PseudobulkDEOptions)
    assert opts.min_total_counts == 3
    assert opts.min_samples_per_group == 3
    assert opts.alpha == pytest.approx(0.1)
    assert opts.size_factors == "ratio"


def test_policies_are_normalized():
    cfg = PseudobulkDEConfig(missing=" Zero ", size_factors="POSCOUNTS")
    assert cfg.missing == "zero"
    assert cfg.size_factors == "poscounts"

    with pytest.raises(ValueError):
        PseudobulkDEConfig(missing="drop")


# -------------------------------------------------------------------------
# Validators
# -------------------------------------------------------------------------
def test_min_samples_per_group_at_least_two():
    with pytest.raises(ValueError):
        PseudobulkDEConfig(min_samples_per_group=1)


def test_min_total_counts_at_least_one():
    with pytest.raises(ValueError):
        PseudobulkDEConfig(min_total_counts=0)


def test_reference_and_treatment_must_differ():
    with pytest.raises(ValueError):
        PseudobulkDEConfig(reference="ctrl", treatment="ctrl")

    cfg = PseudobulkDEConfig(reference="ctrl", treatment="stim")
    assert cfg.treatment == "stim"


def test_contrast_excludes_reference_treatment():
    with pytest.raises(ValueError):
        PseudobulkDEConfig(contrast={"stim": 1.0, "ctrl": -1.0}, reference="ctrl")


def test_contrast_must_sum_to_zero():
    with pytest.raises(ValueError):
        PseudobulkDEConfig(contrast={"stim": 1.0, "ctrl": -0.5})

    cfg = PseudobulkDEConfig(contrast={"a": -0.5, "b": -0.5, "c": 1.0})
    assert cfg.contrast["c"] == 1.0


def test_keys_must_be_distinct():
    with pytest.raises(ValueError):
        PseudobulkDEConfig(sample_key="donor", subject_key="donor")


def test_logfile_coerced_to_path(tmp_path):
    cfg = PseudobulkDEConfig(logfile=str(tmp_path / "de.log"))
    assert isinstance(cfg.logfile, Path)
