# src/scstate/design.py
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Mapping, Optional, Sequence, Tuple, Union

import anndata as ad
import numpy as np
import pandas as pd

from .errors import ConfigurationError

LOGGER = logging.getLogger(__name__)

_CONTRAST_TOL = 1e-8


@dataclass(frozen=True)
class DesignSpec:
    """
    Sample -> group design for one analysis run.

    matrix:   (samples x groups) one-hot, rows ordered by sample id,
              columns ordered by group level.
    contrast: coefficients over `groups`, summing to zero. A positive
              log2FoldChange means higher in positively weighted groups.
    subjects: optional sample -> subject labels, used as a blocking factor.
    """
    condition_key: str
    samples: Tuple[str, ...]
    groups: Tuple[str, ...]
    labels: pd.Series
    matrix: pd.DataFrame
    contrast: pd.Series
    subjects: Optional[pd.Series] = None
    reference: Optional[str] = None
    treatment: Optional[str] = None

    @property
    def name(self) -> str:
        if self.reference is not None and self.treatment is not None:
            return f"{self.treatment}_vs_{self.reference}"
        terms = [f"{c:+g}*{g}" for g, c in self.contrast.items() if c != 0]
        return " ".join(terms)

    def samples_per_group(self) -> pd.Series:
        return self.labels.value_counts().reindex(list(self.groups), fill_value=0)

    def subset(self, samples: Sequence[str]) -> "DesignSpec":
        """Restrict the design to `samples` (kept in design order); groups and contrast are unchanged."""
        wanted = {str(s) for s in samples}
        unknown = sorted(wanted.difference(self.samples))
        if unknown:
            raise ConfigurationError(f"Samples not in design: {unknown}")
        keep = [s for s in self.samples if s in wanted]
        return replace(
            self,
            samples=tuple(keep),
            labels=self.labels.loc[keep].copy(),
            matrix=self.matrix.loc[keep].copy(),
            subjects=self.subjects.loc[keep].copy() if self.subjects is not None else None,
        )


def _resolve_contrast(
    groups: Sequence[str],
    *,
    reference: Optional[str],
    treatment: Optional[str],
    contrast: Optional[Mapping[str, float]],
) -> Tuple[pd.Series, Optional[str], Optional[str]]:
    vec = pd.Series(0.0, index=pd.Index(list(groups), name="group"), name="contrast")

    if contrast is not None:
        if reference is not None or treatment is not None:
            raise ConfigurationError("Pass either contrast or reference/treatment, not both.")
        unknown = sorted(set(map(str, contrast)).difference(groups))
        if unknown:
            raise ConfigurationError(f"contrast names unknown groups {unknown}; available: {list(groups)}")
        for g, c in contrast.items():
            vec[str(g)] = float(c)
        if np.allclose(vec.to_numpy(), 0.0):
            raise ConfigurationError("contrast has no non-zero coefficients")
        if abs(float(vec.sum())) > _CONTRAST_TOL:
            raise ConfigurationError(f"contrast coefficients must sum to zero (sum={float(vec.sum()):g})")

        pos = vec.index[vec > 0].tolist()
        neg = vec.index[vec < 0].tolist()
        if len(pos) == 1 and len(neg) == 1:
            return vec, neg[0], pos[0]
        return vec, None, None

    if reference is None and treatment is None:
        if len(groups) != 2:
            raise ConfigurationError(
                f"{len(groups)} groups present ({list(groups)}); "
                "set reference/treatment or an explicit contrast."
            )
        reference, treatment = groups[0], groups[1]
    elif reference is None or treatment is None:
        given = str(reference if reference is not None else treatment)
        if given not in groups:
            raise ConfigurationError(f"{given!r} is not a group level; available: {list(groups)}")
        others = [g for g in groups if g != given]
        if len(others) != 1:
            raise ConfigurationError(
                f"Cannot infer the other side of the contrast among {others}; set both reference and treatment."
            )
        if reference is None:
            reference, treatment = others[0], given
        else:
            reference, treatment = given, others[0]

    reference, treatment = str(reference), str(treatment)
    for lvl in (reference, treatment):
        if lvl not in groups:
            raise ConfigurationError(f"{lvl!r} is not a group level; available: {list(groups)}")
    if reference == treatment:
        raise ConfigurationError("reference and treatment must differ")

    vec[treatment] = 1.0
    vec[reference] = -1.0
    return vec, reference, treatment


def build_design(
    sample_metadata: pd.DataFrame,
    *,
    sample_key: str = "sample_id",
    condition_key: str = "condition",
    reference: Optional[str] = None,
    treatment: Optional[str] = None,
    contrast: Optional[Mapping[str, float]] = None,
    subject_key: Optional[str] = None,
) -> DesignSpec:
    """
    Build the sample design matrix and contrast vector from per-sample metadata.

    sample_metadata must hold one row per sample with `sample_key` (column or
    index name) and a non-missing `condition_key`. Raises ConfigurationError
    for anything that makes the contrast non-estimable.
    """
    md = sample_metadata
    if sample_key not in md.columns and md.index.name == sample_key:
        md = md.reset_index()

    required = [sample_key, condition_key] + ([subject_key] if subject_key else [])
    missing_cols = [c for c in required if c not in md.columns]
    if missing_cols:
        raise ConfigurationError(f"sample metadata is missing columns {missing_cols}")

    if md[sample_key].isna().any():
        raise ConfigurationError("sample metadata has rows without a sample identifier")
    ids = md[sample_key].astype(str)
    dup = ids[ids.duplicated()].unique().tolist()
    if dup:
        raise ConfigurationError(f"duplicate sample identifiers in sample metadata: {sorted(dup)}")

    lab = md[condition_key]
    if lab.isna().any():
        bad = ids[lab.isna().to_numpy()].tolist()
        raise ConfigurationError(f"samples without a {condition_key!r} label: {sorted(bad)}")

    labels = pd.Series(lab.astype(str).to_numpy(), index=pd.Index(ids.to_numpy(), name=sample_key), name=condition_key)
    labels = labels.sort_index()
    samples = tuple(labels.index.tolist())

    groups = tuple(sorted(pd.unique(labels.to_numpy()).tolist()))
    if len(groups) < 2:
        raise ConfigurationError(
            f"Need at least two distinct {condition_key!r} groups to estimate a contrast, got {list(groups)}"
        )

    vec, ref, trt = _resolve_contrast(groups, reference=reference, treatment=treatment, contrast=contrast)

    onehot = (labels.to_numpy()[:, None] == np.asarray(groups, dtype=object)[None, :]).astype(float)
    matrix = pd.DataFrame(
        onehot,
        index=labels.index.copy(),
        columns=pd.Index(list(groups), name=condition_key),
    )

    subjects = None
    if subject_key:
        subj = md[subject_key]
        if subj.isna().any():
            bad = ids[subj.isna().to_numpy()].tolist()
            raise ConfigurationError(f"samples without a {subject_key!r} label: {sorted(bad)}")
        subjects = pd.Series(subj.astype(str).to_numpy(), index=pd.Index(ids.to_numpy(), name=sample_key), name=subject_key)
        subjects = subjects.loc[list(samples)]

    design = DesignSpec(
        condition_key=str(condition_key),
        samples=samples,
        groups=groups,
        labels=labels,
        matrix=matrix,
        contrast=vec,
        subjects=subjects,
        reference=ref,
        treatment=trt,
    )
    LOGGER.info(
        "Design: %d samples, groups=%s, contrast=%s",
        len(samples), list(groups), design.name,
    )
    return design


def sample_metadata_from_obs(
    adata: Union[ad.AnnData, pd.DataFrame],
    *,
    sample_key: str,
    condition_key: str,
    subject_key: Optional[str] = None,
) -> pd.DataFrame:
    """
    Derive the per-sample metadata table from cell-level obs.

    Each sample must map to exactly one condition (and subject, if given).
    Adds `n_cells`.
    """
    obs = adata.obs if isinstance(adata, ad.AnnData) else adata
    cols = [sample_key, condition_key] + ([subject_key] if subject_key else [])
    missing = [c for c in cols if c not in obs]
    if missing:
        raise ConfigurationError(f"obs is missing columns {missing}")

    df = obs.loc[:, cols].astype(str)
    # astype(str) turns NaN into "nan"; check the raw columns instead
    for c in cols[1:]:
        if obs[c].isna().any():
            raise ConfigurationError(f"cells without a {c!r} label")

    for c in cols[1:]:
        n_levels = df.groupby(sample_key)[c].nunique()
        conflicting = n_levels.index[n_levels > 1].tolist()
        if conflicting:
            raise ConfigurationError(f"samples mapped to more than one {c!r}: {sorted(conflicting)}")

    out = df.drop_duplicates(subset=[sample_key]).set_index(sample_key)
    out["n_cells"] = df.groupby(sample_key).size().reindex(out.index).astype(int)
    out = out.sort_index().reset_index()
    return out
