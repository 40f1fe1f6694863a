from __future__ import annotations

from pydantic import BaseModel, Field, validator, model_validator
from pathlib import Path
from typing import Optional, Dict, Literal
import multiprocessing

from .de_utils import PseudobulkDEOptions


# ---------------------------------------------------------------------
# PSEUDOBULK DIFFERENTIAL STATE CONFIG
# ---------------------------------------------------------------------
class PseudobulkDEConfig(BaseModel):

    # ---- Keys in adata.obs / sample metadata ----
    sample_key: str = Field("sample_id", description="Sample identifier column")
    cluster_key: str = Field("leiden", description="Cluster / cell-type label column")
    condition_key: str = Field("condition", description="Group label column in the sample metadata")
    subject_key: Optional[str] = Field(
        None,
        description="Optional patient/subject column, added to the design as a blocking factor",
    )

    # ---- Counts ----
    counts_layer: Optional[str] = Field(
        "counts_raw",
        description="Layer holding raw counts. None falls back to adata.X (must be raw counts).",
    )

    # ---- Contrast ----
    reference: Optional[str] = None
    treatment: Optional[str] = None
    contrast: Optional[Dict[str, float]] = Field(
        None,
        description="Explicit group -> coefficient mapping. Coefficients must sum to zero.",
    )

    # ---- Library / sample gates ----
    min_cells_per_sample_group: int = Field(1, ge=1)
    min_samples_per_group: int = Field(2, ge=2)
    min_total_counts: int = Field(10, ge=1)
    missing: Literal["omit", "zero", "error"] = "omit"

    # ---- Model ----
    size_factors: Literal["poscounts", "ratio", "ratio_then_poscounts"] = "poscounts"

    # ---- Thresholds for filtered tables ----
    alpha: float = Field(0.05, gt=0.0, le=1.0)
    min_abs_lfc: float = Field(1.0, ge=0.0)

    # ---- Compute ----
    n_jobs: int = Field(
        default_factory=lambda: max(1, multiprocessing.cpu_count() - 1),
        description="Total CPUs shared between cluster workers and PyDESeq2 inference.",
    )

    # ---- Storage ----
    store: bool = True
    store_key: str = "scstate_de"

    # ---- Logging ----
    logfile: Optional[Path] = None

    @validator("missing", "size_factors", pre=True)
    def lower_policy(cls, v):
        return v.lower().strip() if isinstance(v, str) else v

    @model_validator(mode="after")
    def check_contrast(self):
        if self.contrast is not None and (self.reference is not None or self.treatment is not None):
            raise ValueError("contrast cannot be combined with reference/treatment")
        if self.reference is not None and self.reference == self.treatment:
            raise ValueError("reference and treatment must differ")
        if self.contrast is not None:
            if not self.contrast:
                raise ValueError("contrast must name at least two groups")
            if abs(sum(self.contrast.values())) > 1e-8:
                raise ValueError("contrast coefficients must sum to zero")
        return self

    @model_validator(mode="after")
    def check_keys_distinct(self):
        keys = [self.sample_key, self.cluster_key, self.condition_key]
        if self.subject_key is not None:
            keys.append(self.subject_key)
        if len(set(keys)) != len(keys):
            raise ValueError(f"sample/cluster/condition/subject keys must be distinct, got {keys}")
        return self

    def to_options(self) -> PseudobulkDEOptions:
        return PseudobulkDEOptions(
            min_samples_per_group=int(self.min_samples_per_group),
            min_total_counts=int(self.min_total_counts),
            size_factors=str(self.size_factors),
            alpha=float(self.alpha),
        )
