# src/scstate/differential_state.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

import anndata as ad
import pandas as pd

from scstate import __version__
from .config import PseudobulkDEConfig
from .de_utils import run_pseudobulk_de
from .design import build_design, sample_metadata_from_obs
from .errors import ConfigurationError
from .logging_utils import init_logging
from .pseudobulk import pseudobulk_aggregate
from .results import DEResults

LOGGER = logging.getLogger(__name__)

_UNS_SECTION = "pseudobulk_differential_state"


def _store_run(adata: ad.AnnData, cfg: PseudobulkDEConfig, results: DEResults) -> None:
    adata.uns.setdefault(cfg.store_key, {})
    design = results.design
    adata.uns[cfg.store_key][_UNS_SECTION] = {
        "version": __version__,
        "created": datetime.now().isoformat(timespec="seconds"),
        "cluster_key": str(cfg.cluster_key),
        "sample_key": str(cfg.sample_key),
        "condition_key": str(cfg.condition_key),
        "subject_key": str(cfg.subject_key) if cfg.subject_key else None,
        "counts_layer": str(cfg.counts_layer) if cfg.counts_layer else None,
        "contrast_name": design.name,
        "contrast": {str(g): float(c) for g, c in design.contrast.items()},
        "design_matrix": design.matrix.copy(),
        "options": {
            "min_cells_per_sample_group": int(cfg.min_cells_per_sample_group),
            "min_samples_per_group": int(cfg.min_samples_per_group),
            "min_total_counts": int(cfg.min_total_counts),
            "missing": str(cfg.missing),
            "size_factors": str(cfg.size_factors),
            "alpha": float(cfg.alpha),
            "min_abs_lfc": float(cfg.min_abs_lfc),
            "n_jobs": int(cfg.n_jobs),
        },
        "summary": results.summary.copy(),
        "failures": dict(results.failures),
        "results": {cl: df.copy() for cl, df in results.tables.items()},
    }


def run_differential_state(
    adata: ad.AnnData,
    cfg: PseudobulkDEConfig,
    *,
    sample_metadata: Optional[pd.DataFrame] = None,
) -> DEResults:
    """
    Pseudobulk differential-state orchestrator.

    1) sample metadata (given, or derived from adata.obs) -> design + contrast
    2) cells -> per-cluster summed pseudobulk counts
    3) per-cluster PyDESeq2 fit + BH, clusters isolated from each other

    Shared-input problems raise ConfigurationError; per-cluster problems
    end up in results.failures / results.summary.
    """
    if cfg.logfile is not None:
        init_logging(cfg.logfile)
    LOGGER.info("Starting pseudobulk differential state...")

    for key in (cfg.cluster_key, cfg.sample_key):
        if key not in adata.obs:
            raise ConfigurationError(f"{key!r} not found in adata.obs")

    if sample_metadata is None:
        sample_metadata = sample_metadata_from_obs(
            adata,
            sample_key=cfg.sample_key,
            condition_key=cfg.condition_key,
            subject_key=cfg.subject_key,
        )

    design = build_design(
        sample_metadata,
        sample_key=cfg.sample_key,
        condition_key=cfg.condition_key,
        reference=cfg.reference,
        treatment=cfg.treatment,
        contrast=cfg.contrast,
        subject_key=cfg.subject_key,
    )

    cell_samples = set(adata.obs[cfg.sample_key].dropna().astype(str).unique())
    unknown = sorted(cell_samples.difference(design.samples))
    if unknown:
        raise ConfigurationError(f"cells belong to samples missing from the sample metadata: {unknown}")

    matrices = pseudobulk_aggregate(
        adata,
        cluster_key=cfg.cluster_key,
        sample_key=cfg.sample_key,
        func="sum",
        layer=cfg.counts_layer,
        samples=list(design.samples),
        missing=cfg.missing,
        min_cells=cfg.min_cells_per_sample_group,
    )

    results = run_pseudobulk_de(
        matrices,
        design,
        options=cfg.to_options(),
        n_jobs=int(cfg.n_jobs),
    )

    n_hits = {cl: int(df.shape[0]) for cl, df in results.filtered(min_abs_lfc=cfg.min_abs_lfc, max_padj=cfg.alpha).items()}
    LOGGER.info(
        "Differential state %s: hits per cluster (|log2FC| > %.2f, padj < %.3g): %s",
        design.name, cfg.min_abs_lfc, cfg.alpha, n_hits,
    )
    if results.failures:
        LOGGER.warning("Clusters without results: %s", sorted(results.failures))

    if cfg.store and cfg.store_key:
        _store_run(adata, cfg, results)

    LOGGER.info("Finished pseudobulk differential state.")
    return results
