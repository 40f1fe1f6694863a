# src/scstate/de_utils.py
from __future__ import annotations

import logging
import multiprocessing as mp
import time
import warnings
from concurrent.futures import ProcessPoolExecutor, TimeoutError, as_completed
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

import numpy as np
import pandas as pd
from statsmodels.stats.multitest import multipletests

from .design import DesignSpec
from .errors import ConfigurationError, InsufficientDataError
from .pseudobulk import PseudobulkMatrix
from .results import RESULT_COLUMNS, DEResults, empty_result_table, rank_results

LOGGER = logging.getLogger(__name__)

# Column names handed to PyDESeq2; formula terms are built from these
_GROUP_FACTOR = "group"
_SUBJECT_FACTOR = "subject"


# -----------------------------------------------------------------------------
# Pseudobulk DE (PyDESeq2 only)
# -----------------------------------------------------------------------------
# Per cluster:
#   1) restrict the run design to the cluster's libraries, check estimability
#   2) drop genes below min_total_counts (zero-total genes always go)
#   3) median-of-ratios size factors (unit when too few genes), trend-shrunk
#      NB dispersions, NB GLM
#   4) Wald test of the contrast vector on the treatment-coded coefficients
#   5) Benjamini-Hochberg over all tested genes of the cluster
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class PseudobulkDEOptions:
    min_samples_per_group: int = 2
    min_total_counts: int = 10
    size_factors: str = "poscounts"
    alpha: float = 0.05
    heartbeat_s: float = 60.0


def _require_pydeseq2():
    try:
        import pydeseq2  # noqa: F401
    except Exception as e:
        raise ImportError(
            "PyDESeq2 is required for pseudobulk DE in scstate. "
            "Install it (and its deps) in your environment."
        ) from e


def _compute_cluster_parallelism(
    *,
    n_clusters: int,
    total_cpus: int,
) -> tuple[int, int]:
    """
    Decide (n_jobs, n_cpus_per_job) for cluster-wise pseudobulk DE.

    Rules:
      - If total_cpus <= n_clusters:
          n_jobs = total_cpus
          n_cpus = 1
      - Else:
          n_jobs = n_clusters
          n_cpus = 1 + floor((total_cpus - n_clusters) / n_clusters)
    """
    total_cpus = int(max(1, total_cpus))
    n_clusters = int(max(1, n_clusters))

    if total_cpus <= n_clusters:
        return total_cpus, 1

    extra = total_cpus - n_clusters
    n_cpus = 1 + (extra // n_clusters)
    return n_clusters, n_cpus


# -----------------------------------------------------------------------------
# Design helpers
# -----------------------------------------------------------------------------
def _cluster_metadata(design: DesignSpec) -> pd.DataFrame:
    """PyDESeq2 metadata (samples x factors) with the reference group as first category."""
    meta = pd.DataFrame(index=pd.Index(list(design.samples), name="sample"))
    meta[_GROUP_FACTOR] = pd.Categorical(
        design.labels.loc[list(design.samples)].to_numpy(),
        categories=list(design.groups),
    )
    if design.subjects is not None:
        subj = design.subjects.loc[list(design.samples)].astype(str)
        meta[_SUBJECT_FACTOR] = pd.Categorical(subj.to_numpy(), categories=sorted(pd.unique(subj.to_numpy())))
    return meta


def _design_formula(design: DesignSpec) -> str:
    if design.subjects is not None:
        return f"~{_SUBJECT_FACTOR} + {_GROUP_FACTOR}"
    return f"~{_GROUP_FACTOR}"


def _treatment_coded_matrix(design: DesignSpec) -> np.ndarray:
    """Intercept + group dummies (reference dropped) + subject dummies (first dropped)."""
    meta = _cluster_metadata(design)
    parts = [np.ones((meta.shape[0], 1))]
    grp = pd.get_dummies(meta[_GROUP_FACTOR], drop_first=True, dtype=float)
    parts.append(grp.to_numpy())
    if _SUBJECT_FACTOR in meta:
        subj = pd.get_dummies(meta[_SUBJECT_FACTOR], drop_first=True, dtype=float)
        parts.append(subj.to_numpy())
    return np.hstack(parts)


def _check_estimable(design: DesignSpec, *, cluster: str, min_samples_per_group: int) -> None:
    per_group = design.samples_per_group()
    too_few = per_group[per_group < int(min_samples_per_group)]
    if not too_few.empty:
        raise InsufficientDataError(
            f"cluster {cluster!r}: fewer than {int(min_samples_per_group)} samples in "
            f"{design.condition_key!r} group(s) {too_few.to_dict()}",
            cluster=cluster,
        )

    X = _treatment_coded_matrix(design)
    n, p = X.shape
    rank = int(np.linalg.matrix_rank(X))
    if rank < p:
        raise InsufficientDataError(
            f"cluster {cluster!r}: design is rank deficient (rank {rank} < {p} coefficients)",
            cluster=cluster,
        )
    if n - p < 1:
        raise InsufficientDataError(
            f"cluster {cluster!r}: no residual degrees of freedom ({n} samples, {p} coefficients)",
            cluster=cluster,
        )


def _contrast_vector(columns, contrast: pd.Series) -> np.ndarray:
    """
    Map a contrast over group means onto treatment-coded coefficients.

    With mu_ref = b0 and mu_k = b0 + b_k, c.mu = (sum c) b0 + sum_k c_k b_k,
    and sum c = 0, so each group column takes its own coefficient and the
    intercept / subject columns take 0.
    """
    prefix = f"{_GROUP_FACTOR}["
    vec = np.zeros(len(columns), dtype=float)
    seen = set()
    for j, col in enumerate(map(str, columns)):
        if not (col.startswith(prefix) and col.endswith("]")):
            continue
        level = col[len(prefix):-1]
        if level.startswith("T."):
            level = level[2:]
        if level in contrast.index:
            vec[j] = float(contrast[level])
            seen.add(level)

    reference = contrast.index[0]
    expected = {g for g, c in contrast.items() if c != 0 and g != reference}
    if expected - seen:
        raise RuntimeError(
            f"could not locate design columns for groups {sorted(expected - seen)} in {list(columns)}"
        )
    return vec


def _bh_adjust(pvalues: pd.Series) -> pd.Series:
    """Benjamini-Hochberg over the non-missing p-values; NaN stays NaN."""
    p = pd.to_numeric(pvalues, errors="coerce")
    out = pd.Series(np.nan, index=p.index, dtype=float)
    ok = p.notna().to_numpy()
    if ok.any():
        _, padj, _, _ = multipletests(p.to_numpy()[ok], method="fdr_bh")
        out.iloc[np.where(ok)[0]] = padj
    return out


# -----------------------------------------------------------------------------
# PyDESeq2 fit for one cluster
# -----------------------------------------------------------------------------
# Fewer genes than this cannot anchor median-of-ratios; the cluster's
# libraries are then compared on raw depth (unit size factors).
_MIN_SIZE_FACTOR_GENES = 10


def _choose_size_factors(
    counts: pd.DataFrame,
    policy: str,
    *,
    min_genes: int = _MIN_SIZE_FACTOR_GENES,
) -> str:
    """
    Resolve a size factor policy to the mode that is actually fitted.

      - "ratio" needs genes without zeros. With none, PyDESeq2 fits
        "iterative" instead, so that is what gets recorded.
      - "poscounts" needs genes whose positive counts have a geometric
        mean above 1.
      - "ratio_then_poscounts" is "ratio" when at least `min_genes` genes
        have no zeros, else "poscounts".
      - "unit" when fewer than `min_genes` genes support the chosen mode.
    """
    X = counts.to_numpy(dtype=float)
    n_ratio = int((X > 0).all(axis=0).sum())
    logmeans = np.log(np.where(X > 0, X, 1.0)).mean(axis=0)
    n_pos = int((logmeans > 0).sum())

    policy = str(policy).lower().strip()
    if policy == "ratio_then_poscounts":
        policy = "ratio" if n_ratio >= int(min_genes) else "poscounts"

    if policy == "ratio":
        mode, usable = ("ratio", n_ratio) if n_ratio > 0 else ("iterative", int(X.shape[1]))
    elif policy == "poscounts":
        mode, usable = "poscounts", n_pos
    else:
        raise ConfigurationError(f"unknown size factor policy {policy!r}")

    if usable < int(min_genes):
        return "unit"
    return mode


def _deseq2_unit_size_factors(dds) -> None:
    """dds.deseq2() with every size factor fixed at 1."""
    dds.obs["size_factors"] = 1.0
    dds.layers["normed_counts"] = np.asarray(dds.X, dtype=float)
    dds.var["_normed_means"] = dds.layers["normed_counts"].mean(axis=0)

    dds.fit_genewise_dispersions()
    dds.fit_dispersion_trend()
    dds.fit_dispersion_prior()
    dds.fit_MAP_dispersions()
    dds.fit_LFC()
    dds.calculate_cooks()
    if dds.refit_cooks:
        dds.refit()
    dds.cooks_outlier()


def _run_pydeseq2(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    *,
    design_formula: str,
    contrast: pd.Series,
    cluster: Optional[str] = None,
    n_cpus: int = 1,
    size_factors: str = "poscounts",
) -> tuple[pd.DataFrame, Dict[str, Any]]:
    """
    Fit one cluster with PyDESeq2 and test the contrast.

    Returns: (results_df, meta)
      meta includes the size factor mode actually used and captured warnings.
    """
    _require_pydeseq2()
    from pydeseq2.dds import DeseqDataSet
    from pydeseq2.default_inference import DefaultInference
    from pydeseq2.ds import DeseqStats

    counts = counts.loc[metadata.index]
    counts_i = counts.round().astype(np.int64)
    inference = DefaultInference(n_cpus=int(n_cpus))

    sf_used = _choose_size_factors(counts_i, size_factors)
    meta: Dict[str, Any] = {
        "sf_policy": str(size_factors),
        "sf_used": sf_used,
        "warn_iterative_size_factors": False,
        "warn_low_df_dispersion": False,
        "warnings": [],
    }
    if sf_used == "unit":
        LOGGER.warning(
            "cluster %s: fewer than %d genes support %r size factors; using unit size factors.",
            cluster, _MIN_SIZE_FACTOR_GENES, str(size_factors),
        )

    with warnings.catch_warnings(record=True) as wrec:
        warnings.simplefilter("always")
        warnings.filterwarnings(
            "error",
            message=r"The design matrix is not full rank.*",
            category=UserWarning,
        )

        try:
            dds = DeseqDataSet(
                counts=counts_i,
                metadata=metadata.copy(),
                design=design_formula,
                refit_cooks=True,
                size_factors_fit_type="ratio" if sf_used == "unit" else sf_used,
                inference=inference,
                quiet=True,
            )
            if sf_used == "unit":
                _deseq2_unit_size_factors(dds)
            else:
                dds.deseq2()
        except UserWarning as uw:
            # design matrix not full rank
            raise InsufficientDataError(str(uw), cluster=cluster) from uw

        stat = DeseqStats(
            dds,
            contrast=_contrast_vector(dds.obsm["design_matrix"].columns, contrast),
            inference=inference,
            quiet=True,
        )
        stat.summary()

    for ww in wrec:
        msg = str(getattr(ww, "message", ww))
        meta["warnings"].append(msg)

        if "Iterative size factor fitting did not converge" in msg:
            meta["warn_iterative_size_factors"] = True
        if "residual degrees of freedom is less than 3" in msg:
            meta["warn_low_df_dispersion"] = True

    res = stat.results_df.copy()
    res.index = res.index.astype(str)
    res["gene"] = res.index.to_numpy()
    return res.reset_index(drop=True), meta




def fit_cluster_de(
    matrix: PseudobulkMatrix,
    design: DesignSpec,
    *,
    options: PseudobulkDEOptions = PseudobulkDEOptions(),
    n_cpus: int = 1,
) -> Tuple[pd.DataFrame, Dict[str, Any]]:
    """
    Differential test of `design.contrast` for one cluster's pseudobulk counts.

    Returns (table, meta). The table has RESULT_COLUMNS; log2FoldChange > 0
    means higher in the positively weighted (treatment) groups. padj is BH
    over every gene tested in this cluster.

    Raises InsufficientDataError when the cluster cannot be fitted.
    """
    cl = str(matrix.cluster)
    if matrix.func != "sum":
        raise ConfigurationError(f"cluster {cl!r}: DE needs summed counts, got func={matrix.func!r}")

    unknown = sorted(set(matrix.samples).difference(design.samples))
    if unknown:
        raise ConfigurationError(f"cluster {cl!r}: samples missing from the design: {unknown}")

    # zero-filled libraries carry no cells and would get a zero size factor
    live = [s for s in matrix.samples if int(matrix.n_cells.get(s, 0)) > 0]
    if len(live) < len(matrix.samples):
        LOGGER.debug("cluster %s: ignoring %d empty libraries", cl, len(matrix.samples) - len(live))

    sub = design.subset(live)
    _check_estimable(sub, cluster=cl, min_samples_per_group=options.min_samples_per_group)

    counts = matrix.to_counts().loc[list(sub.samples)]
    totals = counts.sum(axis=0)
    keep = (totals >= max(1, int(options.min_total_counts))).to_numpy()
    if not keep.any():
        raise InsufficientDataError(
            f"cluster {cl!r}: no genes with >= {int(options.min_total_counts)} total counts",
            cluster=cl,
        )
    counts = counts.loc[:, keep]

    metadata = _cluster_metadata(sub)
    counts.index = metadata.index

    res, meta = _run_pydeseq2(
        counts,
        metadata,
        design_formula=_design_formula(sub),
        contrast=sub.contrast,
        cluster=cl,
        n_cpus=n_cpus,
        size_factors=options.size_factors,
    )

    res["padj"] = _bh_adjust(res["pvalue"]).to_numpy()
    res["cluster"] = cl
    for c in RESULT_COLUMNS:
        if c not in res.columns:
            res[c] = np.nan
    table = rank_results(res[RESULT_COLUMNS])

    meta.update(
        {
            "n_samples": int(len(sub.samples)),
            "n_genes_total": int(matrix.values.shape[0]),
            "n_genes_tested": int(table.shape[0]),
            "n_sig": int((pd.to_numeric(table["padj"], errors="coerce") < float(options.alpha)).sum()),
        }
    )
    return table, meta


def _de_cluster_worker(payload: dict) -> tuple[str, pd.DataFrame, dict]:
    """
    Worker: run PyDESeq2 for a single cluster.
    Returns (cluster_id, result_df, summary_meta_updates)
    """
    cl = str(payload["cluster"])
    try:
        res, meta = fit_cluster_de(
            payload["matrix"],
            payload["design"],
            options=payload["options"],
            n_cpus=int(payload["n_cpus"]),
        )
    except InsufficientDataError as e:
        return cl, empty_result_table(), {"status": "insufficient", "reason": str(e)}
    except ConfigurationError:
        raise
    except Exception as e:
        return cl, empty_result_table(), {"status": "failed", "reason": f"{type(e).__name__}: {e}"}

    return cl, res, {
        "status": "ok",
        "reason": None,
        "n_samples": meta.get("n_samples"),
        "n_genes_tested": meta.get("n_genes_tested"),
        "n_sig": meta.get("n_sig"),
        "sf_policy": meta.get("sf_policy"),
        "sf_used": meta.get("sf_used"),
        "warn_iterative_size_factors": meta.get("warn_iterative_size_factors"),
        "warn_low_df_dispersion": meta.get("warn_low_df_dispersion"),
    }


# -----------------------------------------------------------------------------
# All clusters
# -----------------------------------------------------------------------------
def run_pseudobulk_de(
    matrices: Mapping[str, PseudobulkMatrix],
    design: DesignSpec,
    *,
    options: PseudobulkDEOptions = PseudobulkDEOptions(),
    n_jobs: int = 1,
) -> DEResults:
    """
    Test every cluster independently. A cluster that cannot be fitted is
    recorded in `failures` and `summary`; the others still run. Results are
    keyed and ordered by cluster id, independent of completion order.
    """
    for cl, m in matrices.items():
        if m.func != "sum":
            raise ConfigurationError(f"cluster {cl!r}: DE needs summed counts, got func={m.func!r}")
        unknown = sorted(set(m.samples).difference(design.samples))
        if unknown:
            raise ConfigurationError(f"cluster {cl!r}: samples missing from the design: {unknown}")

    clusters = sorted(str(c) for c in matrices)
    n_clusters = int(len(clusters))

    n_jobs_eff, n_cpus_eff = _compute_cluster_parallelism(
        n_clusters=n_clusters,
        total_cpus=int(n_jobs),
    )
    LOGGER.info(
        "Pseudobulk DE (%s) parallelism: n_clusters=%d, total_cpus=%d → n_jobs=%d, n_cpus_per_job=%d",
        design.name, n_clusters, int(n_jobs), int(n_jobs_eff), int(n_cpus_eff),
    )

    payloads = [
        {
            "cluster": cl,
            "matrix": matrices[cl],
            "design": design,
            "options": options,
            "n_cpus": int(n_cpus_eff),
        }
        for cl in clusters
    ]

    outcomes: Dict[str, Tuple[pd.DataFrame, dict]] = {}
    t0 = time.perf_counter()
    total = int(len(payloads))

    def _record(done: int, cl: str, res: pd.DataFrame, meta_upd: dict, dt: float) -> None:
        meta_upd = dict(meta_upd)
        meta_upd["runtime_s"] = float(dt)
        outcomes[cl] = (res, meta_upd)
        elapsed = time.perf_counter() - t0
        eta_s = (elapsed / max(1, done)) * (total - done)
        LOGGER.info(
            "PB DE [%d/%d] done  cluster=%s status=%s n_sig=%s time=%.1fs elapsed=%.1fs eta=%.1fs",
            done, total, cl,
            meta_upd.get("status", "unknown"),
            meta_upd.get("n_sig", "NA"),
            dt, elapsed, eta_s,
        )
        if meta_upd.get("status") != "ok":
            LOGGER.warning("PB DE cluster=%s %s: %s", cl, meta_upd.get("status"), meta_upd.get("reason"))

    if total == 0:
        LOGGER.info("Pseudobulk DE: no clusters to test.")
    elif int(n_jobs_eff) <= 1 or total <= 1:
        LOGGER.info("Pseudobulk DE: running serially (payloads=%d).", total)
        for i, p in enumerate(payloads, start=1):
            t_cl0 = time.perf_counter()
            LOGGER.info(
                "PB DE [%d/%d] start cluster=%s (libs=%d, genes=%d, n_cpus=%d)",
                i, total, p["cluster"], len(p["matrix"].samples), len(p["matrix"].genes), p["n_cpus"],
            )
            cl, res, meta_upd = _de_cluster_worker(p)
            _record(i, cl, res, meta_upd, time.perf_counter() - t_cl0)
    else:
        ctx = mp.get_context("spawn")
        heartbeat_s = float(options.heartbeat_s)
        LOGGER.info(
            "Pseudobulk DE: running in parallel (payloads=%d, max_workers=%d, n_cpus_per_fit=%d, heartbeat=%.0fs).",
            total, int(n_jobs_eff), int(n_cpus_eff), heartbeat_s,
        )

        submit_ts: dict[str, float] = {}
        with ProcessPoolExecutor(max_workers=int(n_jobs_eff), mp_context=ctx) as ex:
            futs = {}
            for p in payloads:
                submit_ts[p["cluster"]] = time.perf_counter()
                futs[ex.submit(_de_cluster_worker, p)] = p["cluster"]

            done = 0
            pending = set(futs.keys())
            while pending:
                try:
                    for fut in as_completed(pending, timeout=heartbeat_s):
                        pending.remove(fut)
                        cl = futs[fut]
                        dt = time.perf_counter() - float(submit_ts.get(cl, t0))
                        try:
                            cl, res, meta_upd = fut.result()
                        except ConfigurationError:
                            raise
                        except Exception as e:
                            res = empty_result_table()
                            meta_upd = {"status": "failed", "reason": f"{type(e).__name__}: {e}"}
                        done += 1
                        _record(done, cl, res, meta_upd, dt)
                except TimeoutError:
                    now = time.perf_counter()
                    pending_cls = sorted((futs[f] for f in pending), key=lambda c: submit_ts.get(c, now))
                    longest = [f"{c}:{now - float(submit_ts.get(c, now)):.0f}s" for c in pending_cls[:3]]
                    LOGGER.info(
                        "PB DE heartbeat: done=%d/%d pending=%d elapsed=%.1fs longest=%s",
                        done, total, int(len(pending)), now - t0,
                        ", ".join(longest) if longest else "NA",
                    )

    tables: Dict[str, pd.DataFrame] = {}
    failures: Dict[str, str] = {}
    summary_rows = []
    for cl in clusters:
        res, meta_upd = outcomes[cl]
        m = matrices[cl]
        row = {
            "cluster": cl,
            "n_libraries": int(len(m.samples)),
            "n_cells": int(m.n_cells.sum()),
            **meta_upd,
        }
        summary_rows.append(row)
        if meta_upd.get("status") == "ok":
            tables[cl] = res
        else:
            failures[cl] = str(meta_upd.get("reason"))

    summary = pd.DataFrame(summary_rows)
    LOGGER.info(
        "Pseudobulk DE finished: %d/%d clusters fitted, %d failed/skipped (%.1fs).",
        len(tables), n_clusters, len(failures), time.perf_counter() - t0,
    )
    return DEResults(design=design, tables=tables, failures=failures, summary=summary)
