# src/scstate/pseudobulk.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Literal, Optional, Sequence

import anndata as ad
import numpy as np
import pandas as pd
import scipy.sparse as sp

from .errors import ConfigurationError, EmptyAggregationError

LOGGER = logging.getLogger(__name__)

AggFunc = Literal["sum", "mean"]
MissingPolicy = Literal["omit", "zero", "error"]


@dataclass(frozen=True)
class PseudobulkMatrix:
    """
    One cluster's pseudobulk libraries.

    values:  (genes x samples), columns sorted by sample id
    n_cells: cells contributing to each column (0 for zero-filled columns)
    """
    cluster: str
    values: pd.DataFrame
    n_cells: pd.Series
    func: str = "sum"

    @property
    def samples(self) -> List[str]:
        return self.values.columns.astype(str).tolist()

    @property
    def genes(self) -> List[str]:
        return self.values.index.astype(str).tolist()

    @property
    def shape(self) -> tuple:
        return self.values.shape

    def to_counts(self) -> pd.DataFrame:
        """(samples x genes) int64 counts, the orientation PyDESeq2 expects."""
        if self.func != "sum":
            raise ValueError(f"cluster {self.cluster!r}: counts are only defined for func='sum', got {self.func!r}")
        return self.values.T.round().astype(np.int64)


# -----------------------------------------------------------------------------
# Counts access helpers
# -----------------------------------------------------------------------------
def _get_matrix(adata: ad.AnnData, *, layer: Optional[str]) -> sp.csr_matrix:
    """
    Return the expression matrix as CSR (cells x genes).
    Never densifies.
    """
    if layer:
        if layer not in adata.layers:
            raise KeyError(
                f"layer={layer!r} not found in adata.layers. "
                f"Available: {list(adata.layers.keys())}"
            )
        X = adata.layers[layer]
    else:
        X = adata.X

    if X is None:
        raise RuntimeError("Expression matrix is None (no .X and no layer).")

    if sp.issparse(X):
        return sp.csr_matrix(X)
    if adata.n_obs > 0:
        LOGGER.warning("Expression matrix is dense; converting to CSR (may use a lot of RAM).")
    return sp.csr_matrix(np.asarray(X))


# -----------------------------------------------------------------------------
# OOM-safe pseudobulk aggregation
# -----------------------------------------------------------------------------
def pseudobulk_aggregate(
    adata: ad.AnnData,
    *,
    cluster_key: str,
    sample_key: str,
    func: AggFunc = "sum",
    layer: Optional[str] = None,
    samples: Optional[Sequence[str]] = None,
    missing: MissingPolicy = "omit",
    min_cells: int = 1,
) -> Dict[str, PseudobulkMatrix]:
    """
    Aggregate cells into one (genes x samples) matrix per cluster.

    Uses sparse ops only: PB = G.T @ X, with G the (cells x libraries)
    indicator matrix of the (cluster, sample) key. Cells are sorted by
    library and cell id first, so the result does not depend on the order
    of rows in `adata`.

    func:
      - "sum":  raw counts (layer should hold counts)
      - "mean": per-library mean (layer should hold log-normalized values)

    missing decides what happens to a (cluster, sample) pair with no cells
    (or fewer than `min_cells`), uniformly for all clusters:
      - "omit":  the column is absent
      - "zero":  an all-zero column for every sample in `samples`
                 (default: every sample seen in the data)
      - "error": raise EmptyAggregationError
    """
    func = str(func).lower()
    missing = str(missing).lower()
    if func not in ("sum", "mean"):
        raise ValueError(f"func must be 'sum' or 'mean', got {func!r}")
    if missing not in ("omit", "zero", "error"):
        raise ValueError(f"missing must be 'omit', 'zero' or 'error', got {missing!r}")
    if int(min_cells) < 1:
        raise ValueError("min_cells must be >= 1")

    for key in (cluster_key, sample_key):
        if key not in adata.obs:
            raise KeyError(f"{key!r} not in adata.obs")

    X = _get_matrix(adata, layer=layer)
    n_cells, n_genes = X.shape
    genes = pd.Index(adata.var_names.astype(str), name="gene")

    if n_cells == 0:
        LOGGER.info("Pseudobulk: no cells, nothing to aggregate.")
        return {}

    obs = adata.obs
    if obs[cluster_key].isna().any() or obs[sample_key].isna().any():
        raise ValueError(f"cells without {cluster_key!r}/{sample_key!r} labels")

    cl = obs[cluster_key].astype(str).to_numpy()
    s = obs[sample_key].astype(str).to_numpy()

    if samples is not None:
        sample_order = sorted({str(x) for x in samples})
        unknown = sorted(set(s).difference(sample_order))
        if unknown:
            raise ConfigurationError(f"cells belong to samples outside the sample list: {unknown}")
    else:
        sample_order = sorted(set(s))

    # (cluster, sample) library codes from the factorized labels
    cl_codes, cl_uniques = pd.factorize(cl, sort=True)
    s_codes, s_uniques = pd.factorize(s, sort=True)
    n_s = int(len(s_uniques))
    pair = cl_codes.astype(np.int64) * n_s + s_codes.astype(np.int64)
    lib_keys, lib_codes = np.unique(pair, return_inverse=True)
    lib_codes = lib_codes.ravel()
    n_libs = int(lib_keys.size)

    order = np.lexsort((adata.obs_names.astype(str).to_numpy(), lib_codes))
    X = X[order, :]
    codes = lib_codes[order].astype(np.int64, copy=False)

    rows = np.arange(n_cells, dtype=np.int64)
    data = np.ones(n_cells, dtype=np.int8)
    G = sp.csr_matrix((data, (rows, codes)), shape=(n_cells, n_libs))

    # PB: (libs x genes)
    PB = (G.T @ X).tocsr()
    n_cells_lib = np.bincount(codes, minlength=n_libs).astype(int)

    lib_cluster = np.asarray(cl_uniques, dtype=object)[lib_keys // n_s]
    lib_sample = np.asarray(s_uniques, dtype=object)[lib_keys % n_s]

    out: Dict[str, PseudobulkMatrix] = {}
    clusters = sorted(pd.unique(lib_cluster).tolist())

    for c in clusters:
        idx = np.where(lib_cluster == c)[0]
        idx = idx[n_cells_lib[idx] >= int(min_cells)]
        present = {str(lib_sample[i]): int(i) for i in idx}

        absent = [x for x in sample_order if x not in present]
        if absent and missing == "error":
            raise EmptyAggregationError(
                f"cluster {c!r} has no library for sample {absent[0]!r} "
                f"(fewer than {int(min_cells)} cells)",
                cluster=str(c),
                sample=str(absent[0]),
            )

        cols = sorted(present) if missing == "omit" else list(sample_order)
        dense_dtype = np.float64 if (func == "mean" or PB.dtype.kind == "f") else np.int64
        block = np.zeros((len(cols), n_genes), dtype=dense_dtype)
        ncell_col = np.zeros(len(cols), dtype=int)

        for j, smp in enumerate(cols):
            i = present.get(smp)
            if i is None:
                continue
            row = PB[i, :].toarray().ravel()
            if func == "mean":
                row = row / float(n_cells_lib[i])
            block[j, :] = row
            ncell_col[j] = int(n_cells_lib[i])

        col_index = pd.Index(cols, name=sample_key)
        out[str(c)] = PseudobulkMatrix(
            cluster=str(c),
            values=pd.DataFrame(block.T, index=genes.copy(), columns=col_index),
            n_cells=pd.Series(ncell_col, index=col_index.copy(), name="n_cells"),
            func=func,
        )

    LOGGER.info(
        "Pseudobulk (%s): %d cells -> %d libraries across %d clusters (missing=%s, min_cells=%d)",
        func, n_cells, n_libs, len(out), missing, int(min_cells),
    )
    return out
