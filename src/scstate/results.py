# src/scstate/results.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

import numpy as np
import pandas as pd

from .design import DesignSpec

LOGGER = logging.getLogger(__name__)

RESULT_COLUMNS = ["gene", "cluster", "baseMean", "log2FoldChange", "lfcSE", "stat", "pvalue", "padj"]
_SORT_COLUMNS = ["padj", "pvalue", "gene"]


def empty_result_table() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "gene": pd.Series(dtype=object),
            "cluster": pd.Series(dtype=object),
            **{c: pd.Series(dtype=float) for c in RESULT_COLUMNS[2:]},
        }
    )


def rank_results(table: pd.DataFrame) -> pd.DataFrame:
    """
    Sort by padj, then pvalue, then gene (all ascending, NaN last).
    Returns a new frame with a fresh RangeIndex.
    """
    missing = [c for c in _SORT_COLUMNS if c not in table.columns]
    if missing:
        raise KeyError(f"result table is missing columns {missing}")
    out = table.copy()
    out["gene"] = out["gene"].astype(str)
    out = out.sort_values(_SORT_COLUMNS, ascending=True, na_position="last", kind="mergesort")
    return out.reset_index(drop=True)


def filter_results(
    table: pd.DataFrame,
    *,
    min_abs_lfc: float = 1.0,
    max_padj: float = 0.05,
    lfc_col: str = "log2FoldChange",
) -> pd.DataFrame:
    """
    Keep rows with |log2FoldChange| > min_abs_lfc and padj < max_padj, ranked
    by rank_results. The input table is not modified. Idempotent.
    """
    if lfc_col not in table.columns:
        raise KeyError(f"{lfc_col!r} not in result table")

    lfc = pd.to_numeric(table[lfc_col], errors="coerce").to_numpy(dtype=float)
    padj = pd.to_numeric(table["padj"], errors="coerce").to_numpy(dtype=float)

    # NaN compares False, so untested genes drop out here
    keep = (np.abs(lfc) > float(min_abs_lfc)) & (padj < float(max_padj))
    return rank_results(table.loc[keep])


@dataclass
class DEResults:
    """
    Outcome of one pseudobulk differential-state run.

    tables:   cluster -> result table, only for clusters that were fitted
    failures: cluster -> reason, for clusters that were skipped or failed
    summary:  one row per cluster (status, reason, counts, provenance)
    """
    design: DesignSpec
    tables: Dict[str, pd.DataFrame] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)
    summary: pd.DataFrame = field(default_factory=pd.DataFrame)

    @property
    def clusters(self) -> list[str]:
        return sorted(set(self.tables) | set(self.failures))

    @property
    def contrast_name(self) -> str:
        return self.design.name

    def filtered(
        self,
        *,
        min_abs_lfc: float = 1.0,
        max_padj: float = 0.05,
    ) -> Dict[str, pd.DataFrame]:
        return {
            cl: filter_results(df, min_abs_lfc=min_abs_lfc, max_padj=max_padj)
            for cl, df in self.tables.items()
        }

    def combined(self, *, filtered: bool = False, min_abs_lfc: float = 1.0, max_padj: float = 0.05) -> pd.DataFrame:
        """Stack every cluster's table into one long frame, clusters in sorted order."""
        src = self.filtered(min_abs_lfc=min_abs_lfc, max_padj=max_padj) if filtered else self.tables
        frames = [src[cl] for cl in sorted(src) if not src[cl].empty]
        if not frames:
            return empty_result_table()
        return pd.concat(frames, axis=0, ignore_index=True)

    def n_significant(self, alpha: Optional[float] = None) -> Dict[str, int]:
        a = 0.05 if alpha is None else float(alpha)
        return {
            cl: int((pd.to_numeric(df["padj"], errors="coerce") < a).sum())
            for cl, df in self.tables.items()
        }
