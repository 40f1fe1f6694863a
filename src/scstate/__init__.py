__version__ = "0.1.0"

from .errors import (  # noqa: E402
    ScstateError,
    ConfigurationError,
    InsufficientDataError,
    EmptyAggregationError,
)
from .design import DesignSpec, build_design, sample_metadata_from_obs  # noqa: E402
from .pseudobulk import PseudobulkMatrix, pseudobulk_aggregate  # noqa: E402
from .de_utils import PseudobulkDEOptions, fit_cluster_de, run_pseudobulk_de  # noqa: E402
from .results import DEResults, filter_results, rank_results  # noqa: E402
from .differential_state import run_differential_state  # noqa: E402

__all__ = [
    "__version__",
    "ScstateError",
    "ConfigurationError",
    "InsufficientDataError",
    "EmptyAggregationError",
    "DesignSpec",
    "build_design",
    "sample_metadata_from_obs",
    "PseudobulkMatrix",
    "pseudobulk_aggregate",
    "PseudobulkDEOptions",
    "fit_cluster_de",
    "run_pseudobulk_de",
    "DEResults",
    "filter_results",
    "rank_results",
    "run_differential_state",
]
