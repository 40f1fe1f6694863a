import logging
from pathlib import Path
from typing import Optional, Union

# Third-party loggers that flood INFO during per-cluster fits
_NOISY_LOGGERS = ("numba", "pydeseq2", "anndata", "matplotlib")


def init_logging(
    logfile: Optional[Path] = None,
    level: Union[int, str] = logging.INFO,
    quiet_third_party: bool = True,
) -> None:
    """
    Initialize logging with a stream handler + optional file handler.
    All existing handlers are removed to avoid duplicates.

    `level` accepts an int or a level name ("DEBUG", "info", ...).
    """
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"Unknown logging level {level!r}")
        level = resolved

    for h in logging.root.handlers[:]:
        logging.root.removeHandler(h)

    handlers = [logging.StreamHandler()]

    if logfile is not None:
        logfile = Path(logfile)
        logfile.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(logfile, mode="w"))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )

    if quiet_third_party:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(max(int(level), logging.WARNING))
