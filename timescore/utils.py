"""
Shared helpers for the time-score pipeline: the package logger, YAML
configuration, seeding, memory reporting and optional checkpoints.
"""

import logging
import os
import sys
import gc
import pickle
import random
from pathlib import Path
from typing import Dict, Any, Optional, Union

import yaml
import psutil
import numpy as np


LOGGER_NAME = "PBMC_Timescore"
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"


def setup_logging(
    log_file: Optional[str] = None,
    log_level: str = "INFO",
    console_output: bool = True
) -> logging.Logger:
    """
    Configure the package logger.

    Existing handlers are replaced, so calling this again (e.g. from the CLI
    after a notebook session) does not duplicate output.

    Parameters
    ----------
    log_file : str, optional
        Append logs to this file as well; parent directories are created
    log_level : str, default "INFO"
        DEBUG, INFO, WARNING, ERROR or CRITICAL
    console_output : bool, default True
        Log to stdout

    Returns
    -------
    logging.Logger
        The "PBMC_Timescore" logger

    Examples
    --------
    >>> logger = setup_logging(log_file="results/reports/timescore.log")
    >>> logger.info("Pipeline started")
    """
    level = getattr(logging, log_level.upper())
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers = []

    handlers = []
    if console_output:
        handlers.append(logging.StreamHandler(sys.stdout))
    if log_file is not None:
        ensure_dir(Path(log_file).parent)
        handlers.append(logging.FileHandler(log_file, mode='a'))

    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


def get_logger(logger: Optional[logging.Logger] = None) -> logging.Logger:
    """Return ``logger`` or the package logger, configuring it on first use."""
    if logger is not None:
        return logger

    default = logging.getLogger(LOGGER_NAME)
    if not default.handlers:
        default = setup_logging()
    return default


def load_config(config_path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load the YAML configuration (see config/timescore.yaml).

    Parameters
    ----------
    config_path : str or Path
        Path to YAML configuration file

    Returns
    -------
    dict
        Nested sections (data, splitting, signature, scoring, ...); empty
        when the file has no content

    Examples
    --------
    >>> config = load_config("config/timescore.yaml")
    >>> print(config['signature']['top_n'])
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r') as f:
        config = yaml.safe_load(f)

    return config or {}


def get_section(config: Optional[Dict[str, Any]], section: str) -> Dict[str, Any]:
    """Return a config section, or an empty dict when it is missing."""
    if not config:
        return {}
    return config.get(section) or {}


def set_random_seeds(seed: int = 42) -> None:
    """
    Seed the global generators (python ``random``, NumPy, hash seed).

    Fold sampling and random-signature draws do not rely on global state;
    they take their own ``random_state``. Global seeding covers scanpy
    steps that fall back to NumPy's legacy generator.
    """
    random.seed(seed)
    np.random.seed(seed)
    os.environ['PYTHONHASHSEED'] = str(seed)


def get_memory_usage() -> Dict[str, float]:
    """
    System and process memory in GB.

    Returns
    -------
    dict
        ram_used_gb, ram_available_gb, ram_percent, process_rss_gb
    """
    memory = psutil.virtual_memory()
    rss = psutil.Process(os.getpid()).memory_info().rss
    gb = 1024 ** 3

    return {
        'ram_used_gb': memory.used / gb,
        'ram_available_gb': memory.available / gb,
        'ram_percent': memory.percent,
        'process_rss_gb': rss / gb,
    }


def log_memory_usage(logger: logging.Logger, stage: Optional[str] = None) -> None:
    """Log memory use, optionally tagged with the stage that just finished."""
    mem = get_memory_usage()
    prefix = f"[{stage}] " if stage else ""

    logger.info(
        f"{prefix}Memory - process: {mem['process_rss_gb']:.2f} GB, "
        f"system: {mem['ram_used_gb']:.2f} GB used ({mem['ram_percent']:.1f}%), "
        f"{mem['ram_available_gb']:.2f} GB available"
    )


def cleanup_memory(logger: Optional[logging.Logger] = None) -> None:
    """Run garbage collection between cell types."""
    collected = gc.collect()

    if logger is not None:
        logger.debug(f"Garbage collection freed {collected} objects")


def ensure_dir(path: Union[str, Path]) -> Path:
    """Create ``path`` (and parents) if missing; return it as a Path."""
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def save_checkpoint(
    obj: Any,
    filepath: Union[str, Path],
    logger: Optional[logging.Logger] = None
) -> None:
    """
    Cache an intermediate result on disk.

    AnnData objects are written as gzip-compressed H5AD, anything else
    (e.g. a PipelineResult) is pickled. Stages never read checkpoints
    implicitly; results are passed in memory.

    Examples
    --------
    >>> save_checkpoint(adata, "data/processed/prepared.h5ad", logger)
    >>> save_checkpoint(result, "results/checkpoints/pipeline_result.pkl", logger)
    """
    filepath = Path(filepath)
    ensure_dir(filepath.parent)

    if hasattr(obj, 'write_h5ad'):
        obj.write_h5ad(filepath, compression='gzip')
    else:
        with open(filepath, 'wb') as f:
            pickle.dump(obj, f)

    if logger is not None:
        logger.info(f"Checkpoint saved: {filepath}")


def load_checkpoint(
    filepath: Union[str, Path],
    logger: Optional[logging.Logger] = None
) -> Any:
    """Read a checkpoint written by ``save_checkpoint`` (H5AD by suffix, else pickle)."""
    import anndata

    filepath = Path(filepath)
    if not filepath.exists():
        raise FileNotFoundError(f"Checkpoint not found: {filepath}")

    if filepath.suffix == '.h5ad':
        obj = anndata.read_h5ad(filepath)
    else:
        with open(filepath, 'rb') as f:
            obj = pickle.load(f)

    if logger is not None:
        logger.info(f"Checkpoint loaded: {filepath}")

    return obj
