"""Logging utilities for scspot.

Provides timestamped run-log files attached to the ``scspot`` logger
hierarchy and structured run records (JSON lines or YAML documents).
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Union

import yaml

PathLike = Union[str, Path]

ROOT_LOGGER = "scspot"


def timestamped_path(log_path: PathLike) -> Path:
    """Insert a timestamp before the suffix.

    Example: run.log -> run_20251209_080530.log
    """
    log_path = Path(log_path)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    suffix = log_path.suffix or ".log"
    return log_path.parent / f"{log_path.stem}_{timestamp}{suffix}"


def attach_file_handler(
    log_path: PathLike,
    level: int = logging.INFO,
    timestamped: bool = True,
    name: str = ROOT_LOGGER,
) -> Path:
    """Send records of logger ``name`` and its children to a file.

    Engine modules log through ``logging.getLogger(__name__)``, so attaching
    to the package root captures every stage.

    Parameters
    ----------
    log_path : PathLike
        Base path for the log file
    level : int
        Logging level for the file handler
    timestamped : bool
        If True, keep earlier runs by adding a timestamp to the filename.
        If False, overwrite.
    name : str
        Logger to attach to

    Returns
    -------
    Path
        The file actually written
    """
    path = timestamped_path(log_path) if timestamped else Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    target = logging.getLogger(name)
    if target.level == logging.NOTSET or target.level > level:
        target.setLevel(level)
    handler = logging.FileHandler(path, mode="w", encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    target.addHandler(handler)
    return path


def write_record(log_path: PathLike, record: dict[str, Any], fmt: str = "json") -> Path:
    """Append a structured record to ``log_path``.

    Parameters
    ----------
    log_path : PathLike
        Destination file; parent directories are created
    record : dict
        Record to serialize
    fmt : str
        "json" writes one JSON line, "yaml" writes a ``---`` terminated
        YAML document

    Returns
    -------
    Path
        The destination path
    """
    if fmt not in ("json", "yaml"):
        raise ValueError(f"Unknown record format: {fmt}")
    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if fmt == "json":
        text = json.dumps(record, default=str) + "\n"
    else:
        text = yaml.safe_dump(record, sort_keys=False).rstrip("\n") + "\n---\n"
    with path.open("a", encoding="utf-8") as handle:
        handle.write(text)
    return path


def log_yaml(logger: logging.Logger, record: dict[str, Any], level: int = logging.INFO) -> None:
    """Log ``record`` as a YAML block through ``logger``."""
    text = yaml.safe_dump(record, sort_keys=False).rstrip("\n")
    logger.log(level, "%s", text)


def log_json(logger: logging.Logger, record: dict[str, Any], level: int = logging.INFO) -> None:
    """Log ``record`` as a single JSON line through ``logger``."""
    logger.log(level, "%s", json.dumps(record, default=str, sort_keys=True))


def get_logger(
    name: str,
    log_path: PathLike,
    level: int = logging.INFO,
    timestamped: bool = True,
) -> tuple[logging.Logger, Path]:
    """Return logger ``name`` with a run-log file attached.

    Returns
    -------
    tuple
        (logger, path of the log file)
    """
    path = attach_file_handler(log_path, level=level, timestamped=timestamped, name=name)
    return logging.getLogger(name), path
