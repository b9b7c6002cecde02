"""Table and gene-set I/O for scspot.

Writes result tables as CSV and reads gene-set definitions from YAML or
CSV files.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Union

import pandas as pd
import yaml

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def ensure_output_dir(path: PathLike) -> Path:
    """Create the directory at path if it does not exist and return it."""
    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def write_dataframe(df: pd.DataFrame, path: PathLike, *, index: bool = False) -> Path:
    """Write DataFrame to path ensuring the parent directory exists.

    Parameters
    ----------
    df : pd.DataFrame
        DataFrame to write.
    path : PathLike
        Output path.
    index : bool
        Whether to write row index (default: False).

    Returns
    -------
    Path
        The output path.
    """
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(output_path, index=index)
    return output_path


def write_tables(
    tables: Mapping[str, pd.DataFrame],
    output_dir: PathLike,
    indexed: tuple = (),
) -> Dict[str, Path]:
    """Write every table to ``output_dir/<name>.csv``.

    Tables named in ``indexed`` keep their row index.
    """
    directory = ensure_output_dir(output_dir)
    written = {}
    for name, df in tables.items():
        written[name] = write_dataframe(df, directory / f"{name}.csv", index=name in indexed)
        logger.info("Wrote %s (%d rows)", written[name], len(df))
    return written


def write_json(record: Dict[str, Any], path: PathLike) -> Path:
    """Write a JSON document, converting numpy scalars via ``str``."""
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("w", encoding="utf-8") as handle:
        json.dump(record, handle, indent=2, default=str)
    return output_path


def load_gene_sets(path: PathLike) -> Dict[str, List[str]]:
    """Load named gene sets.

    YAML files map set name to a list of gene ids (optionally under a
    ``gene_sets`` key). CSV files need ``set`` and ``gene`` columns, one row
    per membership.

    Returns
    -------
    Dict[str, List[str]]
        Set name to gene ids, in file order
    """
    path = Path(path)
    if path.suffix.lower() in (".yaml", ".yml"):
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if "gene_sets" in data:
            data = data["gene_sets"]
        if not isinstance(data, dict):
            raise ValueError(f"Gene set file {path} must contain a mapping")
        return {str(name): [str(g) for g in (genes or [])] for name, genes in data.items()}

    df = pd.read_csv(path)
    missing = [col for col in ("set", "gene") if col not in df.columns]
    if missing:
        raise ValueError(f"Gene set table missing columns: {missing}")
    gene_sets: Dict[str, List[str]] = {}
    for name, gene in zip(df["set"].astype(str), df["gene"].astype(str)):
        gene_sets.setdefault(name, []).append(gene)
    return gene_sets
