"""I/O utilities for scspot.

Provides run logging, CSV/JSON output and gene-set loading.
"""

from .logging import (
    attach_file_handler,
    get_logger,
    log_json,
    log_yaml,
    timestamped_path,
    write_record,
)
from .csv import (
    ensure_output_dir,
    load_gene_sets,
    write_dataframe,
    write_json,
    write_tables,
)

__all__ = [
    # Logging
    "attach_file_handler",
    "get_logger",
    "log_json",
    "log_yaml",
    "timestamped_path",
    "write_record",
    # CSV I/O
    "ensure_output_dir",
    "load_gene_sets",
    "write_dataframe",
    "write_json",
    "write_tables",
]
