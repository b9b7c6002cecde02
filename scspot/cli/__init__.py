"""Command-line interface for scspot.

Example Usage
-------------
    # From command line:
    scspot --help
    scspot run --input counts.h5ad --out out/
    scspot run --input spots.h5ad --out out/ --spatial --seed 0
    scspot show-config
"""

__version__ = "1.0.0"

from .main import cli, main

__all__ = [
    "__version__",
    "cli",
    "main",
]
