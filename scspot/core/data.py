"""In-memory data containers handed between pipeline stages.

Matrices are stored genes x observations as CSR sparse matrices, so
per-gene operations walk contiguous rows. Every container validates its
own invariants on construction and subsetting returns new objects.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy import sparse

from .errors import InputError


def _as_index(ids: Iterable[Any], name: str, stage: str) -> pd.Index:
    index = pd.Index([str(i) for i in ids], name=name)
    if index.has_duplicates:
        dupes = index[index.duplicated()].unique().tolist()
        raise InputError(
            f"Duplicate {name} identifiers: {dupes[:5]}",
            stage=stage,
            parameter=name,
            context={"n_duplicates": len(dupes)},
        )
    return index


class ExpressionMatrix:
    """Sparse genes x observations expression matrix with identifiers.

    Attributes
    ----------
    matrix : sparse.csr_matrix
        Expression values, rows are genes and columns are observations
    gene_ids : pd.Index
        Unique gene identifiers (one per row)
    obs_ids : pd.Index
        Unique observation identifiers (one per column)
    """

    def __init__(
        self,
        matrix: Any,
        gene_ids: Sequence[Any],
        obs_ids: Sequence[Any],
    ):
        stage = type(self).__name__
        if not sparse.issparse(matrix):
            matrix = sparse.csr_matrix(np.asarray(matrix))
        matrix = sparse.csr_matrix(matrix)
        genes = _as_index(gene_ids, "gene_id", stage)
        obs = _as_index(obs_ids, "obs_id", stage)
        if matrix.shape != (len(genes), len(obs)):
            raise InputError(
                f"Matrix shape {matrix.shape} does not match "
                f"{len(genes)} gene ids x {len(obs)} observation ids",
                stage=stage,
                parameter="matrix",
            )
        self.matrix = matrix
        self.gene_ids = genes
        self.obs_ids = obs
        self._validate_values()

    def _validate_values(self) -> None:
        if self.matrix.nnz and not np.isfinite(self.matrix.data).all():
            raise InputError(
                "Matrix contains NaN or infinite values",
                stage=type(self).__name__,
                parameter="matrix",
            )

    @property
    def n_genes(self) -> int:
        return self.matrix.shape[0]

    @property
    def n_obs(self) -> int:
        return self.matrix.shape[1]

    @property
    def shape(self):
        return self.matrix.shape

    def _replace(self, matrix: sparse.spmatrix, gene_ids, obs_ids) -> "ExpressionMatrix":
        return type(self)(matrix, gene_ids, obs_ids)

    def with_matrix(self, matrix: sparse.spmatrix) -> "ExpressionMatrix":
        """Return a plain ExpressionMatrix with the same ids and new values."""
        return ExpressionMatrix(matrix, self.gene_ids, self.obs_ids)

    def subset_obs(self, keep: Union[np.ndarray, Sequence[str]]) -> "ExpressionMatrix":
        """Subset observations by boolean mask or identifier list."""
        idx = self._resolve(keep, self.obs_ids, "obs_id")
        return self._replace(self.matrix[:, idx], self.gene_ids, self.obs_ids[idx])

    def subset_genes(self, keep: Union[np.ndarray, Sequence[str]]) -> "ExpressionMatrix":
        """Subset genes by boolean mask or identifier list (order follows ``keep``)."""
        idx = self._resolve(keep, self.gene_ids, "gene_id")
        return self._replace(self.matrix[idx, :], self.gene_ids[idx], self.obs_ids)

    def _resolve(self, keep, index: pd.Index, name: str) -> np.ndarray:
        arr = np.asarray(keep)
        if arr.dtype == bool:
            if arr.shape != (len(index),):
                raise InputError(
                    f"Boolean mask of length {arr.shape} does not match {len(index)} {name}s",
                    stage=type(self).__name__,
                    parameter=name,
                )
            return np.flatnonzero(arr)
        positions = index.get_indexer([str(v) for v in arr])
        missing = arr[positions < 0]
        if missing.size:
            raise InputError(
                f"Unknown {name} values: {missing[:5].tolist()}",
                stage=type(self).__name__,
                parameter=name,
            )
        return positions

    def gene_values(self, gene_id: str) -> np.ndarray:
        """Dense vector of one gene across all observations."""
        pos = self.gene_ids.get_loc(str(gene_id))
        return self.matrix.getrow(pos).toarray().ravel()

    def to_dataframe(self) -> pd.DataFrame:
        """Dense genes x observations DataFrame (small matrices only)."""
        return pd.DataFrame(
            self.matrix.toarray(), index=self.gene_ids, columns=self.obs_ids
        )

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame) -> "ExpressionMatrix":
        """Build from a dense genes x observations DataFrame."""
        return cls(sparse.csr_matrix(df.to_numpy()), df.index, df.columns)

    @classmethod
    def from_anndata(cls, adata: Any, layer: Optional[str] = None) -> "ExpressionMatrix":
        """Build from an AnnData object (observations x variables).

        Parameters
        ----------
        adata : AnnData
            Input AnnData object
        layer : str, optional
            Layer to read instead of ``adata.X``

        Returns
        -------
        ExpressionMatrix
            Transposed genes x observations matrix
        """
        if layer is not None:
            if layer not in adata.layers:
                raise InputError(
                    f"Layer '{layer}' not found (available: {list(adata.layers.keys())})",
                    stage=cls.__name__,
                    parameter="layer",
                )
            values = adata.layers[layer]
        else:
            values = adata.X
        if not sparse.issparse(values):
            values = sparse.csr_matrix(np.asarray(values))
        return cls(values.T.tocsr(), adata.var_names, adata.obs_names)


class CountMatrix(ExpressionMatrix):
    """Raw UMI count matrix: non-negative integer values only."""

    def _validate_values(self) -> None:
        super()._validate_values()
        data = self.matrix.data
        if data.size == 0:
            return
        if (data < 0).any():
            raise InputError(
                "Count matrix contains negative values",
                stage="CountMatrix",
                parameter="matrix",
                context={"n_negative": int((data < 0).sum())},
            )
        if not np.all(np.equal(np.mod(data, 1), 0)):
            raise InputError(
                "Count matrix contains non-integer values",
                stage="CountMatrix",
                parameter="matrix",
            )


SPATIAL_COLUMNS = ["array_row", "array_col", "pxl_row", "pxl_col"]


class SpatialCoordinates:
    """Grid and pixel positions of spots, keyed by observation id.

    Parameters
    ----------
    frame : pd.DataFrame
        Indexed by observation id with ``array_row``, ``array_col`` (integer
        grid) and ``pxl_row``, ``pxl_col`` (continuous pixel) columns. Pixel
        columns default to the grid position when absent.
    """

    def __init__(self, frame: pd.DataFrame):
        frame = frame.copy()
        frame.index = _as_index(frame.index, "obs_id", "SpatialCoordinates")
        for col in ("array_row", "array_col"):
            if col not in frame.columns:
                raise InputError(
                    f"Missing coordinate column '{col}'",
                    stage="SpatialCoordinates",
                    parameter=col,
                )
        if "pxl_row" not in frame.columns:
            frame["pxl_row"] = frame["array_row"].astype(float)
        if "pxl_col" not in frame.columns:
            frame["pxl_col"] = frame["array_col"].astype(float)
        frame = frame[SPATIAL_COLUMNS]
        if frame.isna().any().any():
            raise InputError(
                "Coordinates contain missing values",
                stage="SpatialCoordinates",
                parameter="frame",
            )
        frame["array_row"] = frame["array_row"].astype(int)
        frame["array_col"] = frame["array_col"].astype(int)
        frame["pxl_row"] = frame["pxl_row"].astype(float)
        frame["pxl_col"] = frame["pxl_col"].astype(float)

        grid = frame[["array_row", "array_col"]]
        if grid.duplicated().any():
            n_dupes = int(grid.duplicated().sum())
            raise InputError(
                f"{n_dupes} observations share a grid position",
                stage="SpatialCoordinates",
                parameter="array_row/array_col",
            )
        self._frame = frame

    @property
    def frame(self) -> pd.DataFrame:
        return self._frame.copy()

    @property
    def obs_ids(self) -> pd.Index:
        return self._frame.index

    def __len__(self) -> int:
        return len(self._frame)

    def pixel_positions(self) -> np.ndarray:
        """(n, 2) float array of pixel positions."""
        return self._frame[["pxl_row", "pxl_col"]].to_numpy(dtype=float)

    def grid_positions(self) -> np.ndarray:
        """(n, 2) integer array of grid positions."""
        return self._frame[["array_row", "array_col"]].to_numpy(dtype=int)

    def align(self, obs_ids: Sequence[str]) -> "SpatialCoordinates":
        """Reorder to ``obs_ids``; every id must have coordinates."""
        ids = pd.Index([str(i) for i in obs_ids])
        missing = ids.difference(self._frame.index)
        if len(missing):
            raise InputError(
                f"{len(missing)} observations have no coordinates: {missing[:5].tolist()}",
                stage="SpatialCoordinates",
                parameter="obs_ids",
            )
        return SpatialCoordinates(self._frame.loc[ids])

    @classmethod
    def from_anndata(cls, adata: Any) -> "SpatialCoordinates":
        """Read ``obs[array_row/array_col]`` and ``obsm['spatial']`` (x, y pixels)."""
        obs = adata.obs
        frame = pd.DataFrame(index=adata.obs_names.astype(str))
        if "spatial" in adata.obsm:
            pixels = np.asarray(adata.obsm["spatial"], dtype=float)
            frame["pxl_col"] = pixels[:, 0]
            frame["pxl_row"] = pixels[:, 1]
        if "array_row" in obs.columns and "array_col" in obs.columns:
            frame["array_row"] = obs["array_row"].to_numpy()
            frame["array_col"] = obs["array_col"].to_numpy()
        elif "spatial" in adata.obsm:
            frame["array_row"] = np.rint(frame["pxl_row"]).astype(int)
            frame["array_col"] = np.rint(frame["pxl_col"]).astype(int)
        else:
            raise InputError(
                "AnnData has neither obs['array_row'/'array_col'] nor obsm['spatial']",
                stage="SpatialCoordinates",
                parameter="adata",
            )
        return cls(frame)


class ObservationMetadata:
    """Per-observation derived scalars that grow as stages run.

    Columns are only added; replacing an existing column requires
    ``overwrite=True``.
    """

    def __init__(self, obs_ids: Sequence[str], frame: Optional[pd.DataFrame] = None):
        index = _as_index(obs_ids, "obs_id", "ObservationMetadata")
        if frame is None:
            frame = pd.DataFrame(index=index)
        else:
            frame = frame.copy()
            frame.index = frame.index.astype(str)
            frame = frame.reindex(index)
        self._frame = frame

    @property
    def frame(self) -> pd.DataFrame:
        return self._frame.copy()

    @property
    def columns(self):
        return list(self._frame.columns)

    @property
    def obs_ids(self) -> pd.Index:
        return self._frame.index

    def __len__(self) -> int:
        return len(self._frame)

    def __contains__(self, column: str) -> bool:
        return column in self._frame.columns

    def __getitem__(self, column: str) -> pd.Series:
        return self._frame[column].copy()

    def add_column(self, name: str, values: Any, overwrite: bool = False) -> None:
        """Add a named column aligned to the observation order.

        Parameters
        ----------
        name : str
            Column name
        values : array-like or pd.Series
            One value per observation; a Series is aligned on its index
        overwrite : bool
            Allow replacing an existing column

        Raises
        ------
        InputError
            If the column exists and ``overwrite`` is False, or if the value
            count does not match the observation count
        """
        if name in self._frame.columns and not overwrite:
            raise InputError(
                f"Column '{name}' already exists; pass overwrite=True to replace it",
                stage="ObservationMetadata",
                parameter=name,
            )
        if isinstance(values, pd.Series):
            values = values.copy()
            values.index = values.index.astype(str)
            missing = self._frame.index.difference(values.index)
            if len(missing):
                raise InputError(
                    f"Column '{name}' is missing {len(missing)} observations",
                    stage="ObservationMetadata",
                    parameter=name,
                )
            self._frame[name] = values.reindex(self._frame.index).to_numpy()
            return
        arr = np.asarray(values)
        if arr.shape[0] != len(self._frame):
            raise InputError(
                f"Column '{name}' has {arr.shape[0]} values for {len(self._frame)} observations",
                stage="ObservationMetadata",
                parameter=name,
            )
        self._frame[name] = arr

    def add_columns(self, frame: pd.DataFrame, overwrite: bool = False) -> None:
        """Add every column of ``frame`` (indexed by observation id)."""
        for col in frame.columns:
            self.add_column(str(col), frame[col], overwrite=overwrite)

    def subset(self, keep: Union[np.ndarray, Sequence[str]]) -> "ObservationMetadata":
        """Return a new metadata object restricted to ``keep``."""
        arr = np.asarray(keep)
        if arr.dtype == bool:
            sub = self._frame.loc[arr]
        else:
            sub = self._frame.loc[[str(v) for v in arr]]
        return ObservationMetadata(sub.index, sub)
