# mirna_activity/data/loader.py

import scanpy as sc
import anndata as ad
import pandas as pd
import numpy as np
from scipy import sparse
import os
import logging

log = logging.getLogger(__name__)

TEXT_MATRIX_SUFFIXES = (".csv", ".tsv", ".txt", ".csv.gz", ".tsv.gz", ".txt.gz")


def _read_text_matrix(path: str, transpose: bool | None) -> ad.AnnData:
    """Reads a delimited count table into AnnData (cells x genes)."""
    sep = "," if ".csv" in path.lower() else "\t"
    df = pd.read_csv(path, sep=sep, index_col=0)
    if df.empty:
        raise ValueError(f"Count table {path} contains no data.")

    # Exported count tables are genes x cells unless told otherwise
    if transpose is None or transpose:
        log.info("Treating rows as genes and columns as cells (transposing).")
        df = df.T
    else:
        log.info("Treating rows as cells and columns as genes.")

    non_numeric = df.select_dtypes(exclude=[np.number]).columns
    if len(non_numeric) > 0:
        raise ValueError(f"Count table has non-numeric columns: {list(non_numeric[:5])}")

    adata = ad.AnnData(
        X=sparse.csr_matrix(df.to_numpy(dtype=np.float32)),
        obs=pd.DataFrame(index=df.index.astype(str)),
        var=pd.DataFrame(index=df.columns.astype(str)),
    )
    return adata


def load_data(data_path: str, cache: bool = False, transpose: bool | None = None) -> ad.AnnData:
    """
    Loads a precomputed single-cell count matrix into an AnnData object.

    Supports:
        - 10x Genomics MTX directory (matrix.mtx.gz, features.tsv.gz, barcodes.tsv.gz)
        - AnnData (.h5ad) file
        - Delimited text matrix (.csv, .tsv, .txt, optionally gzipped), first
          column holding the row names

    Args:
        data_path: Path to the data file or directory.
        cache: Whether to use scanpy's cache when reading 10x data. Defaults to False.
        transpose: Orientation of text matrices. None or True treats rows as
                   genes (the usual export layout); False treats rows as cells.

    Returns:
        An AnnData object with cells as observations and genes as variables.

    Raises:
        FileNotFoundError: If the data_path does not exist.
        ValueError: If the data format is not recognized or loading fails.
        TypeError: If data_path is not a string.
    """
    log.info(f"Attempting to load data from: {data_path}")

    if not isinstance(data_path, str):
        raise TypeError(f"Expected data_path to be a string, but got {type(data_path)}")

    expanded_path = os.path.expanduser(data_path)
    if not os.path.exists(expanded_path):
        raise FileNotFoundError(f"Data path not found: {expanded_path}")

    lower_path = expanded_path.lower()
    try:
        if os.path.isdir(expanded_path):
            log.info("Detected directory, attempting to load as 10x MTX format.")
            adata = sc.read_10x_mtx(expanded_path, var_names='gene_symbols', cache=cache)
            log.info(f"Successfully loaded 10x MTX data. Shape: {adata.shape}")

        elif lower_path.endswith(".h5ad"):
            log.info("Detected .h5ad file, attempting to load.")
            adata = sc.read_h5ad(expanded_path)
            log.info(f"Successfully loaded .h5ad file. Shape: {adata.shape}")

        elif lower_path.endswith(TEXT_MATRIX_SUFFIXES):
            log.info("Detected delimited text matrix, attempting to load.")
            adata = _read_text_matrix(expanded_path, transpose)
            log.info(f"Successfully loaded text matrix. Shape: {adata.shape}")

        elif lower_path.endswith(".mtx.gz") or lower_path.endswith(".mtx"):
            raise ValueError(
                "Loading a single .mtx file is ambiguous. Please provide the path to the directory "
                "containing matrix.mtx.gz, features.tsv.gz, and barcodes.tsv.gz."
            )

        else:
            raise ValueError(
                f"Unrecognized file format or path type: {expanded_path}. Expecting a directory "
                f"(for 10x MTX), an .h5ad file, or a delimited count table."
            )

    except ValueError:
        raise
    except FileNotFoundError as e:
        log.error(f"File not found during loading process: {e}")
        raise FileNotFoundError(f"Required file missing within {expanded_path}: {e}") from e
    except Exception as e:
        log.error(f"Failed to load data from {expanded_path}: {e}", exc_info=True)
        raise ValueError(f"An error occurred during data loading: {e}") from e

    adata.var_names_make_unique()
    adata.obs_names_make_unique()
    return adata


def load_cell_metadata(
    adata: ad.AnnData,
    metadata_path: str,
    index_col: int | str = 0,
    columns: list[str] | None = None
) -> None:
    """
    Joins per-cell annotations (e.g. cell type labels) onto adata.obs.

    The table is matched on cell barcodes. Cells absent from the table receive
    NaN. String columns are stored as categoricals so they can be used for
    grouping in differential tests and plots.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    expanded_path = os.path.expanduser(metadata_path)
    if not os.path.isfile(expanded_path):
        raise FileNotFoundError(f"Metadata file not found: {expanded_path}")

    sep = "," if ".csv" in expanded_path.lower() else "\t"
    meta = pd.read_csv(expanded_path, sep=sep, index_col=index_col)
    meta.index = meta.index.astype(str)
    if columns:
        missing = [c for c in columns if c not in meta.columns]
        if missing:
            raise KeyError(f"Metadata columns not found: {missing}")
        meta = meta[columns]

    shared = adata.obs_names.intersection(meta.index)
    if len(shared) == 0:
        raise ValueError(f"No cell barcodes in {metadata_path} match the loaded data.")
    n_missing = adata.n_obs - len(shared)
    if n_missing > 0:
        log.warning(f"{n_missing} / {adata.n_obs} cells have no entry in the metadata table.")

    meta = meta.reindex(adata.obs_names)
    for col in meta.columns:
        if col in adata.obs.columns:
            log.warning(f"Overwriting existing obs column '{col}' with metadata values.")
        values = meta[col]
        if pd.api.types.is_object_dtype(values) or pd.api.types.is_string_dtype(values):
            values = values.astype('category')
        adata.obs[col] = values
    log.info(f"Added metadata columns {list(meta.columns)} from {metadata_path}.")
