# mirna_activity/analysis/qc.py

import scanpy as sc
import anndata as ad
import logging
import numpy as np

log = logging.getLogger(__name__)


def calculate_qc_metrics(
    adata: ad.AnnData,
    mito_gene_prefix: str = "MT-",
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Calculates per-cell and per-gene QC metrics with scanpy.

    Adds 'n_genes_by_counts', 'total_counts', 'total_counts_mt' and
    'pct_counts_mt' to adata.obs, and 'n_cells_by_counts' to adata.var.
    When no gene matches `mito_gene_prefix` the mitochondrial columns are
    filled with zeros.

    Args:
        adata: Count matrix (cells x genes).
        mito_gene_prefix: Prefix identifying mitochondrial genes ("MT-" for
                          human, "mt-" for mouse).
        inplace: Modify AnnData object inplace. Defaults to True.

    Returns:
        If inplace=True, returns None. Otherwise, returns the modified copy.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")

    adata_work = adata if inplace else adata.copy()
    adata_work.var['mt'] = adata_work.var_names.str.startswith(mito_gene_prefix)
    n_mt_genes = int(np.sum(adata_work.var['mt']))
    log.info(f"Calculating QC metrics ({n_mt_genes} mitochondrial genes with prefix '{mito_gene_prefix}').")

    try:
        sc.pp.calculate_qc_metrics(
            adata_work,
            qc_vars=['mt'] if n_mt_genes > 0 else [],
            percent_top=None,
            log1p=False,
            inplace=True
        )
    except Exception as e:
        log.error(f"Error calculating QC metrics: {e}", exc_info=True)
        raise RuntimeError(f"Failed to calculate QC metrics: {e}") from e

    if n_mt_genes == 0:
        log.warning(f"No mitochondrial genes found using prefix '{mito_gene_prefix}'. "
                    f"Setting 'total_counts_mt' and 'pct_counts_mt' to zero.")
        adata_work.obs['total_counts_mt'] = 0.0
        adata_work.obs['pct_counts_mt'] = 0.0

    if not inplace:
        return adata_work
    return None


def filter_cells_qc(
    adata: ad.AnnData,
    min_genes: int | None = 200,
    max_genes: int | None = None,
    min_counts: int | None = None,
    max_counts: int | None = None,
    max_pct_mito: float | None = None,
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Filters cells on QC metrics computed by `calculate_qc_metrics`.

    Every threshold is optional (None disables it). Thresholds are inclusive
    for minima and maxima, except `max_pct_mito` which is a strict upper bound.

    Raises:
        KeyError: If a QC column needed by an active threshold is missing.
        ValueError: If a minimum exceeds its maximum or `max_pct_mito` is
                    outside [0, 100].
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")

    required_cols = []
    if min_genes is not None or max_genes is not None:
        required_cols.append('n_genes_by_counts')
    if min_counts is not None or max_counts is not None:
        required_cols.append('total_counts')
    if max_pct_mito is not None:
        required_cols.append('pct_counts_mt')
    missing_cols = [col for col in required_cols if col not in adata.obs.columns]
    if missing_cols:
        raise KeyError(
            f"Missing required QC columns in adata.obs: {missing_cols}. "
            "Run calculate_qc_metrics first."
        )

    if min_genes is not None and max_genes is not None and min_genes > max_genes:
        raise ValueError(f"min_genes ({min_genes}) cannot be greater than max_genes ({max_genes}).")
    if min_counts is not None and max_counts is not None and min_counts > max_counts:
        raise ValueError(f"min_counts ({min_counts}) cannot be greater than max_counts ({max_counts}).")
    if max_pct_mito is not None and (max_pct_mito < 0 or max_pct_mito > 100):
        raise ValueError(f"max_pct_mito ({max_pct_mito}) must be between 0 and 100.")

    obs = adata.obs
    keep = np.ones(adata.n_obs, dtype=bool)
    for label, active, mask in [
        ('min_genes', min_genes, lambda: obs['n_genes_by_counts'] >= min_genes),
        ('max_genes', max_genes, lambda: obs['n_genes_by_counts'] <= max_genes),
        ('min_counts', min_counts, lambda: obs['total_counts'] >= min_counts),
        ('max_counts', max_counts, lambda: obs['total_counts'] <= max_counts),
        ('max_pct_mito', max_pct_mito, lambda: obs['pct_counts_mt'] < max_pct_mito),
    ]:
        if active is None:
            continue
        keep &= mask().to_numpy()
        log.info(f"Applied filter: {label} = {active}. Cells passing so far: {int(keep.sum())}")

    n_obs_start = adata.n_obs
    n_obs_end = int(keep.sum())
    log.info(f"Cell filtering kept {n_obs_end} of {n_obs_start} cells.")

    if inplace:
        adata._inplace_subset_obs(keep)
        return None
    return adata[keep, :].copy()


def filter_genes_qc(
    adata: ad.AnnData,
    min_cells: int | None = 10,
    inplace: bool = True
) -> ad.AnnData | None:
    """Drops genes detected in fewer than `min_cells` cells."""
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if min_cells is None:
        log.info("Gene filtering disabled (min_cells=None).")
        return None if inplace else adata.copy()
    if min_cells < 0:
        raise ValueError("Argument 'min_cells' must be non-negative.")

    adata_work = adata if inplace else adata.copy()
    n_vars_start = adata_work.n_vars
    sc.pp.filter_genes(adata_work, min_cells=min_cells)
    log.info(f"Gene filtering (min_cells={min_cells}) kept {adata_work.n_vars} of {n_vars_start} genes.")

    if not inplace:
        return adata_work
    return None
