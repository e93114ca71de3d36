# mirna_activity/analysis/dimred.py

import scanpy as sc
import anndata as ad
import logging
import warnings

log = logging.getLogger(__name__)


def scale_activity(adata: ad.AnnData, max_value: float | None = None) -> None:
    """Scales every miRNA family to zero mean and unit variance (inplace)."""
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    log.info(f"Scaling activity matrix ({adata.n_vars} families, max_value={max_value}).")
    adata.layers['activity'] = adata.X.copy()
    sc.pp.scale(adata, max_value=max_value)


def reduce_dimensionality(
    adata: ad.AnnData,
    n_comps: int = 50,
    random_state: int = 0,
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Performs principal component analysis (PCA) on the activity matrix.

    Uses scanpy.tl.pca. Stores PCA results in adata.obsm['X_pca'] and the
    variance information in adata.uns['pca']. Activity matrices are narrow
    (one column per miRNA family), so `n_comps` is frequently capped.

    Args:
        adata: Scaled activity (cells x families).
        n_comps: Number of principal components to compute. Defaults to 50.
                 Values >= min(n_obs, n_vars) are reduced to min(n_obs, n_vars) - 1.
        random_state: Random seed for the SVD solver. Defaults to 0.
        inplace: Modify AnnData object inplace. Defaults to True.

    Returns:
        If inplace=True, returns None. Otherwise, returns the modified AnnData
        object with PCA results.

    Raises:
        TypeError: If input `adata` is not an AnnData object.
        ValueError: If `n_comps` is not a positive integer or cannot be adjusted.
        RuntimeError: If the underlying scanpy PCA function fails.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if not isinstance(n_comps, int) or n_comps <= 0:
        raise ValueError("Argument 'n_comps' must be a positive integer.")

    min_dim = min(adata.shape)
    if n_comps >= min_dim:
        adjusted_n_comps = min_dim - 1
        if adjusted_n_comps <= 0:
            raise ValueError(f"Cannot compute PCA. Input data has shape {adata.shape}, "
                             f"requiring n_comps < {min_dim}, but minimum is 1.")
        warning_message = (
            f"Requested n_comps ({n_comps}) >= smallest dimension ({min_dim}). "
            f"Adjusting n_comps to {adjusted_n_comps}."
        )
        warnings.warn(warning_message, UserWarning, stacklevel=2)
        log.warning(warning_message)
        n_comps = adjusted_n_comps

    log.info(f"Performing PCA with n_comps={n_comps}, random_state={random_state}...")
    adata_work = adata if inplace else adata.copy()

    try:
        sc.tl.pca(
            adata_work, n_comps=n_comps, svd_solver='arpack',
            random_state=random_state, zero_center=True
        )
        if 'X_pca' not in adata_work.obsm:
            raise RuntimeError("PCA calc finished but 'X_pca' not found.")
        log.info(f"PCA completed. Results in .obsm['X_pca'] ({adata_work.obsm['X_pca'].shape}).")
    except ValueError as ve:
        log.error(f"ValueError during PCA: {ve}", exc_info=True)
        raise ValueError(f"Input value error during PCA: {ve}") from ve
    except Exception as e:
        log.error(f"Unexpected error during PCA: {e}", exc_info=True)
        raise RuntimeError(f"Failed PCA: {e}") from e

    if not inplace:
        return adata_work
    return None
