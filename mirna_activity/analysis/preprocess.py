# mirna_activity/analysis/preprocess.py

import scanpy as sc
import anndata as ad
import logging
import numpy as np
from scipy import sparse

log = logging.getLogger(__name__)


def normalize_log1p(
    adata: ad.AnnData,
    target_sum: float | None = 1e4,
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Normalizes counts per cell to target_sum and log1p transforms the data.

    Uses scanpy.pp.normalize_total and scanpy.pp.log1p; the result replaces
    adata.X.

    Args:
        adata: Count matrix (typically after QC filtering).
        target_sum: Total counts per cell after normalization. If None, library
                    sizes are scaled to the median library size. Defaults to 1e4.
        inplace: Modify AnnData object inplace. Defaults to True.

    Returns:
        If inplace=True, returns None. Otherwise, returns the modified AnnData object.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")

    log.info(f"Normalizing total counts per cell to target_sum={target_sum} and log1p transforming.")
    adata_work = adata if inplace else adata.copy()

    values = adata_work.X.data if sparse.issparse(adata_work.X) else np.asarray(adata_work.X)
    if values.size and (values.min() < 0 or not np.allclose(np.modf(values)[0], 0)):
        log.warning("Data in adata.X does not look like raw counts (negative or non-integer values found). "
                    "Normalization and log1p transformation assume raw counts.")

    try:
        sc.pp.normalize_total(adata_work, target_sum=target_sum)
        sc.pp.log1p(adata_work)
    except Exception as e:
        log.error(f"Error during normalization/log1p: {e}", exc_info=True)
        raise RuntimeError(f"Failed to normalize/log1p data: {e}") from e

    if not inplace:
        return adata_work
    return None


def relative_expression(
    adata: ad.AnnData,
    scale: bool = False,
    max_value: float | None = None,
    layer_added: str = 'relative',
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Expresses each gene relative to its average over all cells.

    Activity estimation asks, per cell, whether a miRNA's targets sit lower
    or higher than in the average cell, so genes are centred on their
    population mean (log scale). With `scale=True` each gene is also divided
    by its standard deviation; constant genes are left at zero.

    Args:
        adata: Log-normalized expression (cells x genes) in adata.X.
        scale: Divide centred values by the per-gene standard deviation.
        max_value: Clip the result to [-max_value, max_value]. None disables.
        layer_added: Layer receiving the dense float32 result.
        inplace: Modify AnnData object inplace. Defaults to True.

    Returns:
        If inplace=True, returns None. Otherwise, returns the modified copy.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if max_value is not None and max_value <= 0:
        raise ValueError("Argument 'max_value' must be positive or None.")
    if adata.n_obs < 2:
        raise ValueError("Relative expression needs at least two cells.")

    log.info(f"Computing expression relative to the population mean (scale={scale}, max_value={max_value}).")
    adata_work = adata if inplace else adata.copy()

    X = adata_work.X.toarray() if sparse.issparse(adata_work.X) else np.array(adata_work.X, dtype=np.float64)
    rel = X - X.mean(axis=0, keepdims=True)
    if scale:
        std = X.std(axis=0, ddof=1, keepdims=True)
        std[std == 0] = 1.0
        rel /= std
    if max_value is not None:
        np.clip(rel, -max_value, max_value, out=rel)

    adata_work.layers[layer_added] = rel.astype(np.float32)
    log.info(f"Stored relative expression in adata.layers['{layer_added}'].")

    if not inplace:
        return adata_work
    return None
