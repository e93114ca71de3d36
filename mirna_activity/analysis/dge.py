# mirna_activity/analysis/dge.py

import scanpy as sc
import anndata as ad
import logging
import numpy as np
import pandas as pd
from scipy import sparse

log = logging.getLogger(__name__)


def _mean_differences(adata: ad.AnnData, groupby: str, key: str, layer: str | None) -> None:
    """Replaces scanpy's log fold changes with mean(group) - mean(rest) of the tested matrix.

    scanpy's values assume log1p expression and are NaN for signed
    activity scores.
    """
    result = adata.uns[key]
    if 'logfoldchanges' not in result:
        return
    X = adata.X if layer is None else adata.layers[layer]
    X = X.toarray() if sparse.issparse(X) else np.asarray(X)
    labels = adata.obs[groupby].astype(str).to_numpy()
    lfc = result['logfoldchanges'].copy()
    for group in result['names'].dtype.names:
        in_group = labels == group
        diff = X[in_group].mean(axis=0) - X[~in_group].mean(axis=0)
        idx = adata.var_names.get_indexer(result['names'][group])
        lfc[group] = diff[idx]
    result['logfoldchanges'] = lfc


def find_marker_mirnas(
    adata: ad.AnnData,
    groupby: str,
    method: str = 'wilcoxon',
    corr_method: str = 'benjamini-hochberg',
    key_added: str = 'rank_mirnas',
    min_cells_per_group: int = 3,
    layer: str | None = None,
    **kwargs
) -> None:
    """
    Finds miRNA families whose activity distinguishes each group from the rest.

    Wraps scanpy.tl.rank_genes_groups on the activity matrix (never .raw).
    Groups with fewer than `min_cells_per_group` cells are left out of the
    test. Results are stored inplace in `adata.uns[key_added]`.

    Args:
        adata: Activity AnnData (cells x families) with group labels in .obs.
        groupby: Column of adata.obs holding the groups (clusters or
                 annotated cell types).
        method: 'wilcoxon', 't-test', 't-test_overestim_var' or 'logreg'.
        corr_method: 'benjamini-hochberg' or 'bonferroni'.
        key_added: Key under which the results are stored in adata.uns.
        min_cells_per_group: Smallest group size that is tested.
        layer: Layer to test instead of adata.X (e.g. the unscaled 'activity').
        **kwargs: Passed to sc.tl.rank_genes_groups.

    Raises:
        TypeError: If input `adata` is not an AnnData object.
        KeyError: If `groupby` or `layer` is not found.
        ValueError: If fewer than two groups have enough cells.
        RuntimeError: If the underlying scanpy function fails.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if groupby not in adata.obs:
        raise KeyError(f"Group key '{groupby}' not found in adata.obs.")
    if layer is not None and layer not in adata.layers:
        raise KeyError(f"Layer '{layer}' not found in adata.layers.")

    # rank_genes_groups wants categorical labels with string categories
    labels = adata.obs[groupby]
    if not isinstance(labels.dtype, pd.CategoricalDtype):
        labels = labels.astype('category')
    if not all(isinstance(c, str) for c in labels.cat.categories):
        labels = labels.cat.rename_categories([str(c) for c in labels.cat.categories])
    adata.obs[groupby] = labels
    sizes = labels.value_counts()
    usable = [g for g in labels.cat.categories if sizes.get(g, 0) >= min_cells_per_group]
    too_small = [g for g in labels.cat.categories if g not in usable]
    if too_small:
        log.warning(f"Excluding groups with fewer than {min_cells_per_group} cells: {too_small}")
    if len(usable) < 2:
        raise ValueError(
            f"Need at least two groups in '{groupby}' with >= {min_cells_per_group} cells; found {len(usable)}."
        )

    log.info(f"Finding marker miRNAs using '{method}' for {len(usable)} groups in '{groupby}'. "
             f"Correction: '{corr_method}'. Results key: '{key_added}'.")

    try:
        sc.tl.rank_genes_groups(
            adata,
            groupby=groupby,
            groups=usable if too_small else 'all',
            reference='rest',
            method=method,
            corr_method=corr_method,
            use_raw=False,
            layer=layer,
            key_added=key_added,
            **kwargs
        )
        if key_added not in adata.uns:
            raise RuntimeError(f"sc.tl.rank_genes_groups finished but '{key_added}' not found in adata.uns.")
        _mean_differences(adata, groupby, key_added, layer)
        log.info(f"Marker miRNA analysis completed. Results stored in adata.uns['{key_added}'].")
    except Exception as e:
        log.error(f"An error occurred during marker miRNA identification: {e}", exc_info=True)
        raise RuntimeError(f"Failed during marker miRNA identification: {e}") from e

    return None


def get_marker_table(
    adata: ad.AnnData,
    key: str = 'rank_mirnas',
    pval_cutoff: float | None = None,
    min_score: float | None = None
) -> pd.DataFrame:
    """
    Flattens differential results into one row per (group, miRNA family).

    Columns: 'group', 'names', 'scores', 'logfoldchanges', 'pvals',
    'pvals_adj'. 'logfoldchanges' holds the difference in mean activity
    between the group and the rest (absent for 'logreg'). Rows can be
    filtered on adjusted p-value and minimum score.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if key not in adata.uns:
        raise KeyError(f"Differential results key '{key}' not found in adata.uns.")

    groups = list(adata.uns[key]['names'].dtype.names)
    frames = []
    for group in groups:
        df = sc.get.rank_genes_groups_df(adata, group=group, key=key)
        df.insert(0, 'group', group)
        frames.append(df)
    table = pd.concat(frames, ignore_index=True)

    if pval_cutoff is not None and 'pvals_adj' in table.columns:
        table = table[table['pvals_adj'] <= pval_cutoff]
    if min_score is not None:
        table = table[table['scores'] >= min_score]
    log.info(f"Marker table has {len(table)} rows across {len(groups)} groups.")
    return table.reset_index(drop=True)
