# mirna_activity/analysis/activity.py

import anndata as ad
import decoupler as dc
import logging
import numpy as np
import pandas as pd
from scipy import sparse

from .motifs import filter_network

log = logging.getLogger(__name__)

ACTIVITY_METHODS = ('ulm', 'mlm', 'viper', 'zscore')


def compute_mirna_activity(
    adata: ad.AnnData,
    net: pd.DataFrame,
    method: str = 'ulm',
    layer: str | None = 'relative',
    min_targets: int = 5,
    families: pd.DataFrame | None = None
) -> ad.AnnData:
    """
    Estimates miRNA family activity in every cell.

    Scoring is delegated to decoupler: for each cell, the expression of all
    genes (relative to the average cell) is related to membership in each
    family's target set. Negative scores mean the family's targets are
    depleted in that cell, i.e. the miRNA is active as a repressor.

    Args:
        adata: Expression data (cells x genes). Values are read from
               adata.layers[layer], or adata.X when layer is None.
        net: Motif network with columns 'source', 'target', 'weight'.
        method: decoupler method name, one of ACTIVITY_METHODS.
        layer: Layer holding relative expression. Defaults to 'relative'
               (see `preprocess.relative_expression`).
        min_targets: Minimum number of measured targets per family.
        families: Optional family table (index = family) whose columns are
                  copied into the returned .var.

    Returns:
        AnnData (cells x families) with scores in .X, adjusted p-values in
        .layers['padj'], signed -log10 adjusted p-values in
        .layers['signed_log10_padj'], 'n_targets' in .var and a copy of
        adata.obs.

    Raises:
        TypeError: If `adata` is not an AnnData object.
        KeyError: If `layer` is missing.
        ValueError: If `method` is unknown or no family has enough targets.
        RuntimeError: If decoupler fails.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if method not in ACTIVITY_METHODS:
        raise ValueError(f"Unknown activity method '{method}'. Choose from {list(ACTIVITY_METHODS)}.")
    if layer is not None and layer not in adata.layers:
        raise KeyError(f"Layer '{layer}' not found in adata.layers. Run relative_expression first.")

    net = filter_network(net, adata.var_names, min_targets=min_targets)
    log.info(f"Estimating activity of {net['source'].nunique()} miRNA families in {adata.n_obs} cells "
             f"with decoupler '{method}' on {'adata.X' if layer is None else f'layer {layer!r}'}.")

    X = adata.X if layer is None else adata.layers[layer]
    X = X.toarray() if sparse.issparse(X) else np.asarray(X)
    expr = ad.AnnData(
        X=X.astype(np.float32),
        obs=pd.DataFrame(index=adata.obs_names.copy()),
        var=pd.DataFrame(index=adata.var_names.copy()),
    )

    try:
        getattr(dc.mt, method)(data=expr, net=net, tmin=min_targets)
    except Exception as e:
        log.error(f"decoupler '{method}' failed: {e}", exc_info=True)
        raise RuntimeError(f"Failed to estimate miRNA activity: {e}") from e

    score_key, padj_key = f"score_{method}", f"padj_{method}"
    if score_key not in expr.obsm:
        raise RuntimeError(f"decoupler finished but '{score_key}' not found in obsm.")
    scores = pd.DataFrame(expr.obsm[score_key]).reindex(adata.obs_names)
    n_dropped = int(scores.isna().all(axis=1).sum())
    if n_dropped:
        log.warning(f"{n_dropped} cells received no activity score (no expression signal); setting them to 0.")
    scores = scores.fillna(0.0)

    if padj_key in expr.obsm:
        padj = pd.DataFrame(expr.obsm[padj_key]).reindex(index=scores.index, columns=scores.columns).fillna(1.0)
    else:
        log.warning(f"decoupler '{method}' returned no adjusted p-values; padj layer set to 1.")
        padj = pd.DataFrame(1.0, index=scores.index, columns=scores.columns)

    score_values = scores.to_numpy(dtype=np.float32)
    padj_values = np.clip(padj.to_numpy(dtype=np.float64), np.finfo(np.float32).tiny, 1.0)
    signed = np.sign(score_values) * -np.log10(padj_values)

    activity = ad.AnnData(
        X=score_values,
        obs=adata.obs.copy(),
        var=pd.DataFrame(index=scores.columns.astype(str)),
    )
    activity.layers['padj'] = padj_values.astype(np.float32)
    activity.layers['signed_log10_padj'] = signed.astype(np.float32)

    # decoupler drops genes that are zero in every cell
    scored_genes = adata.var_names[(X != 0).any(axis=0)]
    n_targets = net[net['target'].isin(scored_genes)].groupby('source')['target'].nunique()
    activity.var['n_targets'] = n_targets.reindex(activity.var_names).fillna(0).astype(int).to_numpy()
    if families is not None:
        for col in families.columns:
            activity.var[col] = families[col].reindex(activity.var_names).to_numpy()

    activity.uns['mirna_activity'] = {'method': method, 'layer': str(layer), 'min_targets': min_targets}
    log.info(f"Activity matrix ready: {activity.n_obs} cells x {activity.n_vars} miRNA families.")
    return activity


def top_active_mirnas(activity: ad.AnnData, groupby: str, n: int = 10) -> pd.DataFrame:
    """
    Mean activity per group for the families that vary most between groups.

    Returns a families x groups table of mean scores plus a 'spread' column
    (max minus min group mean), sorted by spread, limited to `n` rows.
    """
    if not isinstance(activity, ad.AnnData):
        raise TypeError("Input 'activity' must be an AnnData object.")
    if groupby not in activity.obs:
        raise KeyError(f"Group key '{groupby}' not found in activity.obs.")
    if n <= 0:
        raise ValueError("Argument 'n' must be a positive integer.")

    X = activity.X.toarray() if sparse.issparse(activity.X) else np.asarray(activity.X)
    df = pd.DataFrame(X, index=activity.obs_names, columns=activity.var_names)
    means = df.groupby(activity.obs[groupby].to_numpy()).mean().T
    means['spread'] = means.max(axis=1) - means.min(axis=1)
    return means.sort_values('spread', ascending=False).head(n)
