# mirna_activity/analysis/clustering.py

import scanpy as sc
import anndata as ad
import logging

log = logging.getLogger(__name__)

KNN_METRICS = ('cosine', 'euclidean', 'correlation', 'manhattan')


def perform_clustering(
    adata: ad.AnnData,
    use_rep: str = 'X_pca',
    n_neighbors: int = 30,
    metric: str = 'cosine',
    resolution: float = 1.0,
    random_state: int = 0,
    leiden_key_added: str = 'leiden',
    calculate_tsne: bool = True,
    perplexity: float = 30.0,
    n_jobs: int = 1,
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Builds a k-nearest-neighbour graph, runs Leiden clustering and optionally t-SNE.

    Uses scanpy.pp.neighbors, scanpy.tl.leiden and scanpy.tl.tsne on
    adata.obsm[use_rep] (normally the PCA of the activity matrix).

    Args:
        adata: Activity AnnData with a reduced representation.
        use_rep: Representation in adata.obsm for the graph and embedding.
        n_neighbors: Number of neighbours in the KNN graph. Defaults to 30.
        metric: Distance for the KNN graph, one of KNN_METRICS. Defaults to 'cosine'.
        resolution: Leiden resolution; higher values give more clusters.
        random_state: Seed for Leiden and t-SNE.
        leiden_key_added: adata.obs column receiving cluster labels.
        calculate_tsne: Whether to compute the t-SNE embedding (adata.obsm['X_tsne']).
        perplexity: t-SNE perplexity. Must be smaller than the number of cells;
                    larger values are reduced with a warning.
        n_jobs: Worker threads passed through to t-SNE.
        inplace: Modify AnnData object inplace. Defaults to True.

    Returns:
        If inplace=True, returns None. Otherwise, returns the modified copy.

    Raises:
        TypeError: If input `adata` is not an AnnData object.
        KeyError: If `use_rep` is not found in `adata.obsm`.
        ValueError: If `n_neighbors`, `resolution`, `metric` or `perplexity` are invalid.
        RuntimeError: If the underlying scanpy functions fail.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if use_rep not in adata.obsm:
        raise KeyError(f"Representation '{use_rep}' not found in adata.obsm. Run dimensionality reduction first.")
    if not isinstance(n_neighbors, int) or n_neighbors <= 0:
        raise ValueError("Argument 'n_neighbors' must be a positive integer.")
    if not isinstance(resolution, (int, float)) or resolution <= 0:
        raise ValueError("Argument 'resolution' must be a positive number.")
    if metric not in KNN_METRICS:
        raise ValueError(f"Argument 'metric' must be one of {list(KNN_METRICS)}.")
    if perplexity <= 0:
        raise ValueError("Argument 'perplexity' must be a positive number.")

    if n_neighbors >= adata.n_obs:
        log.warning(f"n_neighbors ({n_neighbors}) >= number of cells ({adata.n_obs}); using {adata.n_obs - 1}.")
        n_neighbors = max(2, adata.n_obs - 1)

    if calculate_tsne and perplexity >= adata.n_obs:
        adjusted = max(1, (adata.n_obs - 1) // 3)
        log.warning(f"t-SNE perplexity ({perplexity}) >= number of cells ({adata.n_obs}); using {adjusted}.")
        perplexity = adjusted

    log.info(
        f"Performing clustering using {use_rep}: n_neighbors={n_neighbors}, metric={metric}, "
        f"resolution={resolution}, random_state={random_state}. t-SNE calculation: {calculate_tsne}."
    )
    adata_work = adata if inplace else adata.copy()

    try:
        sc.pp.neighbors(
            adata_work,
            n_neighbors=n_neighbors,
            use_rep=use_rep,
            metric=metric,
            random_state=random_state,
        )
        if 'connectivities' not in adata_work.obsp:
            raise RuntimeError("scanpy.pp.neighbors finished but 'connectivities' not found in adata.obsp.")

        sc.tl.leiden(
            adata_work,
            resolution=resolution,
            random_state=random_state,
            key_added=leiden_key_added,
        )
        if leiden_key_added not in adata_work.obs:
            raise RuntimeError(f"scanpy.tl.leiden finished but '{leiden_key_added}' not found in adata.obs.")
        n_clusters_found = adata_work.obs[leiden_key_added].nunique()
        log.info(f"Leiden clustering found {n_clusters_found} clusters (adata.obs['{leiden_key_added}']).")

        if calculate_tsne:
            log.info(f"Calculating t-SNE embedding (perplexity={perplexity}, n_jobs={n_jobs})...")
            sc.tl.tsne(
                adata_work,
                use_rep=use_rep,
                perplexity=perplexity,
                random_state=random_state,
                n_jobs=n_jobs,
            )
            if 'X_tsne' not in adata_work.obsm:
                raise RuntimeError("scanpy.tl.tsne finished but 'X_tsne' not found in adata.obsm.")
            log.info("t-SNE embedding stored in adata.obsm['X_tsne'].")
        else:
            log.info("Skipping t-SNE calculation as requested.")

    except Exception as e:
        log.error(f"An error occurred during neighbors calculation, clustering or t-SNE: {e}", exc_info=True)
        raise RuntimeError(f"Failed during clustering/t-SNE steps: {e}") from e

    if not inplace:
        return adata_work
    return None
