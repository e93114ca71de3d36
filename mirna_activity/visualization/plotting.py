# mirna_activity/visualization/plotting.py

import scanpy as sc
import anndata as ad
import logging
import os
import matplotlib.pyplot as plt
from pathlib import Path

log = logging.getLogger(__name__)


def _save_scanpy_plot(plot_func, plot_type, output_path, *args, dpi=150, **kwargs):
    """Calls a scanpy plotting function and writes the current figure to output_path."""
    try:
        plot_func(*args, show=False, **kwargs)
        fig = plt.gcf()
        fig.savefig(output_path, dpi=dpi, bbox_inches='tight')
        log.info(f"Saved {plot_type} plot to {output_path}")
    except Exception as e:
        msg = f"Failed during Scanpy plot generation/saving for {plot_type}: {e}"
        log.error(msg, exc_info=True)
        raise RuntimeError(msg) from e
    finally:
        plt.close('all')


def _output_path(output_dir: str, file_prefix: str, file_format: str) -> str:
    Path(output_dir).mkdir(parents=True, exist_ok=True)
    return os.path.join(output_dir, f"{file_prefix}.{file_format}")


def _resolve_groupby(adata: ad.AnnData, key: str, groupby: str | None) -> str:
    groupby_used = groupby or adata.uns[key].get('params', {}).get('groupby')
    if not groupby_used or groupby_used not in adata.obs:
        raise ValueError(f"Invalid groupby key '{groupby_used}'.")
    return groupby_used


def plot_tsne(
    adata: ad.AnnData,
    color_by: list[str],
    output_dir: str,
    file_prefix: str = "tsne",
    tsne_key: str = 'X_tsne',
    file_format: str = "png",
    dpi: int = 150,
    **kwargs
) -> None:
    """Generates and saves one t-SNE plot per feature (obs column or miRNA family)."""
    if not isinstance(adata, ad.AnnData): raise TypeError("adata must be AnnData")
    if tsne_key not in adata.obsm: raise KeyError(f"t-SNE key '{tsne_key}' not found")
    if not isinstance(color_by, list) or not color_by: raise ValueError("color_by must be non-empty list")
    if not output_dir: raise ValueError("output_dir must be provided")

    Path(output_dir).mkdir(parents=True, exist_ok=True)
    log.info(f"Generating t-SNE plots colored by: {', '.join(color_by)}")
    errors_occurred = []

    for feature in color_by:
        if feature not in adata.obs.columns and feature not in adata.var_names:
            log.warning(f"Feature '{feature}' not found. Skipping t-SNE plot.")
            errors_occurred.append(feature)
            continue

        safe_feature = feature.replace('/', '_').replace('\\', '_').replace('+', '')
        output_path = os.path.join(output_dir, f"{file_prefix}_{safe_feature}.{file_format}")
        try:
            _save_scanpy_plot(
                sc.pl.embedding, "tsne", output_path, adata,
                basis=tsne_key, color=feature, use_raw=False, dpi=dpi, **kwargs
            )
        except Exception as e:
            errors_occurred.append(f"{feature}: {e}")

    if errors_occurred:
        log.warning(f"Some errors occurred during t-SNE plotting for features: {errors_occurred}")


def plot_qc_violin(
    adata: ad.AnnData,
    keys: list[str],
    output_dir: str,
    file_prefix: str = "qc_violin",
    groupby: str | None = None,
    file_format: str = "png",
    dpi: int = 150,
    **kwargs
) -> None:
    """Generates and saves violin plots for QC metrics."""
    if not isinstance(adata, ad.AnnData): raise TypeError("adata must be AnnData")
    if not isinstance(keys, list) or not keys: raise ValueError("keys must be non-empty list")
    if not output_dir: raise ValueError("output_dir must be provided")

    missing_keys = [k for k in keys if k not in adata.obs]
    if missing_keys:
        log.warning(f"QC keys not found in adata.obs: {missing_keys}. Skipping violin plots for these.")
        keys = [k for k in keys if k in adata.obs]
        if not keys: log.error("No valid QC keys found to plot."); return

    output_path = _output_path(output_dir, file_prefix, file_format)
    log.info(f"Generating QC violin plots for: {', '.join(keys)}")
    try:
        _save_scanpy_plot(
            sc.pl.violin, "violin", output_path,
            adata, keys=keys, groupby=groupby, rotation=90, multi_panel=groupby is None,
            dpi=dpi, **kwargs
        )
    except Exception as e:
        log.error(f"Failed to generate QC violin plot: {e}", exc_info=True)


def plot_activity_dotplot(
    adata: ad.AnnData,
    var_names: list[str],
    groupby: str,
    output_dir: str = ".",
    file_prefix: str = "activity_dotplot",
    file_format: str = "png",
    dpi: int = 150,
    standard_scale: str | None = 'var',
    cmap: str = 'RdBu_r',
    **kwargs
) -> None:
    """
    Dot plot of chosen miRNA families across cell groups.

    Colour shows the mean activity per group (scaled per family when
    standard_scale='var'); dot size shows the fraction of cells with positive
    activity. Unknown families are skipped with a warning.
    """
    if not isinstance(adata, ad.AnnData): raise TypeError("adata must be AnnData")
    if groupby not in adata.obs: raise KeyError(f"Group key '{groupby}' not found")
    if not output_dir: raise ValueError("output_dir must be provided")

    missing = [v for v in var_names if v not in adata.var_names]
    if missing:
        log.warning(f"miRNA families not found in activity matrix: {missing}. Skipping them.")
    var_names_to_plot = [v for v in dict.fromkeys(var_names) if v in adata.var_names]
    if not var_names_to_plot:
        raise ValueError("None of the requested miRNA families are present.")

    output_path = _output_path(output_dir, file_prefix, file_format)
    log.info(f"Generating activity dotplot for {len(var_names_to_plot)} miRNA families by '{groupby}'.")
    _save_scanpy_plot(
        sc.pl.dotplot, "dotplot", output_path,
        adata, var_names=var_names_to_plot, groupby=groupby, use_raw=False,
        standard_scale=standard_scale, cmap=cmap, dpi=dpi, **kwargs
    )


def _extract_top_markers(adata: ad.AnnData, key: str, n_markers: int) -> list[str]:
    """Helper to extract the unique top-N marker names over all groups."""
    try:
        marker_names = adata.uns[key]['names']
        top_flat = [name for group_names in marker_names[:n_markers] for name in group_names if isinstance(name, str)]
        var_names_unique = list(dict.fromkeys(top_flat))
        if not var_names_unique: raise ValueError("No valid marker names extracted.")
        log.debug(f"Extracted top {len(var_names_unique)} unique marker names.")
        return var_names_unique
    except KeyError: raise KeyError(f"Structure 'names' not found within adata.uns['{key}'].")
    except Exception as e:
        log.error(f"Failed to extract top {n_markers} markers from uns['{key}']: {e}", exc_info=True)
        raise ValueError(f"Error extracting markers from key '{key}'.") from e


def plot_marker_dotplot(
    adata: ad.AnnData,
    key: str,
    n_markers: int = 5,
    groupby: str | None = None,
    output_dir: str = ".",
    file_prefix: str = "marker_dotplot",
    file_format: str = "png",
    dpi: int = 150,
    **kwargs
) -> None:
    """Generates and saves a dotplot of the top differential miRNAs per group."""
    if not isinstance(adata, ad.AnnData): raise TypeError("adata must be AnnData")
    if key not in adata.uns: raise KeyError(f"Differential key '{key}' not found")
    if not output_dir: raise ValueError("output_dir must be provided")

    groupby_used = _resolve_groupby(adata, key, groupby)
    var_names_to_plot = _extract_top_markers(adata, key, n_markers)
    output_path = _output_path(output_dir, file_prefix, file_format)
    log.info(f"Generating marker dotplot for top {n_markers} miRNAs per group.")

    try:
        _save_scanpy_plot(
            sc.pl.dotplot, "dotplot", output_path,
            adata, var_names=var_names_to_plot, groupby=groupby_used, use_raw=False,
            cmap='RdBu_r', standard_scale='var', dpi=dpi, **kwargs
        )
    except Exception as e:
        log.error(f"Failed to generate marker dotplot: {e}", exc_info=True)


def plot_marker_heatmap(
    adata: ad.AnnData,
    key: str,
    n_markers: int = 5,
    groupby: str | None = None,
    output_dir: str = ".",
    file_prefix: str = "marker_heatmap",
    file_format: str = "png",
    dpi: int = 150,
    **kwargs
) -> None:
    """Generates and saves a per-cell heatmap of the top differential miRNAs."""
    if not isinstance(adata, ad.AnnData): raise TypeError("adata must be AnnData")
    if key not in adata.uns: raise KeyError(f"Differential key '{key}' not found")
    if not output_dir: raise ValueError("output_dir must be provided")

    groupby_used = _resolve_groupby(adata, key, groupby)
    var_names_to_plot = _extract_top_markers(adata, key, n_markers)
    output_path = _output_path(output_dir, file_prefix, file_format)
    log.info(f"Generating marker heatmap for top {n_markers} miRNAs per group.")

    try:
        _save_scanpy_plot(
            sc.pl.heatmap, "heatmap", output_path,
            adata, var_names=var_names_to_plot, groupby=groupby_used, use_raw=False,
            cmap='RdBu_r', dpi=dpi, **kwargs
        )
    except Exception as e:
        log.error(f"Failed to generate marker heatmap: {e}", exc_info=True)
