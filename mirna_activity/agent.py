# mirna_activity/agent.py

import logging
from pathlib import Path
import scanpy as sc

# Import pipeline step functions
from .data.loader import load_data, load_cell_metadata
from .analysis.qc import calculate_qc_metrics, filter_cells_qc, filter_genes_qc
from .analysis.preprocess import normalize_log1p, relative_expression
from .analysis.motifs import build_seed_network, load_motif_table, filter_network
from .analysis.activity import compute_mirna_activity, top_active_mirnas
from .analysis.dimred import scale_activity, reduce_dimensionality
from .analysis.clustering import perform_clustering
from .analysis.dge import find_marker_mirnas, get_marker_table
from .visualization.plotting import (
    plot_tsne,
    plot_qc_violin,
    plot_activity_dotplot,
    plot_marker_dotplot,
    plot_marker_heatmap
)

log = logging.getLogger(__name__)


class MirnaActivityWorkflow:
    """Orchestrates count loading, miRNA activity estimation and activity-based clustering."""
    def __init__(self, params):
        """Initializes the workflow orchestrator."""
        self.params = params
        self.adata = None
        self.activity = None
        self.net = None
        self.families = None
        self.markers = None

        required_attrs = ['input_path', 'output_dir', 'output_prefix']
        for attr in required_attrs:
            if not hasattr(self.params, attr):
                raise ValueError(f"Initialization failed: Missing required parameter '{attr}'.")
        if not getattr(params, 'motif_table', None) and not (
            getattr(params, 'utr_fasta', None) and getattr(params, 'mirna_fasta', None)
        ):
            raise ValueError("Initialization failed: provide 'motif_table' or both 'utr_fasta' and 'mirna_fasta'.")

        self.output_dir = Path(self.params.output_dir)
        self.prefix = self.params.output_prefix
        self.cluster_key = 'leiden'
        self.groupby_key = getattr(params, 'dge_groupby', None) or self.cluster_key

        log.info("MirnaActivityWorkflow initialized.")
        log.debug(f"Workflow parameters: {vars(self.params)}")

    def run(self):
        """Executes the full pipeline sequentially and returns the activity AnnData."""
        log.info(f"Starting workflow run: {self.prefix}")
        try:
            self._setup_environment()          # Step 0
            self._load_data()                  # Step 1
            self._run_qc()                     # Step 2
            self._filter()                     # Step 3
            self._normalize()                  # Step 4
            self._relative_expression()        # Step 5
            self._build_network()              # Step 6
            self._compute_activity()           # Step 7
            self._scale_and_pca()              # Step 8
            self._cluster_and_tsne()           # Step 9
            self._find_markers()               # Step 10
            self._plot_results()               # Step 11
            self._save_results()               # Step 12

            log.info(f"Workflow run '{self.prefix}' completed successfully.")
            return self.activity

        except Exception as e:
            log.error(f"Workflow run '{self.prefix}' failed: {e}", exc_info=True)
            raise

    def _setup_environment(self):
        """Sets up Scanpy settings and output directory."""
        log.debug("Setting up environment...")
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            sc.settings.figdir = str(self.output_dir)
            sc.settings.verbosity = 2  # errors, warnings, info
            log.info(f"Output directory set to: {self.output_dir}")
        except OSError as e:
            log.error(f"Failed to create output directory '{self.output_dir}': {e}")
            raise

    def _load_data(self):
        """Loads counts and optional per-cell metadata."""
        log.info("Step 1: Loading data...")
        self.adata = load_data(self.params.input_path, transpose=getattr(self.params, 'transpose', None))
        metadata_path = getattr(self.params, 'metadata_path', None)
        if metadata_path:
            load_cell_metadata(self.adata, metadata_path, columns=getattr(self.params, 'metadata_columns', None))
        if self.groupby_key != self.cluster_key and self.groupby_key not in self.adata.obs:
            raise KeyError(f"Grouping column '{self.groupby_key}' not found in cell metadata.")
        log.info(f"Loaded data shape: {self.adata.shape}.")

    def _run_qc(self):
        """Calculates QC metrics and plots pre-filter violins."""
        if self.adata is None: raise RuntimeError("adata not loaded before running QC.")
        log.info("Step 2: Calculating QC metrics...")
        calculate_qc_metrics(self.adata, mito_gene_prefix=self.params.mito_prefix, inplace=True)
        if self.params.run_qc_violin and self.params.qc_violin_keys:
            log.info("Plotting QC violin plots (pre-filtering)...")
            plot_qc_violin(
                self.adata, keys=self.params.qc_violin_keys, output_dir=str(self.output_dir),
                file_prefix=f"{self.prefix}_qc_violin_prefilt",
                file_format=self.params.plot_format, dpi=self.params.plot_dpi
            )

    def _filter(self):
        """Filters cells and genes, then keeps the filtered counts in .raw."""
        if self.adata is None: raise RuntimeError("adata not loaded before filtering.")
        log.info("Step 3: Filtering cells and genes...")
        n_obs_before, n_vars_before = self.adata.shape
        filter_cells_qc(
            self.adata, min_genes=self.params.min_genes, max_genes=self.params.max_genes,
            min_counts=self.params.min_counts, max_counts=self.params.max_counts,
            max_pct_mito=self.params.max_pct_mito, inplace=True
        )
        if self.adata.n_obs == 0: raise ValueError("All cells filtered out!")
        filter_genes_qc(self.adata, min_cells=self.params.min_cells_per_gene, inplace=True)
        if self.adata.n_vars == 0: raise ValueError("All genes filtered out!")
        log.info(f"Filtering complete. Kept {self.adata.n_obs} / {n_obs_before} cells "
                 f"and {self.adata.n_vars} / {n_vars_before} genes.")
        self.adata.raw = self.adata

        if self.params.run_qc_violin and self.params.qc_violin_keys:
            log.info("Plotting QC violin plots (post-filtering)...")
            plot_qc_violin(
                self.adata, keys=self.params.qc_violin_keys, output_dir=str(self.output_dir),
                file_prefix=f"{self.prefix}_qc_violin_postfilt",
                file_format=self.params.plot_format, dpi=self.params.plot_dpi
            )

    def _normalize(self):
        if self.adata is None: raise RuntimeError("adata not loaded.")
        log.info("Step 4: Normalizing and log-transforming...")
        normalize_log1p(self.adata, target_sum=self.params.target_sum, inplace=True)

    def _relative_expression(self):
        if self.adata is None: raise RuntimeError("adata not loaded.")
        log.info("Step 5: Computing expression relative to the average cell...")
        relative_expression(
            self.adata, scale=self.params.scale_relative, max_value=self.params.relative_max_value,
            layer_added='relative', inplace=True
        )

    def _build_network(self):
        """Builds the seed-match network from FASTA files or loads a motif table."""
        if self.adata is None: raise RuntimeError("adata not loaded.")
        if self.params.motif_table:
            log.info(f"Step 6: Loading motif table from {self.params.motif_table}...")
            net = load_motif_table(
                self.params.motif_table, source_col=self.params.motif_source_col,
                target_col=self.params.motif_target_col, weight_col=self.params.motif_weight_col
            )
            self.families = None
        else:
            log.info("Step 6: Building seed-match network from sequences...")
            net, self.families = build_seed_network(
                self.params.utr_fasta, self.params.mirna_fasta,
                seed_type=self.params.seed_type, weight=self.params.site_weight,
                max_sites=self.params.max_sites, utr_id_field=self.params.utr_id_field,
                mirna_species_prefix=self.params.mirna_species_prefix
            )
        self.net = filter_network(
            net, self.adata.var_names, min_targets=self.params.min_targets,
            max_targets=self.params.max_targets
        )
        log.info(f"Network ready: {self.net['source'].nunique()} families, {len(self.net)} edges.")

    def _compute_activity(self):
        if self.adata is None or self.net is None: raise RuntimeError("Expression or network missing.")
        log.info(f"Step 7: Computing miRNA activity with '{self.params.activity_method}'...")
        self.activity = compute_mirna_activity(
            self.adata, self.net, method=self.params.activity_method,
            layer=self.params.activity_layer, min_targets=self.params.min_targets,
            families=self.families
        )
        if not self.activity.obs_names.equals(self.adata.obs_names):
            raise RuntimeError("Activity matrix cells do not match the filtered count matrix.")

    def _scale_and_pca(self):
        if self.activity is None: raise RuntimeError("Activity matrix not available.")
        log.info("Step 8: Scaling activity and performing PCA...")
        scale_activity(self.activity, max_value=self.params.scale_max_value)
        reduce_dimensionality(
            self.activity, n_comps=self.params.n_pca_comps,
            random_state=self.params.random_seed, inplace=True
        )

    def _cluster_and_tsne(self):
        if self.activity is None: raise RuntimeError("Activity matrix not available.")
        log.info("Step 9: Performing Neighbors, Clustering, and t-SNE on activity PCA...")
        perform_clustering(
            self.activity, use_rep='X_pca', n_neighbors=self.params.n_neighbors,
            metric=self.params.knn_metric, resolution=self.params.leiden_resolution,
            random_state=self.params.random_seed, leiden_key_added=self.cluster_key,
            calculate_tsne=(not self.params.skip_tsne), perplexity=self.params.tsne_perplexity,
            n_jobs=self.params.n_jobs, inplace=True
        )
        # Clusters travel back to the count matrix
        self.adata.obs[self.cluster_key] = self.activity.obs[self.cluster_key].to_numpy()
        log.info("Clustering and t-SNE calculation complete.")

    def _find_markers(self):
        if self.activity is None: raise RuntimeError("Activity matrix not available.")
        if self.groupby_key not in self.activity.obs:
            log.warning(f"Group key '{self.groupby_key}' not found. Skipping differential activity."); return
        log.info(f"Step 10: Finding differential miRNAs between '{self.groupby_key}' groups...")
        find_marker_mirnas(
            self.activity, groupby=self.groupby_key, method=self.params.dge_method,
            corr_method=self.params.dge_corr_method, key_added=self.params.dge_key,
            min_cells_per_group=self.params.min_cells_per_group, layer='activity'
        )
        self.markers = get_marker_table(self.activity, key=self.params.dge_key)
        log.info("Differential miRNA identification complete.")

    def _plot_results(self):
        if self.activity is None: raise RuntimeError("Activity matrix not available.")
        log.info("Step 11: Generating plots...")

        # t-SNE plots
        plot_features = list(self.params.plot_tsne_color or [])
        for key in (self.groupby_key, self.cluster_key):
            if key in self.activity.obs and key not in plot_features: plot_features.insert(0, key)

        if not self.params.skip_tsne and 'X_tsne' in self.activity.obsm and plot_features:
            try:
                plot_tsne(
                    self.activity, color_by=plot_features, output_dir=str(self.output_dir),
                    file_prefix=f"{self.prefix}_tsne", file_format=self.params.plot_format,
                    dpi=self.params.plot_dpi
                )
            except Exception as e: log.error(f"Failed generating t-SNE plots: {e}", exc_info=True)
        elif self.params.skip_tsne: log.info("Skipping t-SNE plots.")

        # Activity dotplot of requested (or most variable) families
        mirnas = list(self.params.plot_dotplot_mirnas or [])
        if self.groupby_key in self.activity.obs:
            try:
                if not mirnas:
                    mirnas = list(top_active_mirnas(self.activity, self.groupby_key, n=self.params.dge_n_markers * 2).index)
                plot_activity_dotplot(
                    self.activity, var_names=mirnas, groupby=self.groupby_key,
                    output_dir=str(self.output_dir), file_prefix=f"{self.prefix}_activity_dotplot",
                    file_format=self.params.plot_format, dpi=self.params.plot_dpi, layer='activity'
                )
            except Exception as e: log.error(f"Failed generating activity dotplot: {e}", exc_info=True)

        # Differential miRNA plots
        if self.params.run_dge_plots and self.params.dge_key in self.activity.uns:
            marker_plot_kwargs = dict(
                key=self.params.dge_key, n_markers=self.params.dge_n_markers,
                groupby=self.groupby_key, output_dir=str(self.output_dir),
                file_format=self.params.plot_format, dpi=self.params.plot_dpi
            )
            try: plot_marker_dotplot(self.activity, file_prefix=f"{self.prefix}_marker_dotplot", layer='activity', **marker_plot_kwargs)
            except Exception as e: log.error(f"Failed generating marker dotplot: {e}", exc_info=True)
            if self.params.run_dge_heatmap:
                try: plot_marker_heatmap(self.activity, file_prefix=f"{self.prefix}_marker_heatmap", show_gene_labels=True, **marker_plot_kwargs)
                except Exception as e: log.error(f"Failed generating marker heatmap: {e}", exc_info=True)
        elif not self.params.run_dge_plots: log.info("Skipping differential miRNA plots as requested.")
        else: log.warning(f"Differential key '{self.params.dge_key}' not found. Skipping marker plots.")
        log.info("Plot generation complete.")

    def _save_results(self):
        if self.adata is None or self.activity is None: raise RuntimeError("No AnnData objects to save.")
        log.info("Step 12: Saving results...")
        paths = {
            'counts': self.output_dir / f"{self.prefix}_counts.h5ad",
            'activity': self.output_dir / f"{self.prefix}_activity.h5ad",
            'network': self.output_dir / f"{self.prefix}_network.csv",
            'markers': self.output_dir / f"{self.prefix}_markers.csv",
        }
        try:
            for adata_out in (self.adata, self.activity):
                for col in adata_out.obs.select_dtypes(include='category').columns:
                    if len(adata_out.obs[col].cat.categories) > 500: log.warning(f"Obs column '{col}' has >500 categories.")
            self.adata.write_h5ad(paths['counts'], compression="gzip")
            self.activity.write_h5ad(paths['activity'], compression="gzip")
            self.net.to_csv(paths['network'], index=False)
            if self.markers is not None:
                self.markers.to_csv(paths['markers'], index=False)
            else:
                log.warning("No differential miRNA table to save.")
                paths.pop('markers')
            for name, path in paths.items(): log.info(f"Saved {name} to: {path}")
        except Exception as e: log.error(f"Failed to save results: {e}", exc_info=True); raise
