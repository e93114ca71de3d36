# mirna_activity/cli.py

import argparse
import logging
import sys
from pathlib import Path
import yaml

from .agent import MirnaActivityWorkflow
from .analysis.activity import ACTIVITY_METHODS
from .analysis.clustering import KNN_METRICS
from .data.sequences import SEED_TYPES

# Setup logging
log = logging.getLogger("mirna_activity.cli")

DEFAULTS = {
    'output_prefix': "mirna_activity",
    'transpose': None,
    'metadata_path': None, 'metadata_columns': None,
    # QC
    'mito_prefix': "MT-", 'min_genes': 200, 'max_genes': None, 'min_counts': None,
    'max_counts': None, 'max_pct_mito': 10.0, 'min_cells_per_gene': 10,
    # Preprocessing
    'target_sum': 10000.0, 'scale_relative': False, 'relative_max_value': None,
    # Motif network
    'motif_table': None, 'motif_source_col': "source", 'motif_target_col': "target",
    'motif_weight_col': None,
    'utr_fasta': None, 'mirna_fasta': None, 'seed_type': "7mer-m8", 'site_weight': "binary",
    'max_sites': None, 'utr_id_field': None, 'mirna_species_prefix': None,
    'min_targets': 5, 'max_targets': None,
    # Activity
    'activity_method': "ulm", 'activity_layer': "relative",
    # DimRed / clustering
    'scale_max_value': None, 'n_pca_comps': 50,
    'n_neighbors': 30, 'knn_metric': "cosine", 'leiden_resolution': 1.0,
    'skip_tsne': False, 'tsne_perplexity': 30.0, 'n_jobs': 1,
    # Differential activity
    'dge_method': "wilcoxon", 'dge_corr_method': "benjamini-hochberg", 'dge_groupby': None,
    'dge_key': "rank_mirnas", 'min_cells_per_group': 3,
    # Plotting
    'plot_tsne_color': None,
    'plot_dotplot_mirnas': None,
    'run_qc_violin': True,
    'qc_violin_keys': "n_genes_by_counts,total_counts,pct_counts_mt",
    'run_dge_plots': True,
    'dge_n_markers': 5,
    'run_dge_heatmap': True,
    'plot_dpi': 150,
    'plot_format': "png",
    'random_seed': 0
}

LIST_KEYS = ['plot_tsne_color', 'plot_dotplot_mirnas', 'qc_violin_keys', 'metadata_columns']


# --- Argument Parser Setup ---
def create_parser():
    parser = argparse.ArgumentParser(
        description="Estimate per-cell miRNA activity from single-cell counts and cluster cells on it.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    # --- Input/Output Arguments ---
    parser.add_argument("-i", "--input-path", type=str, required=True, help="Path to counts (10x directory, .h5ad or text matrix).")
    parser.add_argument("-o", "--output-dir", type=str, required=True, help="Directory to save results (AnnData objects, tables and plots).")
    parser.add_argument("-c", "--config", type=str, default=None, help="Path to a YAML configuration file with pipeline parameters.")
    parser.add_argument("--output-prefix", type=str, help="Prefix for output files. Overrides config.")
    parser.add_argument("--transpose", action=argparse.BooleanOptionalAction, help="Text matrices: treat rows as genes (default) or as cells (--no-transpose).")
    parser.add_argument("--metadata-path", type=str, help="CSV/TSV of per-cell annotations indexed by barcode.")
    parser.add_argument("--metadata-columns", type=str, help="Comma-separated metadata columns to keep.")

    # --- Step Arguments ---
    # QC
    parser.add_argument("--mito-prefix", type=str, help="Mitochondrial gene prefix.")
    parser.add_argument("--min-genes", type=int, help="Min genes per cell.")
    parser.add_argument("--max-genes", type=int, help="Max genes per cell.")
    parser.add_argument("--min-counts", type=int, help="Min counts per cell.")
    parser.add_argument("--max-counts", type=int, help="Max counts per cell.")
    parser.add_argument("--max-pct-mito", type=float, help="Max mitochondrial percentage.")
    parser.add_argument("--min-cells-per-gene", type=int, help="Min cells expressing a gene.")
    # Preprocessing
    parser.add_argument("--target-sum", type=float, help="Target sum for normalization.")
    parser.add_argument("--scale-relative", action=argparse.BooleanOptionalAction, help="Scale relative expression to unit variance.")
    parser.add_argument("--relative-max-value", type=float, help="Clip relative expression at this absolute value.")
    # Motif network
    parser.add_argument("--motif-table", type=str, help="Precomputed motif table (long or genes x motifs).")
    parser.add_argument("--motif-source-col", type=str, help="Motif column in a long motif table.")
    parser.add_argument("--motif-target-col", type=str, help="Gene column in a long motif table.")
    parser.add_argument("--motif-weight-col", type=str, help="Weight column in a long motif table.")
    parser.add_argument("--utr-fasta", type=str, help="FASTA of 3'UTR sequences.")
    parser.add_argument("--mirna-fasta", type=str, help="FASTA of mature miRNA sequences.")
    parser.add_argument("--seed-type", type=str, choices=list(SEED_TYPES), help="Seed match type.")
    parser.add_argument("--site-weight", type=str, choices=['binary', 'count'], help="Edge weight for seed sites.")
    parser.add_argument("--max-sites", type=int, help="Cap on counted sites per gene.")
    parser.add_argument("--utr-id-field", type=int, help="Header field holding the gene symbol in the UTR FASTA.")
    parser.add_argument("--mirna-species-prefix", type=str, help="Keep mature miRNAs with this prefix (e.g. 'hsa-').")
    parser.add_argument("--min-targets", type=int, help="Min measured targets per miRNA family.")
    parser.add_argument("--max-targets", type=int, help="Max measured targets per miRNA family.")
    # Activity
    parser.add_argument("--activity-method", type=str, choices=list(ACTIVITY_METHODS), help="decoupler scoring method.")
    parser.add_argument("--activity-layer", type=str, help="Expression layer scored for activity.")
    # DimRed / clustering
    parser.add_argument("--scale-max-value", type=float, help="Max value when scaling activity.")
    parser.add_argument("--n-pca-comps", type=int, help="Number of PCA components.")
    parser.add_argument("--n-neighbors", type=int, help="Number of neighbors for graph.")
    parser.add_argument("--knn-metric", type=str, choices=list(KNN_METRICS), help="Distance for the neighbor graph.")
    parser.add_argument("--leiden-resolution", type=float, help="Leiden resolution.")
    parser.add_argument("--skip-tsne", action='store_true', default=None, help="Skip t-SNE calculation.")
    parser.add_argument("--tsne-perplexity", type=float, help="t-SNE perplexity.")
    parser.add_argument("--n-jobs", type=int, help="Worker threads for t-SNE.")
    # Differential activity
    parser.add_argument("--dge-method", type=str, choices=['wilcoxon', 't-test', 't-test_overestim_var', 'logreg'], help="Differential test.")
    parser.add_argument("--dge-corr-method", type=str, choices=['benjamini-hochberg', 'bonferroni'], help="Multiple-testing correction.")
    parser.add_argument("--dge-groupby", type=str, help="obs column to compare (defaults to the Leiden clusters).")
    parser.add_argument("--dge-key", type=str, help="adata.uns key for differential results.")
    parser.add_argument("--min-cells-per-group", type=int, help="Smallest group tested.")
    # Plotting
    parser.add_argument("--plot-tsne-color", type=str, help="Comma-separated features for t-SNE color.")
    parser.add_argument("--plot-dotplot-mirnas", type=str, help="Comma-separated miRNA families for the activity dotplot.")
    parser.add_argument("--dge-n-markers", type=int, help="Number of miRNAs per group in marker plots.")
    parser.add_argument("--plot-dpi", type=int, help="DPI for plots.")
    parser.add_argument("--plot-format", type=str, choices=['png', 'pdf', 'svg'], help="Plot file format.")
    parser.add_argument("--run-qc-violin", action=argparse.BooleanOptionalAction, help="Generate QC violin plots.")
    parser.add_argument("--qc-violin-keys", type=str, help="Comma-separated obs keys for QC violin plot.")
    parser.add_argument("--run-dge-plots", action=argparse.BooleanOptionalAction, help="Generate marker plots.")
    parser.add_argument("--run-dge-heatmap", action=argparse.BooleanOptionalAction, help="Generate marker heatmap specifically.")
    # Other
    parser.add_argument("--random-seed", type=int, help="Random seed for reproducibility.")

    return parser


def read_config(config_path: str) -> dict:
    """Reads a YAML config and flattens its sections into one parameter dict."""
    path = Path(config_path)
    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path, 'r') as f:
        config_yaml = yaml.safe_load(f)
    config_params = {}
    if config_yaml:
        if not isinstance(config_yaml, dict):
            raise ValueError(f"Config file {config_path} must contain a mapping.")
        for section, params_in_section in config_yaml.items():
            if isinstance(params_in_section, dict):
                config_params.update(params_in_section)
            else:
                config_params[section] = params_in_section
    log.info(f"Loaded parameters from config file: {config_path}")
    return config_params


# --- Parameter Loading and Precedence ---
def load_and_merge_params(args: argparse.Namespace) -> argparse.Namespace:
    """Merges built-in defaults < YAML config < CLI flags into one namespace."""
    config_params = {}
    if args.config:
        try:
            config_params = read_config(args.config)
        except yaml.YAMLError as e: log.error(f"Error parsing config file {args.config}: {e}"); sys.exit(1)
        except Exception as e: log.error(f"Error reading config file {args.config}: {e}", exc_info=True); sys.exit(1)

    unknown = sorted(set(config_params) - set(DEFAULTS) - {'input_path', 'output_dir'})
    if unknown:
        log.warning(f"Ignoring unknown config parameters: {unknown}")

    final_params = argparse.Namespace()
    cli_args_dict = vars(args)

    for key, default_value in DEFAULTS.items():
        param_value = default_value

        if key in config_params:
            config_value = config_params[key]
            param_value = None if config_value is None or str(config_value).lower() == 'null' else config_value

        cli_value = cli_args_dict.get(key)
        if cli_value is not None:
            param_value = cli_value

        if key in LIST_KEYS and isinstance(param_value, str):
            param_value = [f.strip() for f in param_value.split(',') if f.strip()]
        elif param_value == '':
            param_value = None

        setattr(final_params, key, param_value)

    final_params.input_path = args.input_path
    final_params.output_dir = args.output_dir

    log.debug(f"Final parameters after merge: {vars(final_params)}")
    return final_params


def validate_params(params: argparse.Namespace) -> None:
    """Checks parameter combinations that argparse cannot express."""
    if not params.motif_table and not (params.utr_fasta and params.mirna_fasta):
        raise ValueError("Provide --motif-table, or both --utr-fasta and --mirna-fasta.")
    if params.motif_table and (params.utr_fasta or params.mirna_fasta):
        log.warning("Both a motif table and sequence files were given; using the motif table.")
    if params.min_targets is None or params.min_targets < 1:
        raise ValueError("--min-targets must be a positive integer.")


def run_pipeline(params) -> int:
    """Initializes and runs the MirnaActivityWorkflow. Returns a process exit code."""
    try:
        validate_params(params)
        workflow_agent = MirnaActivityWorkflow(params)
        workflow_agent.run()
        log.info("Workflow finished. Results written to the output directory.")
        return 0
    except Exception as e:
        log.critical(f"Pipeline execution failed: {e}. See previous logs for details.")
        return 1


# --- Entry Point ---
def main(argv=None):
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    parser = create_parser()
    args = parser.parse_args(argv)
    final_params = load_and_merge_params(args)
    sys.exit(run_pipeline(final_params))


if __name__ == "__main__":
    main()
