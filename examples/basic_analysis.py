"""
Example script demonstrating basic usage of mirna_activity
"""

from mirna_activity.data.loader import load_data
from mirna_activity.analysis.qc import calculate_qc_metrics, filter_cells_qc, filter_genes_qc
from mirna_activity.analysis.preprocess import normalize_log1p, relative_expression
from mirna_activity.analysis.motifs import build_seed_network
from mirna_activity.analysis.activity import compute_mirna_activity, top_active_mirnas
from mirna_activity.analysis.dimred import scale_activity, reduce_dimensionality
from mirna_activity.analysis.clustering import perform_clustering
from mirna_activity.analysis.dge import find_marker_mirnas, get_marker_table


def main():
    # Load counts (genes x cells text matrix)
    adata = load_data("path/to/counts.csv.gz")

    # QC
    calculate_qc_metrics(adata, mito_gene_prefix="MT-")
    filter_cells_qc(adata, min_genes=200, max_pct_mito=20)
    filter_genes_qc(adata, min_cells=10)

    # Expression relative to the average cell
    normalize_log1p(adata, target_sum=1e4)
    relative_expression(adata)

    # miRNA family -> target network from 3'UTR and mature miRNA sequences
    net, families = build_seed_network(
        "path/to/utr3.fa", "path/to/mature.fa",
        seed_type="7mer-m8", utr_id_field=1, mirna_species_prefix="hsa-"
    )

    # Activity per cell, then cluster cells on it
    activity = compute_mirna_activity(adata, net, method="ulm", families=families)
    scale_activity(activity)
    reduce_dimensionality(activity, n_comps=30)
    perform_clustering(activity, n_neighbors=30, metric="cosine", perplexity=50)

    # Differential miRNA activity between clusters
    find_marker_mirnas(activity, groupby="leiden", layer="activity")
    print(get_marker_table(activity, pval_cutoff=0.05).head(20))
    print(top_active_mirnas(activity, groupby="leiden", n=10))

    # Save results
    activity.write_h5ad("mirna_activity.h5ad")

if __name__ == "__main__":
    main()
