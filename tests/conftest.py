# tests/conftest.py

import logging

import matplotlib
matplotlib.use("Agg")

import anndata as ad
import numpy as np
import pandas as pd
import pytest
from scipy import sparse

from mirna_activity.analysis.qc import calculate_qc_metrics
from mirna_activity.analysis.preprocess import normalize_log1p, relative_expression
from mirna_activity.analysis.motifs import build_seed_network
from mirna_activity.analysis.activity import compute_mirna_activity
from mirna_activity.analysis.dimred import scale_activity, reduce_dimensionality
from mirna_activity.analysis.clustering import perform_clustering
from mirna_activity.analysis.dge import find_marker_mirnas

logging.basicConfig(level=logging.WARNING)
log = logging.getLogger(__name__)

# --- Synthetic data layout ---
# 120 cells in two groups of 60. Genes GENE000-GENE199 plus three mito genes.
# GENE000-029 carry let-7 sites and are repressed in group B.
# GENE030-059 carry miR-21 sites and are repressed in group A.
# GENE060-089 carry miR-155 sites and do not change.
N_CELLS_PER_GROUP = 60
N_GENES = 200
MITO_GENES = ["MT-CO1", "MT-ND1", "MT-ATP6"]
GENE_NAMES = [f"GENE{i:03d}" for i in range(N_GENES)]

MATURE_MIRNAS = {
    "hsa-let-7a-5p": "UGAGGUAGUAGGUUGUAUAGUU",
    "hsa-miR-98-5p": "UGAGGUAGUAAGUUGUAUUGUU",
    "hsa-miR-21-5p": "UAGCUUAUCAGACUGAUGUUGA",
    "hsa-miR-155-5p": "UUAAUGCUAAUCGUGAUAGGGGU",
    "mmu-miR-1a-3p": "UGGAAUGUAAAGAAGUAUGUAU",
}
LET7_FAMILY = "hsa-let-7a-5p/+1"
MIR21_FAMILY = "hsa-miR-21-5p"
MIR155_FAMILY = "hsa-miR-155-5p"

# 7mer-m8 sites
SITES = {
    LET7_FAMILY: "CTACCTC",
    MIR21_FAMILY: "ATAAGCT",
    MIR155_FAMILY: "AGCATTA",
}
PLANTED_TARGETS = {
    LET7_FAMILY: GENE_NAMES[0:30],
    MIR21_FAMILY: GENE_NAMES[30:60],
    MIR155_FAMILY: GENE_NAMES[60:90],
}
# Genes with two let-7 sites
DOUBLE_SITE_GENES = GENE_NAMES[0:5]


def _background(rng, length):
    # C/G only, so no seed match can appear by chance
    return "".join(rng.choice(["C", "G"], size=length))


def make_utr_sequences(seed=0):
    """Returns {gene: 3'UTR} with planted seed sites."""
    rng = np.random.default_rng(seed)
    utrs = {}
    for gene in GENE_NAMES:
        parts = [_background(rng, 40)]
        for family, targets in PLANTED_TARGETS.items():
            if gene in targets:
                n_sites = 2 if gene in DOUBLE_SITE_GENES else 1
                for _ in range(n_sites):
                    parts.append(SITES[family])
                    parts.append(_background(rng, 30))
        parts.append(_background(rng, 60))
        utrs[gene] = "".join(parts)
    return utrs


def make_counts(seed=0):
    """Raw counts (cells x genes) with group-specific repression of miRNA targets."""
    rng = np.random.default_rng(seed)
    n_cells = 2 * N_CELLS_PER_GROUP
    var_names = GENE_NAMES + MITO_GENES
    groups = np.array(["A"] * N_CELLS_PER_GROUP + ["B"] * N_CELLS_PER_GROUP)

    base = rng.gamma(shape=2.0, scale=5.0, size=len(var_names)) + 2.0
    size_factors = rng.uniform(0.8, 1.2, size=n_cells)
    lam = size_factors[:, None] * base[None, :]
    let7_idx = [var_names.index(g) for g in PLANTED_TARGETS[LET7_FAMILY]]
    mir21_idx = [var_names.index(g) for g in PLANTED_TARGETS[MIR21_FAMILY]]
    lam[np.ix_(groups == "B", let7_idx)] *= 0.25
    lam[np.ix_(groups == "A", mir21_idx)] *= 0.25
    counts = rng.poisson(lam).astype(np.float32)

    adata = ad.AnnData(
        X=sparse.csr_matrix(counts),
        obs=pd.DataFrame({"group": pd.Categorical(groups)}, index=[f"cell{i:03d}" for i in range(n_cells)]),
        var=pd.DataFrame(index=var_names),
    )
    return adata


def write_fasta(path, records):
    with open(path, "w") as fh:
        for header, seq in records:
            fh.write(f">{header}\n{seq}\n")
    return str(path)


# --- Fixtures ---

@pytest.fixture(scope="module")
def raw_counts() -> ad.AnnData:
    return make_counts()


@pytest.fixture(scope="module")
def sequence_files(tmp_path_factory):
    """Writes mature miRNA and 3'UTR FASTA files; returns (utr_fasta, mirna_fasta)."""
    base = tmp_path_factory.mktemp("sequences")
    utrs = make_utr_sequences()
    utr_records = [(f"ENST{i:05d}|{gene}", seq) for i, (gene, seq) in enumerate(utrs.items())]
    # A shorter isoform without sites; the longest record per gene wins
    utr_records.append(("ENST99999|GENE000", "CCGGCCGG"))
    utr_path = write_fasta(base / "utr3.fa", utr_records)
    mirna_path = write_fasta(base / "mature.fa", list(MATURE_MIRNAS.items()))
    return utr_path, mirna_path


@pytest.fixture(scope="module")
def seed_network(sequence_files):
    utr_path, mirna_path = sequence_files
    return build_seed_network(
        utr_path, mirna_path, seed_type="7mer-m8", weight="binary",
        utr_id_field=1, mirna_species_prefix="hsa-"
    )


@pytest.fixture(scope="module")
def relative_adata(raw_counts) -> ad.AnnData:
    """Counts after QC metrics, normalisation, log1p and centring."""
    adata = raw_counts.copy()
    calculate_qc_metrics(adata, mito_gene_prefix="MT-", inplace=True)
    normalize_log1p(adata, target_sum=1e4, inplace=True)
    relative_expression(adata, inplace=True)
    return adata


@pytest.fixture(scope="module")
def activity_adata(relative_adata, seed_network) -> ad.AnnData:
    net, families = seed_network
    return compute_mirna_activity(relative_adata, net, method="ulm", min_targets=5, families=families)


@pytest.fixture(scope="module")
def clustered_activity(activity_adata) -> ad.AnnData:
    """Activity after scaling, PCA, neighbours, Leiden and t-SNE."""
    activity = activity_adata.copy()
    scale_activity(activity)
    reduce_dimensionality(activity, n_comps=2, random_state=0, inplace=True)
    perform_clustering(
        activity, n_neighbors=15, resolution=0.5, random_state=0,
        perplexity=20, inplace=True
    )
    if 'X_tsne' not in activity.obsm or 'leiden' not in activity.obs:
        pytest.fail("Fixture setup failed: t-SNE or Leiden results missing.")
    return activity


@pytest.fixture(scope="module")
def activity_with_markers(clustered_activity) -> ad.AnnData:
    activity = clustered_activity.copy()
    find_marker_mirnas(activity, groupby="group", key_added="rank_mirnas", layer="activity")
    return activity
