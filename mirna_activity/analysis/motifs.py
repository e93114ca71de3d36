# mirna_activity/analysis/motifs.py

import logging
import os
from collections import Counter
import numpy as np
import pandas as pd

from ..data.sequences import read_fasta, group_mirna_families

log = logging.getLogger(__name__)

NETWORK_COLUMNS = ['source', 'target', 'weight']


def _kmer_counts(seq: str, k: int) -> Counter:
    """Counts every (overlapping) k-mer in a sequence.

    One pass per UTR serves every family; Seq.count_overlap would rescan the
    UTR once per seed match.
    """
    return Counter(seq[i:i + k] for i in range(len(seq) - k + 1))


def count_seed_sites(
    utr_seqs: dict[str, str],
    families: pd.DataFrame,
    weight: str = 'binary',
    max_sites: int | None = None
) -> pd.DataFrame:
    """
    Scans 3'UTR sequences for the seed match of every miRNA family.

    Args:
        utr_seqs: {gene: 3'UTR sequence (DNA)}.
        families: Output of `group_mirna_families` (index = family,
                  column 'seed_match').
        weight: 'binary' gives every (family, gene) edge weight 1.0; 'count'
                uses the number of sites in the UTR.
        max_sites: Cap on the per-gene site count when weight='count'.

    Returns:
        Network DataFrame with columns 'source' (family), 'target' (gene) and
        'weight', one row per pair with at least one site.
    """
    if weight not in ('binary', 'count'):
        raise ValueError(f"Unknown weight mode '{weight}'. Use 'binary' or 'count'.")
    if 'seed_match' not in families.columns:
        raise KeyError("Column 'seed_match' not found in families table.")
    if max_sites is not None and max_sites < 1:
        raise ValueError("Argument 'max_sites' must be a positive integer or None.")
    if not utr_seqs:
        raise ValueError("No 3'UTR sequences provided.")

    site_lengths = sorted(set(families['seed_match'].str.len()))
    log.info(f"Scanning {len(utr_seqs)} 3'UTRs for {len(families)} seed matches "
             f"(site lengths {site_lengths}, weight='{weight}').")

    rows = []
    for gene, seq in utr_seqs.items():
        counts_by_k = {k: _kmer_counts(seq, k) for k in site_lengths}
        for family, site in families['seed_match'].items():
            n_sites = counts_by_k[len(site)].get(site, 0)
            if n_sites == 0:
                continue
            if weight == 'binary':
                w = 1.0
            else:
                w = float(min(n_sites, max_sites) if max_sites is not None else n_sites)
            rows.append((family, gene, w))

    net = pd.DataFrame(rows, columns=NETWORK_COLUMNS)
    log.info(f"Found {len(net)} family-gene edges.")
    return net


def load_motif_table(
    path: str,
    source_col: str = 'source',
    target_col: str = 'target',
    weight_col: str | None = None
) -> pd.DataFrame:
    """
    Loads precomputed motif statistics as a network.

    Long tables need `source_col` and `target_col` columns (and optionally
    `weight_col`; otherwise every edge weighs 1.0). Any other table is read as
    a wide genes x motifs matrix whose non-zero entries become edges weighted
    by the entry value.
    """
    expanded_path = os.path.expanduser(path)
    if not os.path.isfile(expanded_path):
        raise FileNotFoundError(f"Motif table not found: {expanded_path}")

    sep = "," if ".csv" in expanded_path.lower() else "\t"
    table = pd.read_csv(expanded_path, sep=sep)
    if table.empty:
        raise ValueError(f"Motif table {expanded_path} is empty.")

    if source_col in table.columns and target_col in table.columns:
        log.info(f"Reading long-format motif table from {expanded_path}.")
        if weight_col is not None and weight_col not in table.columns:
            raise KeyError(f"Weight column '{weight_col}' not found in motif table.")
        net = pd.DataFrame({
            'source': table[source_col].astype(str),
            'target': table[target_col].astype(str),
            'weight': table[weight_col].astype(float) if weight_col else 1.0,
        })
    else:
        log.info(f"Reading wide-format (genes x motifs) motif table from {expanded_path}.")
        wide = table.set_index(table.columns[0])
        wide.index = wide.index.astype(str)
        wide = wide.apply(pd.to_numeric, errors='coerce').fillna(0.0)
        stacked = wide.stack()
        stacked = stacked[stacked != 0]
        net = pd.DataFrame({
            'source': stacked.index.get_level_values(1).astype(str),
            'target': stacked.index.get_level_values(0).astype(str),
            'weight': stacked.to_numpy(dtype=float),
        })

    log.info(f"Loaded {len(net)} edges for {net['source'].nunique()} motifs.")
    return net


def filter_network(
    net: pd.DataFrame,
    gene_universe,
    min_targets: int = 5,
    max_targets: int | None = None
) -> pd.DataFrame:
    """
    Restricts a motif network to measured genes and usable families.

    Duplicate (source, target) pairs keep their largest weight. Families with
    fewer than `min_targets` (or more than `max_targets`) measured targets are
    dropped.

    Raises:
        ValueError: If no family survives the filters.
    """
    missing = [c for c in NETWORK_COLUMNS if c not in net.columns]
    if missing:
        raise KeyError(f"Network is missing columns: {missing}")
    if min_targets < 1:
        raise ValueError("Argument 'min_targets' must be a positive integer.")
    if max_targets is not None and max_targets < min_targets:
        raise ValueError(f"max_targets ({max_targets}) cannot be smaller than min_targets ({min_targets}).")

    n_sources_start = net['source'].nunique()
    genes = pd.Index(gene_universe)
    filtered = net[net['target'].isin(genes)]
    n_dup = int(filtered.duplicated(['source', 'target']).sum())
    if n_dup:
        log.debug(f"Collapsing {n_dup} duplicated edges.")
        filtered = filtered.groupby(['source', 'target'], as_index=False, observed=True)['weight'].max()

    sizes = filtered.groupby('source', observed=True)['target'].nunique()
    keep = sizes >= min_targets
    if max_targets is not None:
        keep &= sizes <= max_targets
    kept_sources = sizes.index[keep]
    filtered = filtered[filtered['source'].isin(kept_sources)].reset_index(drop=True)

    log.info(f"Kept {len(kept_sources)} of {n_sources_start} motif families with "
             f">= {min_targets} measured targets ({len(filtered)} edges).")
    if filtered.empty:
        raise ValueError(
            f"No motif family has at least {min_targets} targets among the {len(genes)} measured genes."
        )
    return filtered[NETWORK_COLUMNS]


def build_seed_network(
    utr_fasta: str,
    mirna_fasta: str,
    seed_type: str = '7mer-m8',
    weight: str = 'binary',
    max_sites: int | None = None,
    utr_id_field: int | None = None,
    mirna_species_prefix: str | None = None
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """
    Builds a miRNA family -> target gene network from sequence files.

    Args:
        utr_fasta: FASTA of 3'UTR sequences; ids (or header field
                   `utr_id_field`) must match the gene names of the count matrix.
        mirna_fasta: FASTA of mature miRNA sequences (e.g. miRBase mature.fa).
        seed_type: Seed match definition, see `data.sequences.SEED_TYPES`.
        weight: 'binary' or 'count' edge weights.
        max_sites: Cap on site counts for weight='count'.
        utr_id_field: Header field holding the gene name ('|'-separated).
        mirna_species_prefix: Keep only miRNAs whose name starts with this
                              prefix (e.g. 'hsa-').

    Returns:
        (network, families) where families carries 'seed_match', 'members'
        and 'n_sites_total'.
    """
    mirna_seqs = read_fasta(mirna_fasta)
    if mirna_species_prefix:
        mirna_seqs = {k: v for k, v in mirna_seqs.items() if k.startswith(mirna_species_prefix)}
        log.info(f"Kept {len(mirna_seqs)} miRNAs with prefix '{mirna_species_prefix}'.")
        if not mirna_seqs:
            raise ValueError(f"No miRNA names start with '{mirna_species_prefix}'.")

    families = group_mirna_families(mirna_seqs, seed_type=seed_type)
    utr_seqs = read_fasta(utr_fasta, id_field=utr_id_field)
    net = count_seed_sites(utr_seqs, families, weight=weight, max_sites=max_sites)

    totals = net.groupby('source')['weight'].sum() if not net.empty else pd.Series(dtype=float)
    families['n_sites_total'] = totals.reindex(families.index).fillna(0).astype(np.float64)
    return net, families
