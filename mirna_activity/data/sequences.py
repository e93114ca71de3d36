# mirna_activity/data/sequences.py

import logging
import os
import pandas as pd
from Bio import SeqIO
from Bio.Seq import Seq

log = logging.getLogger(__name__)

# Seed region of the mature miRNA (1-based, inclusive) and whether the site
# carries an A opposite miRNA position 1.
SEED_TYPES = {
    '6mer': (2, 7, False),
    '7mer-m8': (2, 8, False),
    '7mer-A1': (2, 7, True),
    '8mer': (2, 8, True),
}


def read_fasta(path: str, id_field: int | None = None, sep: str = '|') -> dict[str, str]:
    """
    Reads a FASTA file into a {id: sequence} dictionary.

    Sequences are upper-cased and RNA is converted to DNA (U -> T) so 3'UTRs
    and mature miRNAs share one alphabet. When several records map to the
    same id (e.g. transcript isoforms of one gene), the longest is kept.

    Args:
        path: FASTA file path (plain text).
        id_field: Index of the header field to use as id after splitting the
                  record id on `sep`. None uses the full record id.
        sep: Header field separator.

    Returns:
        Dictionary of sequences keyed by id.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If no records are found or `id_field` is out of range.
    """
    expanded_path = os.path.expanduser(path)
    if not os.path.isfile(expanded_path):
        raise FileNotFoundError(f"FASTA file not found: {expanded_path}")

    log.info(f"Reading sequences from {expanded_path}")
    sequences = {}
    n_records = 0
    for record in SeqIO.parse(expanded_path, "fasta"):
        n_records += 1
        seq_id = record.id
        if id_field is not None:
            fields = record.id.split(sep)
            if id_field >= len(fields):
                raise ValueError(
                    f"Header '{record.id}' has {len(fields)} fields; id_field={id_field} is out of range."
                )
            seq_id = fields[id_field]
        seq = str(record.seq).upper().replace('U', 'T')
        if seq_id not in sequences or len(seq) > len(sequences[seq_id]):
            sequences[seq_id] = seq

    if n_records == 0:
        raise ValueError(f"No FASTA records found in {expanded_path}")
    log.info(f"Read {n_records} records ({len(sequences)} unique ids).")
    return sequences


def seed_match(mature_seq: str, seed_type: str = '7mer-m8') -> str:
    """Returns the 3'UTR site (DNA, 5'->3') complementary to a miRNA seed."""
    if seed_type not in SEED_TYPES:
        raise ValueError(f"Unknown seed_type '{seed_type}'. Choose from {list(SEED_TYPES)}.")
    seq = mature_seq.upper().replace('U', 'T')
    if len(seq) < 8:
        raise ValueError(f"Mature sequence '{mature_seq}' is shorter than 8 nt.")

    start, end, a1 = SEED_TYPES[seed_type]
    site = str(Seq(seq[start - 1:end]).reverse_complement())
    if a1:
        site += 'A'
    return site


def group_mirna_families(mirna_seqs: dict[str, str], seed_type: str = '7mer-m8') -> pd.DataFrame:
    """
    Groups mature miRNAs that share a seed match into families.

    Family names use the alphabetically first member, with '/+N' appended when
    N other miRNAs share the same site.

    Returns:
        DataFrame indexed by family name with columns 'seed_match' and 'members'.
    """
    if not mirna_seqs:
        raise ValueError("No miRNA sequences provided.")

    by_site = {}
    for name, seq in mirna_seqs.items():
        try:
            site = seed_match(seq, seed_type)
        except ValueError as e:
            log.warning(f"Skipping miRNA '{name}': {e}")
            continue
        by_site.setdefault(site, []).append(name)

    if not by_site:
        raise ValueError("None of the miRNA sequences yielded a seed match.")

    rows = []
    for site, members in by_site.items():
        members = sorted(members)
        family = members[0] if len(members) == 1 else f"{members[0]}/+{len(members) - 1}"
        rows.append({'family': family, 'seed_match': site, 'members': ",".join(members)})

    families = pd.DataFrame(rows).set_index('family').sort_index()
    log.info(f"Grouped {len(mirna_seqs)} miRNAs into {len(families)} seed families ({seed_type}).")
    return families
