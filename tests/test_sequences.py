# tests/test_sequences.py

import pytest
import logging

from mirna_activity.data.sequences import read_fasta, seed_match, group_mirna_families, SEED_TYPES
from conftest import MATURE_MIRNAS, LET7_FAMILY, MIR21_FAMILY, write_fasta

log = logging.getLogger(__name__)

LET7A = MATURE_MIRNAS["hsa-let-7a-5p"]


# == read_fasta ==

def test_read_fasta_rna_to_dna_and_uppercase(tmp_path):
    path = write_fasta(tmp_path / "m.fa", [("hsa-miR-x", "uagcuuaucag")])
    seqs = read_fasta(path)
    assert seqs == {"hsa-miR-x": "TAGCTTATCAG"}


def test_read_fasta_id_field_keeps_longest(tmp_path):
    path = write_fasta(tmp_path / "u.fa", [
        ("ENST1|GENE1", "ACGT"),
        ("ENST2|GENE1", "ACGTACGT"),
        ("ENST3|GENE2", "CC"),
    ])
    seqs = read_fasta(path, id_field=1)
    assert seqs == {"GENE1": "ACGTACGT", "GENE2": "CC"}


def test_read_fasta_id_field_out_of_range(tmp_path):
    path = write_fasta(tmp_path / "u.fa", [("ENST1|GENE1", "ACGT")])
    with pytest.raises(ValueError, match="out of range"):
        read_fasta(path, id_field=3)


def test_read_fasta_missing_and_empty(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_fasta(str(tmp_path / "missing.fa"))
    empty = tmp_path / "empty.fa"
    empty.write_text("")
    with pytest.raises(ValueError, match="No FASTA records"):
        read_fasta(str(empty))


# == seed_match ==

@pytest.mark.parametrize("seed_type, expected", [
    ("6mer", "TACCTC"),
    ("7mer-m8", "CTACCTC"),
    ("7mer-A1", "TACCTCA"),
    ("8mer", "CTACCTCA"),
])
def test_seed_match_types(seed_type, expected):
    """let-7a seed GAGGUAG pairs with CUACCUC in the target."""
    assert seed_match(LET7A, seed_type) == expected


def test_seed_match_accepts_dna():
    assert seed_match(LET7A.replace("U", "T").lower()) == "CTACCTC"


def test_seed_match_invalid_inputs():
    with pytest.raises(ValueError, match="Unknown seed_type"):
        seed_match(LET7A, "9mer")
    with pytest.raises(ValueError, match="shorter than 8"):
        seed_match("UGAGGUA")
    assert set(SEED_TYPES) == {"6mer", "7mer-m8", "7mer-A1", "8mer"}


# == group_mirna_families ==

def test_group_mirna_families_shared_seed():
    human = {k: v for k, v in MATURE_MIRNAS.items() if k.startswith("hsa-")}
    families = group_mirna_families(human, seed_type="7mer-m8")
    assert families.index.name == "family"
    assert set(families.index) == {LET7_FAMILY, MIR21_FAMILY, "hsa-miR-155-5p"}
    assert families.loc[LET7_FAMILY, "members"] == "hsa-let-7a-5p,hsa-miR-98-5p"
    assert families.loc[LET7_FAMILY, "seed_match"] == "CTACCTC"
    assert families.loc[MIR21_FAMILY, "seed_match"] == "ATAAGCT"


def test_group_mirna_families_skips_short(caplog):
    with caplog.at_level(logging.WARNING):
        families = group_mirna_families({"short": "UGAG", "hsa-miR-21-5p": MATURE_MIRNAS["hsa-miR-21-5p"]})
    assert list(families.index) == ["hsa-miR-21-5p"]
    assert "Skipping miRNA 'short'" in caplog.text


def test_group_mirna_families_empty():
    with pytest.raises(ValueError):
        group_mirna_families({})
    with pytest.raises(ValueError, match="None of the miRNA sequences"):
        group_mirna_families({"short": "UGAG"})
