# tests/test_qc.py

import pytest
import anndata as ad
import numpy as np
import pandas as pd
import logging

from mirna_activity.analysis.qc import calculate_qc_metrics, filter_cells_qc, filter_genes_qc

log = logging.getLogger(__name__)


# --- Fixtures ---

@pytest.fixture(scope="module")
def adata_qc(raw_counts) -> ad.AnnData:
    adata = raw_counts.copy()
    calculate_qc_metrics(adata, mito_gene_prefix="MT-", inplace=True)
    return adata


# --- Test Functions ---

def test_qc_runs_and_adds_cols(raw_counts):
    """Tests that QC calculation runs and adds expected columns."""
    adata = raw_counts.copy()
    result = calculate_qc_metrics(adata, mito_gene_prefix="MT-", inplace=True)
    assert result is None

    expected_obs_additions = {'n_genes_by_counts', 'total_counts', 'total_counts_mt', 'pct_counts_mt'}
    assert expected_obs_additions.issubset(set(adata.obs.columns)), "Expected QC columns not added to adata.obs"
    assert 'mt' in adata.var.columns, "'mt' column not added to adata.var"
    assert adata.var['mt'].sum() == 3
    assert 'n_cells_by_counts' in adata.var.columns
    assert (adata.obs['pct_counts_mt'] > 0).all()


def test_qc_not_inplace(raw_counts):
    adata = raw_counts.copy()
    new = calculate_qc_metrics(adata, inplace=False)
    assert isinstance(new, ad.AnnData)
    assert 'total_counts' in new.obs
    assert 'total_counts' not in adata.obs


def test_qc_without_mito_genes(raw_counts, caplog):
    adata = raw_counts.copy()
    with caplog.at_level(logging.WARNING):
        calculate_qc_metrics(adata, mito_gene_prefix="mt-", inplace=True)
    assert "No mitochondrial genes found" in caplog.text
    assert (adata.obs['pct_counts_mt'] == 0).all()


def test_qc_invalid_input_type():
    with pytest.raises(TypeError):
        calculate_qc_metrics(np.zeros((3, 3)))


# == filter_cells_qc ==

def test_filter_cells_thresholds(adata_qc):
    adata = adata_qc.copy()
    median_counts = float(adata.obs['total_counts'].median())
    expected = int((adata.obs['total_counts'] >= median_counts).sum())
    filter_cells_qc(adata, min_genes=None, min_counts=median_counts, inplace=True)
    assert adata.n_obs == expected
    assert (adata.obs['total_counts'] >= median_counts).all()


def test_filter_cells_max_pct_mito_is_strict(adata_qc):
    max_mito = float(adata_qc.obs['pct_counts_mt'].max())
    filtered = filter_cells_qc(adata_qc, min_genes=None, max_pct_mito=max_mito, inplace=False)
    assert filtered.n_obs == int((adata_qc.obs['pct_counts_mt'] < max_mito).sum())
    assert filtered.n_obs < adata_qc.n_obs


def test_filter_cells_not_inplace_keeps_original(adata_qc):
    n_before = adata_qc.n_obs
    filtered = filter_cells_qc(adata_qc, min_genes=10_000, inplace=False)
    assert filtered.n_obs == 0
    assert adata_qc.n_obs == n_before


def test_filter_cells_errors(raw_counts, adata_qc):
    with pytest.raises(KeyError, match="Missing required QC columns"):
        filter_cells_qc(raw_counts.copy(), min_genes=10)
    with pytest.raises(ValueError, match="cannot be greater"):
        filter_cells_qc(adata_qc.copy(), min_genes=100, max_genes=10)
    with pytest.raises(ValueError, match="cannot be greater"):
        filter_cells_qc(adata_qc.copy(), min_genes=None, min_counts=100, max_counts=10)
    with pytest.raises(ValueError, match="between 0 and 100"):
        filter_cells_qc(adata_qc.copy(), max_pct_mito=150)


# == filter_genes_qc ==

def test_filter_genes_qc_removes_rare_genes():
    X = np.zeros((20, 3), dtype=np.float32)
    X[:, 0] = 1
    X[:2, 1] = 1
    adata = ad.AnnData(X=X, var=pd.DataFrame(index=["common", "rare", "absent"]))
    filter_genes_qc(adata, min_cells=5, inplace=True)
    assert list(adata.var_names) == ["common"]


def test_filter_genes_qc_disabled_and_invalid(adata_qc):
    copy = filter_genes_qc(adata_qc, min_cells=None, inplace=False)
    assert copy.n_vars == adata_qc.n_vars
    with pytest.raises(ValueError):
        filter_genes_qc(adata_qc.copy(), min_cells=-1)
