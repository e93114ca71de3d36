# tests/test_loader.py

import pytest
import anndata as ad
import numpy as np
import pandas as pd
import logging

from mirna_activity.data.loader import load_data, load_cell_metadata

log = logging.getLogger(__name__)

# --- Fixtures ---

@pytest.fixture
def count_frame() -> pd.DataFrame:
    """Genes x cells count table, the usual export layout."""
    rng = np.random.default_rng(1)
    return pd.DataFrame(
        rng.poisson(3, size=(6, 4)),
        index=["GeneA", "GeneB", "GeneC", "GeneD", "GeneA", "MT-CO1"],
        columns=["bc1", "bc2", "bc3", "bc4"],
    )


# --- Test Functions ---

def test_load_h5ad_success(raw_counts, tmp_path):
    """Tests successful loading of an H5AD file."""
    path = tmp_path / "counts.h5ad"
    raw_counts.write_h5ad(path)
    adata = load_data(str(path))
    assert isinstance(adata, ad.AnnData), "Loaded object is not an AnnData instance"
    assert adata.shape == raw_counts.shape
    assert list(adata.obs_names) == list(raw_counts.obs_names)


def test_load_csv_transposes_by_default(count_frame, tmp_path):
    """Genes x cells tables are transposed and duplicate gene names made unique."""
    path = tmp_path / "counts.csv"
    count_frame.to_csv(path)
    adata = load_data(str(path))
    assert adata.shape == (4, 6)
    assert list(adata.obs_names) == ["bc1", "bc2", "bc3", "bc4"]
    assert adata.var_names.is_unique
    assert "GeneA-1" in adata.var_names
    np.testing.assert_array_equal(adata.X.toarray()[:, 1], count_frame.iloc[1].to_numpy())


def test_load_gzipped_tsv_cells_as_rows(count_frame, tmp_path):
    """transpose=False keeps rows as cells."""
    path = tmp_path / "counts.tsv.gz"
    count_frame.T.to_csv(path, sep="\t")
    adata = load_data(str(path), transpose=False)
    assert adata.shape == (4, 6)
    assert adata.obs_names[0] == "bc1"


def test_load_text_matrix_non_numeric_raises(tmp_path):
    path = tmp_path / "bad.csv"
    pd.DataFrame({"bc1": [1, 2], "bc2": ["x", "y"]}, index=["g1", "g2"]).to_csv(path)
    with pytest.raises(ValueError):
        load_data(str(path))


def test_load_invalid_path_raises_error():
    """Tests that loading a non-existent path raises FileNotFoundError."""
    with pytest.raises(FileNotFoundError):
        load_data("non_existent_dir/non_existent_file.h5ad")


def test_load_wrong_file_type_raises_error(tmp_path):
    """Tests that loading an unsupported file type raises ValueError."""
    path = tmp_path / "notes.md"
    path.write_text("# not a matrix\n")
    with pytest.raises(ValueError, match="Unrecognized file format"):
        load_data(str(path))


def test_load_single_mtx_is_ambiguous(tmp_path):
    path = tmp_path / "matrix.mtx.gz"
    path.write_bytes(b"")
    with pytest.raises(ValueError, match="ambiguous"):
        load_data(str(path))


def test_load_non_string_path_raises_error():
    """Tests that passing a non-string path raises TypeError."""
    with pytest.raises(TypeError):
        load_data(12345)


# == Metadata ==

def test_load_cell_metadata_joins_and_categorizes(raw_counts, tmp_path, caplog):
    adata = raw_counts.copy()
    labels = pd.DataFrame(
        {"cell_type": ["T cell"] * 10 + ["B cell"] * 10, "score": np.arange(20.0)},
        index=adata.obs_names[:20],
    )
    path = tmp_path / "meta.csv"
    labels.to_csv(path)

    with caplog.at_level(logging.WARNING):
        load_cell_metadata(adata, str(path))

    assert isinstance(adata.obs["cell_type"].dtype, pd.CategoricalDtype)
    assert adata.obs["cell_type"].iloc[0] == "T cell"
    assert adata.obs["cell_type"].iloc[25] != adata.obs["cell_type"].iloc[25]  # NaN
    assert adata.obs["score"].iloc[19] == 19.0
    assert f"{adata.n_obs - 20} / {adata.n_obs} cells have no entry" in caplog.text


def test_load_cell_metadata_column_selection(raw_counts, tmp_path):
    adata = raw_counts.copy()
    path = tmp_path / "meta.tsv"
    pd.DataFrame({"a": 1, "b": "x"}, index=adata.obs_names).to_csv(path, sep="\t")
    load_cell_metadata(adata, str(path), columns=["b"])
    assert "b" in adata.obs and "a" not in adata.obs
    with pytest.raises(KeyError, match="not found"):
        load_cell_metadata(adata, str(path), columns=["missing"])


def test_load_cell_metadata_no_overlap(raw_counts, tmp_path):
    path = tmp_path / "meta.csv"
    pd.DataFrame({"a": [1]}, index=["other_barcode"]).to_csv(path)
    with pytest.raises(ValueError, match="No cell barcodes"):
        load_cell_metadata(raw_counts.copy(), str(path))


def test_load_cell_metadata_missing_file(raw_counts):
    with pytest.raises(FileNotFoundError):
        load_cell_metadata(raw_counts.copy(), "missing_meta.csv")
