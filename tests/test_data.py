import numpy as np
import pytest

import scintegrate.data

from scintegrate.data import (
    PUBLIC_DATASETS,
    downsample_cells,
    fetch_dataset,
    filter_cells_and_genes,
    filter_obs,
    load_dataset,
    summarize_design,
)

from conftest import make_counts_adata


def _write_renamed(tmp_path):
    adata = make_counts_adata(n_per_group=5)
    adata.obs = adata.obs.rename(columns={"condition": "label", "subject": "replicate"})
    path = tmp_path / "kang.h5ad"
    adata.write_h5ad(path)
    return path


def test_load_dataset_renames_columns(tmp_path):
    path = _write_renamed(tmp_path)

    adata = load_dataset(
        str(path), obs_rename={"label": "condition", "replicate": "subject"}
    )

    assert adata.n_obs == 60
    for key in ("condition", "subject", "cell_type"):
        assert key in adata.obs.columns
        assert adata.obs[key].dtype == "category"
    assert set(adata.obs["condition"].cat.categories) == {"ctrl", "stim"}


def test_load_dataset_missing_required_key(tmp_path):
    path = _write_renamed(tmp_path)

    with pytest.raises(ValueError, match="Required columns"):
        load_dataset(str(path))


def test_load_dataset_unknown_rename(tmp_path):
    path = _write_renamed(tmp_path)

    with pytest.raises(ValueError, match="rename"):
        load_dataset(str(path), obs_rename={"batch": "condition"})


def test_filter_obs_drops_unused_categories(counts_adata):
    filtered = filter_obs(counts_adata, "cell_type", ["A"])

    assert (filtered.obs["cell_type"] == "A").all()
    assert list(filtered.obs["cell_type"].cat.categories) == ["A"]
    # original untouched
    assert counts_adata.n_obs == 240


def test_filter_obs_unknown_column(counts_adata):
    with pytest.raises(ValueError):
        filter_obs(counts_adata, "tissue", ["blood"])


def test_filter_cells_and_genes(counts_adata):
    counts_adata.X[:, 0] = 0

    filter_cells_and_genes(counts_adata, min_genes=1, min_cells=1)

    assert "g0" not in counts_adata.var_names
    assert counts_adata.n_obs == 240


def test_downsample_stratified():
    adata = make_counts_adata(n_per_group=30)

    small = downsample_cells(adata, 120, stratify_key="condition", seed=1)

    assert small.n_obs == 120
    counts = small.obs["condition"].value_counts()
    assert counts["ctrl"] == counts["stim"] == 60
    # original order is kept
    positions = adata.obs_names.get_indexer(small.obs_names)
    assert np.all(np.diff(positions) > 0)


def test_downsample_is_reproducible(counts_adata):
    a = downsample_cells(counts_adata, 50, seed=3)
    b = downsample_cells(counts_adata, 50, seed=3)

    assert list(a.obs_names) == list(b.obs_names)


def test_downsample_larger_than_dataset(counts_adata):
    result = downsample_cells(counts_adata, 10_000)

    assert result.n_obs == counts_adata.n_obs
    assert result is not counts_adata


def test_summarize_design(counts_adata):
    design = summarize_design(counts_adata)

    assert design.shape == (3, 2)
    assert (design.to_numpy() == 40).all()


def test_downsample_stratified_never_exceeds_target():
    adata = make_counts_adata(n_per_group=5)
    adata.obs["stratum"] = ["rare1", "rare2"] + ["common"] * (adata.n_obs - 2)

    for n_cells in (1, 2, 3, 7, 31):
        small = downsample_cells(adata, n_cells, stratify_key="stratum", seed=0)
        assert small.n_obs == n_cells


def test_load_dataset_fetches_public_dataset_and_caches(tmp_path, monkeypatch):
    calls = []

    def fake_fetch(name):
        calls.append(name)
        adata = make_counts_adata(n_per_group=5)
        adata.obs = adata.obs.rename(columns={"condition": "label", "subject": "replicate"})
        return adata

    monkeypatch.setattr(scintegrate.data, "fetch_dataset", fake_fetch)
    path = tmp_path / "data" / "kang2018.h5ad"
    rename = {"label": "condition", "replicate": "subject"}

    adata = load_dataset(str(path), obs_rename=rename, dataset="kang2018")
    assert calls == ["kang2018"]
    assert path.exists()
    assert set(adata.obs["condition"].cat.categories) == {"ctrl", "stim"}

    # Second load reads the cached file
    again = load_dataset(str(path), obs_rename=rename, dataset="kang2018")
    assert calls == ["kang2018"]
    assert again.n_obs == adata.n_obs


def test_fetch_dataset_unknown_name():
    assert "kang2018" in PUBLIC_DATASETS
    with pytest.raises(ValueError, match="Unknown dataset"):
        fetch_dataset("no_such_dataset")


def test_load_dataset_rejects_dataset_and_backup_url(tmp_path):
    with pytest.raises(ValueError, match="either dataset or backup_url"):
        load_dataset(
            str(tmp_path / "x.h5ad"), backup_url="https://example.org/x.h5ad", dataset="kang2018"
        )
