import matplotlib

matplotlib.use("Agg")

import anndata as ad
import numpy as np
import pandas as pd
import pytest

from scintegrate.preprocessing import standard_preprocess


def make_counts_adata(n_per_group=20, n_genes=60, seed=0):
    """
    Synthetic raw counts with a known design:
    - conditions: ctrl, stim
    - subjects: s1, s2, s3 (each measured in both conditions)
    - cell types: A, B
    - genes g0-g9 are B markers, g10-g14 respond to stim in A only,
      g15-g19 respond to stim in every cell
    """
    rng = np.random.default_rng(seed)
    base = rng.uniform(1, 5, size=n_genes)

    rows, blocks = [], []
    for subject in ["s1", "s2", "s3"]:
        subject_effect = rng.uniform(0.9, 1.1, size=n_genes)
        for condition in ["ctrl", "stim"]:
            for cell_type in ["A", "B"]:
                rate = base * subject_effect
                if cell_type == "B":
                    rate[0:10] *= 5
                if condition == "stim":
                    rate[15:20] *= 4
                    if cell_type == "A":
                        rate[10:15] *= 4
                blocks.append(rng.poisson(rate, size=(n_per_group, n_genes)))
                rows.extend([(subject, condition, cell_type)] * n_per_group)

    obs = pd.DataFrame(rows, columns=["subject", "condition", "cell_type"])
    obs.index = [f"cell{i}" for i in range(len(obs))]
    for col in obs.columns:
        obs[col] = obs[col].astype("category")
    var = pd.DataFrame(index=[f"g{j}" for j in range(n_genes)])

    return ad.AnnData(X=np.vstack(blocks).astype(np.float32), obs=obs, var=var)


@pytest.fixture
def counts_adata():
    return make_counts_adata()


@pytest.fixture
def processed_adata():
    return standard_preprocess(make_counts_adata(), n_hvgs=40, n_pcs=10)
