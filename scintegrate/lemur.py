"""
Condition-aware latent embedding with pylemur.

LEMUR describes the log expression of every cell as a condition
dependent linear map of a shared latent position. Alignment (by a cell
grouping or by Harmony) adds an invertible affine map per condition on
top of the latent coordinates, so a cell's aligned position can be
mapped back into any condition. That gives counterfactual expression
predictions and per-cell differential expression estimates.

``LemurModel`` wraps ``pylemur.tl.LEMUR`` and keeps the results on the
caller's AnnData: the DE layer, its contrast in ``.uns`` and the aligned
embedding in ``.obsm``. The neighborhood search works on those results.
"""

import numpy as np
import pandas as pd
import pylemur
from anndata import AnnData
from typing import Optional, Sequence, Tuple, Union

from .preprocessing import to_dense


class LemurModel:
    """
    Latent embedding multivariate regression for a categorical condition.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix with log-transformed expression (HVG subset).
    condition_key : str
        Column in .obs with condition labels. Used as the design ``~ condition_key``.
    n_embedding : int
        Dimension of the latent space.
    layer : str, optional
        Layer with log-transformed values. None uses .X.
    ridge_penalty : float
        Ridge penalty of the grouping alignment.

    Example
    -------
    >>> model = LemurModel(adata, condition_key="condition", n_embedding=15)
    >>> model.fit().align_with_harmony()
    >>> de = model.test_de(contrast=("stim", "ctrl"))
    >>> neighborhoods = model.find_de_neighborhoods(min_size=50)
    """

    def __init__(
        self,
        adata: AnnData,
        condition_key: str = "condition",
        n_embedding: int = 15,
        layer: Optional[str] = "logcounts",
        ridge_penalty: float = 0.01,
    ):
        if condition_key not in adata.obs.columns:
            raise ValueError(f"Condition key '{condition_key}' not found in adata.obs")
        if layer is not None and layer not in adata.layers:
            raise ValueError(f"Layer '{layer}' not found in adata.layers")
        if n_embedding < 1:
            raise ValueError(f"n_embedding must be positive, got {n_embedding}")

        self.adata = adata
        self.condition_key = condition_key
        self.n_embedding = n_embedding
        self.layer = layer
        self.ridge_penalty = ridge_penalty

        self._labels = adata.obs[condition_key].astype(str).to_numpy()
        self.conditions = [str(c) for c in pd.unique(self._labels)]

        self.lemur = None
        self.raw_embedding: Optional[np.ndarray] = None
        self.alignment_method: Optional[str] = None

    @property
    def is_fitted(self) -> bool:
        return self.lemur is not None

    def _check_fitted(self) -> None:
        if not self.is_fitted:
            raise ValueError("Model is not fitted yet; call fit() first")

    def _check_condition(self, condition: str) -> str:
        condition = str(condition)
        if condition not in self.conditions:
            raise ValueError(
                f"Unknown condition '{condition}'. Available: {self.conditions}"
            )
        return condition

    def _model_input(self) -> AnnData:
        # Dense log values with only the condition column
        X = self.adata.layers[self.layer] if self.layer is not None else self.adata.X
        obs = pd.DataFrame(
            {self.condition_key: pd.Categorical(self._labels, categories=self.conditions)},
            index=self.adata.obs_names,
        )
        return AnnData(X=to_dense(X), obs=obs, var=pd.DataFrame(index=self.adata.var_names))

    def fit(self) -> "LemurModel":
        """Fit the condition-dependent linear embedding."""
        n_cells, n_genes = self.adata.shape
        k = self.n_embedding
        if k > n_genes:
            raise ValueError(f"n_embedding={k} exceeds the number of genes ({n_genes})")
        for condition in self.conditions:
            n_in = int((self._labels == condition).sum())
            if n_in < k:
                raise ValueError(
                    f"Condition '{condition}' has {n_in} cells, fewer than n_embedding={k}"
                )

        self.lemur = pylemur.tl.LEMUR(
            self._model_input(),
            design=f"~ {self.condition_key}",
            n_embedding=k,
            copy=False,
        )
        self.lemur.fit(verbose=False)
        self.raw_embedding = np.array(self.lemur.embedding, dtype=np.float64)
        self.alignment_method = None

        print(
            f"Fitted LEMUR model: {n_cells} cells, {n_genes} genes, "
            f"{len(self.conditions)} conditions, {k} latent dimensions"
        )
        return self

    @property
    def embedding(self) -> np.ndarray:
        """Aligned latent coordinates (n_cells x n_embedding)."""
        self._check_fitted()
        return np.asarray(self.lemur.embedding, dtype=np.float64)

    def align_with_grouping(
        self,
        grouping: Union[str, Sequence],
    ) -> "LemurModel":
        """
        Align conditions so that matching groups share a centroid.

        Parameters
        ----------
        grouping : str or sequence
            Column in .obs, or one label per cell (e.g. cell type or
            cluster). Missing labels are ignored.
        """
        self._check_fitted()
        if isinstance(grouping, str):
            if grouping not in self.adata.obs.columns:
                raise ValueError(f"Grouping '{grouping}' not found in adata.obs")
            groups = self.adata.obs[grouping].to_numpy()
        else:
            groups = np.asarray(grouping, dtype=object)
        if len(groups) != self.adata.n_obs:
            raise ValueError(
                f"Got {len(groups)} group labels for {self.adata.n_obs} cells"
            )

        valid = pd.notna(groups)
        per_group = pd.crosstab(groups[valid], self._labels[valid])
        shared = per_group.index[(per_group > 0).sum(axis=1) > 1]
        if len(shared) == 0:
            raise ValueError("No group is shared by two or more conditions")

        self.lemur.align_with_grouping(
            pd.Series(groups, index=self.adata.obs_names).where(valid).astype(object),
            ridge_penalty=self.ridge_penalty,
            verbose=False,
        )

        self.alignment_method = "grouping"
        print(f"Aligned {len(self.conditions)} conditions on {len(shared)} shared groups")
        return self

    def align_with_harmony(
        self,
        theta: Optional[float] = None,
        max_iter: int = 10,
    ) -> "LemurModel":
        """
        Align conditions by fitting affine maps to Harmony-corrected coordinates.

        Harmony runs on the unaligned latent coordinates with the
        condition as batch variable; any previous alignment is replaced.
        ``theta`` None keeps pylemur's diversity penalty.
        """
        self._check_fitted()
        ho_params = {"theta": theta} if theta is not None else None
        self.lemur.align_with_harmony(ho_params=ho_params, max_iter=max_iter, verbose=False)

        self.alignment_method = "harmony"
        print(f"Aligned {len(self.conditions)} conditions with Harmony")
        return self

    def predict(
        self,
        new_condition: Optional[str] = None,
        embedding: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """
        Predict log expression from aligned latent coordinates.

        Parameters
        ----------
        new_condition : str, optional
            Condition to predict every cell in. None predicts each cell
            in its own condition.
        embedding : np.ndarray, optional
            Aligned coordinates to decode. Default: the fitted embedding.
            Without ``new_condition`` it must have one row per cell.

        Returns
        -------
        np.ndarray
            Predicted expression (n_rows x n_genes).
        """
        self._check_fitted()
        if embedding is None:
            embedding = self.embedding
        else:
            embedding = np.atleast_2d(np.asarray(embedding, dtype=np.float64))
            if embedding.shape[1] != self.n_embedding:
                raise ValueError(
                    f"Embedding has {embedding.shape[1]} dimensions, "
                    f"expected {self.n_embedding}"
                )

        if new_condition is None:
            if embedding.shape[0] != self.adata.n_obs:
                raise ValueError(
                    "Predicting in the cells' own conditions needs one row per cell; "
                    "pass new_condition for other embeddings"
                )
            predicted = self.lemur.predict(embedding=embedding)
        else:
            condition = self._check_condition(new_condition)
            predicted = self.lemur.predict(
                embedding=embedding,
                new_condition=self.lemur.cond(**{self.condition_key: condition}),
            )

        return np.asarray(predicted, dtype=np.float64)

    def test_de(
        self,
        contrast: Tuple[str, str],
        key_added: Optional[str] = "DE",
    ) -> np.ndarray:
        """
        Per-cell differential expression between two conditions.

        Every cell is predicted in both conditions of ``contrast`` and
        the difference (first minus second) is returned and stored in
        ``adata.layers[key_added]``.
        """
        if len(contrast) != 2:
            raise ValueError(f"contrast must name two conditions, got {contrast}")
        first, second = (self._check_condition(c) for c in contrast)

        de = self.predict(new_condition=first) - self.predict(new_condition=second)
        if key_added is not None:
            self.adata.layers[key_added] = de
            self.adata.uns[key_added] = {"contrast": [first, second]}
        return de

    def find_de_neighborhoods(
        self,
        de_layer: str = "DE",
        min_size: int = 50,
        genes: Optional[Sequence[str]] = None,
    ) -> pd.DataFrame:
        """
        Find, for each gene, the set of cells with a consistent DE effect.

        The predicted DE of a gene is regressed on the aligned latent
        coordinates. Cells are ordered by the fitted DE in the direction
        of the gene's average effect, and the neighborhood is the leading
        set of at least ``min_size`` cells maximizing |sum(DE)| / sqrt(n).

        Returns
        -------
        pd.DataFrame
            One row per gene with columns ``name``, ``neighborhood``
            (list of obs names), ``n_cells``, ``sel_statistic``,
            ``mean_de_inside`` and ``mean_de_outside``.
        """
        self._check_fitted()
        if de_layer not in self.adata.layers:
            raise ValueError(
                f"Layer '{de_layer}' not found in adata.layers; run test_de() first"
            )

        n_cells = self.adata.n_obs
        if min_size < 1 or min_size > n_cells:
            raise ValueError(f"min_size must be between 1 and {n_cells}, got {min_size}")

        var_names = self.adata.var_names
        if genes is None:
            gene_idx = np.arange(len(var_names))
        else:
            missing = [g for g in genes if g not in var_names]
            if missing:
                raise ValueError(f"Genes not found in adata.var_names: {missing}")
            gene_idx = var_names.get_indexer(list(genes))

        de = to_dense(self.adata.layers[de_layer])[:, gene_idx]
        design = np.hstack([np.ones((n_cells, 1)), self.embedding])
        coef, *_ = np.linalg.lstsq(design, de, rcond=None)
        fitted = design @ coef

        scale = np.sqrt(np.arange(1, n_cells + 1))
        obs_names = self.adata.obs_names
        rows = []
        for j, gi in enumerate(gene_idx):
            values = de[:, j]
            sign = 1.0 if values.mean() >= 0 else -1.0
            order = np.argsort(-sign * fitted[:, j], kind="stable")
            score = np.cumsum(sign * values[order]) / scale
            score[: min_size - 1] = -np.inf
            n_selected = int(np.argmax(score)) + 1
            selected = order[:n_selected]

            rows.append(
                {
                    "name": var_names[gi],
                    "neighborhood": list(obs_names[np.sort(selected)]),
                    "n_cells": n_selected,
                    "sel_statistic": float(score[n_selected - 1]),
                    "mean_de_inside": float(values[selected].mean()),
                    "mean_de_outside": (
                        float(values[order[n_selected:]].mean())
                        if n_selected < n_cells
                        else np.nan
                    ),
                }
            )

        return pd.DataFrame(rows)

    def store_embedding(self, key_added: str = "X_lemur") -> None:
        """Write the aligned embedding into ``adata.obsm[key_added]``."""
        self.adata.obsm[key_added] = self.embedding
