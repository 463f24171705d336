#!/usr/bin/env python3
"""
Processing utilities for single-cell RNA-seq analysis
Handles normalization, scaling, PCA, UMAP, and clustering
"""

import scanpy as sc
import numpy as np
import pandas as pd
from sklearn.metrics import silhouette_score
from cerebellum_utils.pipeline_config import clustering_run_params


def normalize_and_scale(adata, config):
    """Normalize and scale data

    Args:
        adata: Filtered AnnData object with raw counts in X
        config: Pipeline configuration dict

    Returns:
        Processed AnnData object restricted to highly variable genes; the
        log-normalized full gene space is kept in .raw
    """
    print("Normalizing and scaling data...")

    # Save raw counts
    adata.layers["counts"] = adata.X.copy()

    # Normalize to target_sum reads per cell
    sc.pp.normalize_total(adata, target_sum=config["target_sum"])

    # Log transform
    sc.pp.log1p(adata)

    # Find highly variable genes
    n_top_genes = min(config["n_top_genes"], adata.n_vars)
    sc.pp.highly_variable_genes(adata, n_top_genes=n_top_genes)
    print(f"  Selected {int(adata.var.highly_variable.sum())} highly variable genes")

    # Keep only highly variable genes for downstream analysis
    adata.raw = adata  # Save full data
    adata = adata[:, adata.var.highly_variable].copy()

    # Regress out confounders and scale
    print(f"  Regressing out {', '.join(config['regress_keys'])}")
    sc.pp.regress_out(adata, config["regress_keys"])
    sc.pp.scale(adata, max_value=config["scale_max_value"])

    return adata


def run_pca_umap_clustering(adata, config):
    """Run PCA, UMAP and clustering

    Args:
        adata: Normalized and scaled AnnData object
        config: Pipeline configuration dict

    Returns:
        AnnData object with embeddings, clusters in obs["leiden"] and the
        run parameters in uns["clustering_run"]
    """
    n_pcs = config["n_pcs"]
    if n_pcs >= min(adata.n_obs, adata.n_vars):
        raise ValueError(
            f"n_pcs={n_pcs} must be smaller than the data dimensions "
            f"({adata.n_obs} cells x {adata.n_vars} genes)"
        )

    print("Running PCA...")
    sc.tl.pca(
        adata, n_comps=n_pcs, svd_solver="arpack", random_state=config["random_state"]
    )

    print("Computing neighborhood graph...")
    sc.pp.neighbors(
        adata,
        n_neighbors=config["n_neighbors"],
        n_pcs=n_pcs,
        random_state=config["random_state"],
    )

    print("Running UMAP...")
    sc.tl.umap(adata, random_state=config["random_state"])

    print("Clustering...")
    sc.tl.leiden(
        adata, resolution=config["resolution"], random_state=config["random_state"]
    )
    print(f"  {adata.obs['leiden'].nunique()} clusters at resolution {config['resolution']}")

    # Cluster ids are only meaningful together with these parameters
    adata.uns["clustering_run"] = clustering_run_params(config)

    return adata


def choose_leiden_resolution(
    adata,
    resolution_grid=None,
    min_cluster_size=20,
    random_state=0,
):
    """Sweep Leiden resolutions and pick a robust choice.

    Strategy:
    - Compute Leiden for a grid of resolutions on the existing kNN graph
    - Evaluate silhouette on PCA space and fraction of cells in small clusters
    - Select the resolution with highest silhouette; among ties within 0.02 of max,
      prefer lower small-cluster fraction, then fewer clusters, then lower resolution

    Side effects:
    - Adds columns `leiden_{res}` to `adata.obs` for each tested resolution;
      `leiden` itself is left untouched

    Returns:
    - (chosen resolution, metrics DataFrame)
    """
    if resolution_grid is None:
        resolution_grid = np.round(np.arange(0.2, 2.05, 0.1), 2)

    if "neighbors" not in adata.uns:
        raise KeyError("Neighborhood graph not found, run run_pca_umap_clustering first")

    X = adata.obsm["X_pca"]

    metrics = []
    for res in resolution_grid:
        key = f"leiden_{res:.2f}"
        sc.tl.leiden(adata, resolution=float(res), key_added=key, random_state=random_state)
        labels = adata.obs[key].astype(str)

        # Silhouette is defined for 2 <= n_clusters <= n_cells - 1
        n_clusters = labels.nunique()
        small_frac = 0.0
        sil = np.nan
        if n_clusters > 1:
            counts = labels.value_counts()
            small_frac = float(
                counts[counts < max(2, int(min_cluster_size))].sum() / len(labels)
            )
            if n_clusters < len(labels):
                sil = float(silhouette_score(X, labels))

        metrics.append(
            {
                "resolution": float(res),
                "n_clusters": int(n_clusters),
                "silhouette": sil,
                "small_cluster_fraction": small_frac,
            }
        )

    metrics_df = pd.DataFrame(metrics)

    # Selection rule
    # 1) Take max silhouette; 2) among those within 0.02 of max, minimize small frac,
    # 3) then minimize n_clusters; 4) then choose lowest resolution
    if metrics_df["silhouette"].notna().any():
        max_sil = metrics_df["silhouette"].max()
        near = metrics_df[np.abs(metrics_df["silhouette"] - max_sil) <= 0.02]
        chosen = near.sort_values(
            by=["small_cluster_fraction", "n_clusters", "resolution"]
        ).iloc[0]
    else:
        # Fallback: choose the lowest resolution with >1 cluster
        candidates = metrics_df[metrics_df["n_clusters"] > 1]
        if candidates.empty:
            candidates = metrics_df
        chosen = candidates.sort_values("resolution").iloc[0]

    chosen_res = float(chosen["resolution"])
    print(f"  Chosen Leiden resolution: {chosen_res}")

    return chosen_res, metrics_df
