#!/usr/bin/env python3
"""
Trajectory utilities - PAGA and diffusion pseudotime
"""

import numpy as np
import pandas as pd
import scanpy as sc


def choose_root_cell(adata, root_cluster, groupby="leiden"):
    """Pick the root cell for pseudotime

    The root is the cell of root_cluster lying furthest along the first
    non-trivial diffusion component, on the side the cluster sits on.

    Returns:
        Integer index of the root cell
    """
    if "X_diffmap" not in adata.obsm:
        raise KeyError("X_diffmap not found in adata.obsm, run sc.tl.diffmap first")

    mask = (adata.obs[groupby].astype(str) == str(root_cluster)).values
    if not mask.any():
        raise ValueError(f"Root cluster {root_cluster} has no cells in '{groupby}'")

    dc1 = adata.obsm["X_diffmap"][:, 1]
    idx = np.flatnonzero(mask)
    if dc1[idx].mean() <= dc1.mean():
        return int(idx[np.argmin(dc1[idx])])
    return int(idx[np.argmax(dc1[idx])])


def run_trajectory(adata, root_cluster, groupby="leiden", n_dcs=10):
    """Run PAGA and diffusion pseudotime

    Args:
        adata: Clustered AnnData object with a neighborhood graph
        root_cluster: Cluster holding the start of the trajectory
        groupby: Cluster column in adata.obs
        n_dcs: Number of diffusion components

    Returns:
        DataFrame of PAGA connectivities between clusters; adds
        obs["dpt_pseudotime"] to adata
    """
    print("Running trajectory inference...")

    if groupby not in adata.obs:
        raise KeyError(f"Groupby key '{groupby}' not found in adata.obs")
    if "neighbors" not in adata.uns:
        raise KeyError("Neighborhood graph not found, run run_pca_umap_clustering first")

    sc.tl.paga(adata, groups=groupby)

    sc.tl.diffmap(adata, n_comps=n_dcs)
    adata.uns["iroot"] = choose_root_cell(adata, root_cluster, groupby)
    print(f"  Root cell: {adata.obs_names[adata.uns['iroot']]} (cluster {root_cluster})")

    sc.tl.dpt(adata, n_dcs=n_dcs)

    clusters = adata.obs[groupby].cat.categories
    connectivities = pd.DataFrame(
        adata.uns["paga"]["connectivities"].toarray(),
        index=clusters,
        columns=clusters,
    )
    return connectivities


def pseudotime_by_cluster(adata, groupby="leiden"):
    """Median and spread of pseudotime per cluster, ordered by median"""
    if "dpt_pseudotime" not in adata.obs:
        raise KeyError("dpt_pseudotime not found in adata.obs, run run_trajectory first")

    pseudotime = adata.obs["dpt_pseudotime"].replace([np.inf, -np.inf], np.nan)
    summary = (
        pseudotime.groupby(adata.obs[groupby], observed=True)
        .agg(["median", "min", "max", "count"])
        .sort_values("median")
    )
    summary.index.name = groupby
    return summary
