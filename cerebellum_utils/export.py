#!/usr/bin/env python3
"""
Export utilities for single-cell RNA-seq analysis
Handles checkpoints, the cluster assignment table and the viewer hand-off object
"""

import json
import numpy as np
import pandas as pd
import scanpy as sc
from pathlib import Path

MANIFEST_NAME = "manifest.json"


def write_cluster_table(adata, path, cluster_key="leiden", sep=","):
    """Write (barcode, cluster) pairs to a delimited file

    Args:
        adata: Clustered AnnData object
        path: Output file path
        cluster_key: Column in adata.obs with cluster identifiers
        sep: Field delimiter

    Returns:
        The written DataFrame
    """
    if cluster_key not in adata.obs:
        raise KeyError(f"Cluster key '{cluster_key}' not found in adata.obs")

    table = pd.DataFrame(
        {
            "barcode": adata.obs_names.astype(str),
            "cluster": adata.obs[cluster_key].astype(str).values,
        }
    )
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    table.to_csv(path, sep=sep, index=False)
    print(f"  Saved: {path}")
    return table


def check_handoff_consistency(handoff, adata):
    """Raise if barcodes or embedding differ between hand-off and source"""
    if not handoff.obs_names.equals(adata.obs_names):
        raise ValueError("Hand-off cell identifiers differ from the source dataset")
    if not np.array_equal(handoff.obsm["X_umap"], adata.obsm["X_umap"]):
        raise ValueError("Hand-off UMAP coordinates differ from the source dataset")
    return True


def build_handoff(adata):
    """Build the object handed to external viewers and trajectory tools

    Holds the log-normalized expression of all genes (from .raw when
    present), the full cell metadata and the 2D embedding.
    """
    if "X_umap" not in adata.obsm:
        raise KeyError("X_umap not found in adata.obsm, run run_pca_umap_clustering first")

    handoff = adata.raw.to_adata() if adata.raw is not None else adata.copy()
    handoff.obs = adata.obs.copy()
    handoff.obsm["X_umap"] = adata.obsm["X_umap"].copy()
    if "X_pca" in adata.obsm:
        handoff.obsm["X_pca"] = adata.obsm["X_pca"].copy()
    if "clustering_run" in adata.uns:
        handoff.uns["clustering_run"] = dict(adata.uns["clustering_run"])

    check_handoff_consistency(handoff, adata)
    return handoff


def write_handoff(adata, path):
    """Build and write the hand-off object as h5ad"""
    handoff = build_handoff(adata)
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    handoff.write_h5ad(path)
    print(f"  Saved: {path}")
    return handoff


def checkpoint_mismatches(recorded, expected):
    """List the parameters whose value recorded in a checkpoint differs from expected

    Args:
        recorded: Parameter dict stored in a checkpoint's uns
        expected: Parameter dict of the current configuration

    Returns:
        List of "key: checkpoint=..., config=..." strings, empty when they agree
    """
    # numpy scalars come back from h5ad-stored uns
    recorded = {
        key: value.item() if hasattr(value, "item") else value
        for key, value in recorded.items()
    }
    return [
        f"{key}: checkpoint={recorded.get(key)!r}, config={expected[key]!r}"
        for key in sorted(expected)
        if recorded.get(key) != expected[key]
    ]


def write_checkpoint(adata, path):
    """Save a single dataset"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    adata.write_h5ad(path)
    print(f"  Saved checkpoint: {path}")


def read_checkpoint(path):
    """Load a single dataset"""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Checkpoint not found: {path}")
    print(f"Loading checkpoint {path}")
    return sc.read_h5ad(path)


def write_sample_collection(samples, directory):
    """Save a collection of datasets, one h5ad per entry plus a manifest

    Args:
        samples: Dict mapping name (sample or stage) to AnnData
        directory: Output directory
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    for name, adata in samples.items():
        adata.write_h5ad(directory / f"{name}.h5ad")

    with open(directory / MANIFEST_NAME, "w") as f:
        json.dump({"samples": list(samples)}, f, indent=2)
    print(f"  Saved checkpoint: {directory} ({len(samples)} datasets)")


def read_sample_collection(directory):
    """Load a collection written by write_sample_collection, in saved order"""
    directory = Path(directory)
    manifest_path = directory / MANIFEST_NAME
    if not manifest_path.exists():
        raise FileNotFoundError(f"Checkpoint manifest not found: {manifest_path}")

    with open(manifest_path) as f:
        names = json.load(f)["samples"]

    print(f"Loading checkpoint {directory}")
    samples = {}
    for name in names:
        file_path = directory / f"{name}.h5ad"
        if not file_path.exists():
            raise FileNotFoundError(f"Checkpoint for '{name}' missing: {file_path}")
        samples[name] = sc.read_h5ad(file_path)
    return samples
