#!/usr/bin/env python3
"""
Cell type annotation utilities for single-cell RNA-seq analysis
Handles cluster label artifacts and marker gene analysis

Cluster identifiers are only stable for one clustering run, so labels live in
a JSON artifact that records the run it was written against:

    {
        "version": 1,
        "cluster_key": "leiden",
        "run": {"n_pcs": 20, "resolution": 0.5, ...},
        "labels": {"0": "Granule", "1": "Purkinje", ...}
    }
"""

import json
import scanpy as sc
import pandas as pd
from pathlib import Path

ANNOTATION_VERSION = 1
UNASSIGNED = "unassigned"

# Marker panels used to guide manual labelling (not to assign labels)
CEREBELLUM_MARKER_PANELS = {
    "Granule": ["Gabra6", "Pax6", "Neurod1", "Cbln3"],
    "GC_progenitor": ["Atoh1", "Mki67", "Top2a"],
    "Purkinje": ["Pcp2", "Calb1", "Car8", "Itpr1"],
    "Interneuron": ["Pax2", "Gad1", "Gad2", "Pvalb"],
    "UBC": ["Eomes", "Calb2"],
    "Bergmann_glia": ["Gdf10", "Slc1a3", "Fabp7"],
    "Astro": ["Aqp4", "Gfap", "Aldh1l1"],
    "Oligo": ["Mbp", "Plp1", "Mog"],
    "OPC": ["Pdgfra", "Cspg4", "Olig2"],
    "Micro": ["Cx3cr1", "P2ry12", "Csf1r"],
    "Endo": ["Cldn5", "Flt1", "Pecam1"],
    "Choroid": ["Ttr", "Kl"],
}


def _to_builtin(value):
    # numpy scalars come back from h5ad-stored uns
    return value.item() if hasattr(value, "item") else value


def _cluster_sort_key(cluster_id):
    return (0, int(cluster_id), "") if cluster_id.isdigit() else (1, 0, cluster_id)


def _run_params(adata):
    if "clustering_run" not in adata.uns:
        raise KeyError("clustering_run not found in adata.uns, run clustering first")
    return {key: _to_builtin(value) for key, value in adata.uns["clustering_run"].items()}


def make_annotation_template(adata, path=None, cluster_key="leiden"):
    """Create an empty label artifact for the clustering run in adata

    Args:
        adata: Clustered AnnData object
        path: Optional JSON path to write the template to
        cluster_key: Column in adata.obs with cluster identifiers

    Returns:
        Annotation dict with an empty label for every cluster
    """
    if cluster_key not in adata.obs:
        raise KeyError(f"Cluster key '{cluster_key}' not found in adata.obs")

    clusters = sorted(adata.obs[cluster_key].astype(str).unique(), key=_cluster_sort_key)
    annotation = {
        "version": ANNOTATION_VERSION,
        "cluster_key": cluster_key,
        "run": _run_params(adata),
        "labels": {cluster: "" for cluster in clusters},
    }

    if path is not None:
        write_cluster_annotation(annotation, path)

    return annotation


def write_cluster_annotation(annotation, path):
    """Write a label artifact to JSON"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(annotation, f, indent=2)
    print(f"  Saved: {path}")


def load_cluster_annotation(path):
    """Read and check a label artifact"""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Annotation file not found: {path}")
    with open(path) as f:
        annotation = json.load(f)

    missing = [key for key in ["version", "run", "labels"] if key not in annotation]
    if missing:
        raise ValueError(f"Annotation {path} is missing: {', '.join(missing)}")
    if annotation["version"] > ANNOTATION_VERSION:
        raise ValueError(
            f"Annotation {path} has version {annotation['version']}, "
            f"newest supported is {ANNOTATION_VERSION}"
        )

    annotation["labels"] = {str(k): v for k, v in annotation["labels"].items()}
    return annotation


def validate_annotation_run(adata, annotation):
    """Check that a label artifact was built against the clustering run in adata"""
    current = _run_params(adata)
    expected = annotation["run"]

    mismatches = [
        f"{key}: annotation={expected.get(key)!r}, data={current.get(key)!r}"
        for key in sorted(set(current) | set(expected))
        if expected.get(key) != current.get(key)
    ]
    if mismatches:
        raise ValueError(
            "Annotation was written for a different clustering run:\n"
            + "\n".join(mismatches)
        )
    return True


def apply_cluster_labels(adata, annotation, key="celltype", cluster_key=None):
    """Map cluster identifiers to cell type labels

    Args:
        adata: Clustered AnnData object
        annotation: Label artifact (see load_cluster_annotation)
        key: Column in adata.obs to write labels to
        cluster_key: Cluster column; defaults to the one recorded in the artifact

    Returns:
        AnnData object with adata.obs[key] added; clusters without a label
        are marked "unassigned"
    """
    print("Applying cluster labels...")
    validate_annotation_run(adata, annotation)

    cluster_key = cluster_key or annotation.get("cluster_key", "leiden")
    if cluster_key not in adata.obs:
        raise KeyError(f"Cluster key '{cluster_key}' not found in adata.obs")

    clusters = adata.obs[cluster_key].astype(str)
    labels = {cluster: label for cluster, label in annotation["labels"].items() if label}

    unknown = sorted(set(labels) - set(clusters.unique()), key=_cluster_sort_key)
    if unknown:
        print(f"  Warning: labels given for clusters not in the data: {', '.join(unknown)}")

    adata.obs[key] = pd.Categorical(clusters.map(labels).fillna(UNASSIGNED))

    n_unassigned = int((adata.obs[key] == UNASSIGNED).sum())
    print(f"  Labelled {adata.n_obs - n_unassigned:,} / {adata.n_obs:,} cells")
    print(adata.obs[key].value_counts().sort_index())

    return adata


def compute_top_markers_per_cluster(
    adata,
    groupby="leiden",
    method="wilcoxon",
    n_top=30,
    pval_adj_cutoff=None,
):
    """Compute top marker genes per cluster using differential expression.

    Args:
        adata: AnnData object with clustering results.
        groupby: Column in adata.obs to group by (default: "leiden").
        method: DE method passed to scanpy (e.g., "wilcoxon", "t-test").
        n_top: Number of top genes to rank per group.
        pval_adj_cutoff: Optional adjusted p-value cutoff to filter results.

    Returns:
        Pandas DataFrame with ranked markers across all groups.
    """
    if groupby not in adata.obs:
        raise KeyError(f"Groupby key '{groupby}' not found in adata.obs")

    sc.tl.rank_genes_groups(
        adata,
        groupby=groupby,
        method=method,
        n_genes=int(n_top),
        pts=True,
    )

    markers_df = sc.get.rank_genes_groups_df(adata, None)
    if pval_adj_cutoff is not None:
        markers_df = markers_df[markers_df["pvals_adj"] <= float(pval_adj_cutoff)]

    return markers_df


def compare_top_markers_to_panels(markers_df, panels=CEREBELLUM_MARKER_PANELS, top_n=10):
    """Overlap of each cluster's top-N markers with known marker panels.

    Args:
        markers_df: DataFrame from compute_top_markers_per_cluster.
        panels: Dict mapping panel name -> list of genes.
        top_n: Number of top genes per cluster to evaluate.

    Returns:
        DataFrame with one row per (group, panel) and overlap/precision/recall.
    """
    panel_to_genes = {k: set(v) for k, v in panels.items()}

    rows = []
    for group, sub in markers_df.groupby("group", observed=True):
        top_set = set(sub.sort_values("scores", ascending=False).head(int(top_n))["names"])
        for panel_name, panel_genes in panel_to_genes.items():
            overlap = len(top_set & panel_genes)
            rows.append(
                {
                    "group": str(group),
                    "panel": panel_name,
                    "overlap": overlap,
                    "precision": overlap / max(1, len(top_set)),
                    "recall": overlap / max(1, len(panel_genes)),
                    "genes": ",".join(sorted(top_set & panel_genes)),
                }
            )

    overlap_df = pd.DataFrame(rows)
    if not overlap_df.empty:
        best = overlap_df.loc[overlap_df.groupby("group")["precision"].idxmax()]
        for _, row in best[best["overlap"] > 0].iterrows():
            print(f"  Cluster {row['group']}: closest panel {row['panel']} ({row['genes']})")

    return overlap_df
