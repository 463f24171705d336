#!/usr/bin/env python3
"""
Cerebellum single-cell RNA-seq preprocessing, clustering and annotation

This script performs, once per configuration variant:
1. Matrix-market sample loading
2. QC metrics and per-sample filtering (checkpointed)
3. Merging (all samples, or replicates per developmental stage)
4. Normalization, PCA, UMAP and Leiden clustering (checkpointed)
5. Cluster table, marker genes and cluster-label artifact
6. Optional trajectory inference and the viewer hand-off object

python cerebellum_pipeline.py --data-dir data/ --output-dir results/
"""

import argparse
import warnings
import scanpy as sc
from pathlib import Path

from cerebellum_utils.pipeline_config import (
    PIPELINE_VARIANTS,
    make_config,
    load_config_file,
    get_config_summary,
    qc_filter_params,
    clustering_run_params,
)
from cerebellum_utils.data_loader import load_samples, merge_samples, merge_by_stage
from cerebellum_utils.qc_utils import preprocess_samples, summarize_qc
from cerebellum_utils.processing import (
    normalize_and_scale,
    run_pca_umap_clustering,
    choose_leiden_resolution,
)
from cerebellum_utils.annotation import (
    make_annotation_template,
    load_cluster_annotation,
    apply_cluster_labels,
    compute_top_markers_per_cluster,
    compare_top_markers_to_panels,
)
from cerebellum_utils.trajectory import run_trajectory, pseudotime_by_cluster
from cerebellum_utils.export import (
    MANIFEST_NAME,
    checkpoint_mismatches,
    write_cluster_table,
    write_handoff,
    write_checkpoint,
    read_checkpoint,
    write_sample_collection,
    read_sample_collection,
)

# Configure scanpy
sc.settings.verbosity = 1

warnings.filterwarnings("ignore", category=FutureWarning)


def _report_stale_checkpoint(path, mismatches):
    print(f"  Warning: checkpoint {path} was built with other parameters, recomputing")
    for mismatch in mismatches:
        print(f"    {mismatch}")


def process_dataset(
    adata,
    name,
    config,
    output_dir,
    annotation_dir=None,
    root_cluster=None,
    resume=False,
    resolution_sweep=False,
):
    """Normalize, cluster, annotate and export one merged dataset

    Args:
        adata: Merged, filtered AnnData object
        name: Dataset name ("all" or a stage)
        config: Pipeline configuration dict
        output_dir: Directory for this variant's outputs
        annotation_dir: Directory searched for <name>_annotation.json
        root_cluster: Cluster to root pseudotime at (skipped if None)
        resume: Reuse the post-cluster checkpoint if present
        resolution_sweep: Also write a Leiden resolution sweep table

    Returns:
        Processed AnnData object
    """
    print(f"\n=== Dataset {name} ===")

    clustered_path = output_dir / f"{name}_clustered.h5ad"
    checkpoint = None
    if resume and clustered_path.exists():
        checkpoint = read_checkpoint(clustered_path)
        mismatches = checkpoint_mismatches(
            checkpoint.uns.get("clustering_run", {}), clustering_run_params(config)
        )
        if mismatches:
            _report_stale_checkpoint(clustered_path, mismatches)
            checkpoint = None

    if checkpoint is not None:
        adata = checkpoint
    else:
        adata = normalize_and_scale(adata, config)
        adata = run_pca_umap_clustering(adata, config)
        write_checkpoint(adata, clustered_path)

    write_cluster_table(adata, output_dir / f"{name}_clusters.csv")

    if resolution_sweep:
        _, metrics_df = choose_leiden_resolution(
            adata.copy(), random_state=config["random_state"]
        )
        metrics_df.to_csv(output_dir / f"{name}_leiden_resolution_sweep.csv", index=False)

    print("Ranking marker genes...")
    markers_df = compute_top_markers_per_cluster(adata)
    markers_df.to_csv(output_dir / f"{name}_top_markers_by_cluster.csv", index=False)
    compare_top_markers_to_panels(markers_df).to_csv(
        output_dir / f"{name}_marker_panel_overlap.csv", index=False
    )

    make_annotation_template(adata, output_dir / f"{name}_annotation_template.json")
    annotation_path = Path(annotation_dir or output_dir) / f"{name}_annotation.json"
    if annotation_path.exists():
        apply_cluster_labels(adata, load_cluster_annotation(annotation_path))
    else:
        print(f"  No cluster labels at {annotation_path}, skipping annotation")

    if root_cluster is not None:
        connectivities = run_trajectory(adata, root_cluster)
        connectivities.to_csv(output_dir / f"{name}_paga_connectivities.csv")
        pseudotime_by_cluster(adata).to_csv(output_dir / f"{name}_pseudotime_by_cluster.csv")

    write_handoff(adata, output_dir / f"{name}_handoff.h5ad")
    return adata


def run_pipeline(
    config,
    data_dir,
    output_dir,
    annotation_dir=None,
    by_stage=False,
    resume=False,
    root_clusters=None,
    resolution_sweep=False,
):
    """Run the whole analysis for one configuration

    Args:
        config: Pipeline configuration dict (see make_config)
        data_dir: Directory with the raw matrix-market samples
        output_dir: Base output directory; results go to <output_dir>/<variant>
        annotation_dir: Directory with <dataset>_annotation.json label files
        by_stage: Merge replicates per stage instead of all samples together
        resume: Reuse checkpoints written by a previous run
        root_clusters: Dict mapping dataset name (or "*") to root cluster
        resolution_sweep: Write a Leiden resolution sweep per dataset

    Returns:
        Dict mapping dataset name to processed AnnData
    """
    print("\n" + get_config_summary(config) + "\n")

    output_dir = Path(output_dir) / config["variant"]
    output_dir.mkdir(parents=True, exist_ok=True)
    print(f"Outputs will be saved to: {output_dir.absolute()}")

    filtered_dir = output_dir / "checkpoint_filtered"
    filtered = None
    if resume and (filtered_dir / MANIFEST_NAME).exists():
        filtered = read_sample_collection(filtered_dir)
        expected = qc_filter_params(config)
        for sample, adata in filtered.items():
            mismatches = checkpoint_mismatches(adata.uns.get("qc_filter", {}), expected)
            if mismatches:
                _report_stale_checkpoint(filtered_dir / f"{sample}.h5ad", mismatches)
                filtered = None
                break

    if filtered is None:
        samples = load_samples(data_dir)
        filtered = preprocess_samples(samples, config)
        write_sample_collection(filtered, filtered_dir)

    qc_summary = summarize_qc(filtered)
    qc_summary.to_csv(output_dir / "qc_summary.csv")
    print("\nQC summary:")
    print(qc_summary)

    if by_stage:
        datasets = merge_by_stage(
            filtered, config["stage_pattern"], config["expected_replicates"]
        )
    else:
        datasets = {
            "all": merge_samples(filtered, config["stage_pattern"], require_stage=False)
        }

    root_clusters = root_clusters or {}
    results = {}
    for name, adata in datasets.items():
        results[name] = process_dataset(
            adata,
            name,
            config,
            output_dir,
            annotation_dir=annotation_dir,
            root_cluster=root_clusters.get(name, root_clusters.get("*")),
            resume=resume,
            resolution_sweep=resolution_sweep,
        )

    print(f"\nVariant {config['variant']} complete!")
    return results


def parse_root_clusters(values):
    """Parse --root-cluster values: "3" (every dataset) or "E18=3" """
    roots = {}
    for value in values or []:
        if "=" in value:
            name, cluster = value.split("=", 1)
            roots[name] = cluster
        else:
            roots["*"] = value
    return roots


def main(argv=None):
    """Run the pipeline once per selected variant"""
    parser = argparse.ArgumentParser(
        description="Cerebellum scRNA-seq QC, clustering, and annotation"
    )
    parser.add_argument(
        "--data-dir", required=True, help="Directory with matrix-market samples"
    )
    parser.add_argument(
        "--output-dir", default="results", help="Output directory (default: 'results')"
    )
    parser.add_argument(
        "--variant",
        action="append",
        choices=sorted(PIPELINE_VARIANTS),
        help="Configuration variant to run (repeatable, default: all variants)",
    )
    parser.add_argument("--config", help="JSON file with parameter overrides")
    parser.add_argument(
        "--annotation-dir",
        help="Directory with <dataset>_annotation.json files (default: variant output dir)",
    )
    parser.add_argument(
        "--by-stage", action="store_true", help="Merge replicates per developmental stage"
    )
    parser.add_argument(
        "--resume", action="store_true", help="Reuse checkpoints from a previous run"
    )
    parser.add_argument(
        "--root-cluster",
        action="append",
        help="Root cluster for pseudotime, '3' or '<dataset>=3' (repeatable)",
    )
    parser.add_argument(
        "--resolution-sweep",
        action="store_true",
        help="Write a Leiden resolution sweep table per dataset",
    )
    args = parser.parse_args(argv)

    overrides = load_config_file(args.config) if args.config else {}
    variants = args.variant or sorted(PIPELINE_VARIANTS)
    roots = parse_root_clusters(args.root_cluster)

    results = {}
    for variant in variants:
        config = make_config(variant, **overrides)
        results[variant] = run_pipeline(
            config,
            args.data_dir,
            args.output_dir,
            annotation_dir=args.annotation_dir,
            by_stage=args.by_stage,
            resume=args.resume,
            root_clusters=roots,
            resolution_sweep=args.resolution_sweep,
        )

    print("Analysis complete!")
    return results


if __name__ == "__main__":
    main()
