"""
Integration tests running the delegated scanpy steps on simulated samples
"""

import json

import pytest
import numpy as np

import cerebellum_pipeline
from cerebellum_utils.annotation import load_cluster_annotation, write_cluster_annotation
from cerebellum_utils.data_loader import load_samples, merge_samples
from cerebellum_utils.pipeline_config import make_config, clustering_run_params
from cerebellum_utils.processing import (
    normalize_and_scale,
    run_pca_umap_clustering,
    choose_leiden_resolution,
)
from cerebellum_utils.qc_utils import preprocess_samples
from cerebellum_utils.trajectory import run_trajectory
from cerebellum_utils.export import build_handoff

pytestmark = [pytest.mark.slow, pytest.mark.integration]

OVERRIDES = {
    "min_counts": 1,
    "max_counts": 1000000,
    "n_top_genes": 100,
    "n_pcs": 10,
    "n_neighbors": 10,
    "resolution": 0.3,
}


@pytest.fixture
def sim_config():
    return make_config("primary", **OVERRIDES)


@pytest.fixture
def merged(simulated_data_dir, sim_config):
    filtered = preprocess_samples(load_samples(simulated_data_dir), sim_config)
    return merge_samples(filtered, sim_config["stage_pattern"])


def simulated_group(barcode):
    # <sample>_CELL<index>-1, 60 cells per simulated population
    return int(barcode.split("_")[1][4:9]) // 60


def test_normalize_and_scale(merged, sim_config):
    n_genes = merged.n_vars

    adata = normalize_and_scale(merged, sim_config)

    assert adata.n_vars >= 100
    assert adata.n_vars == int(merged.var["highly_variable"].sum())
    assert adata.raw.n_vars == n_genes
    assert "counts" in adata.layers
    assert adata.X.max() <= sim_config["scale_max_value"] + 1e-6


def test_clustering_and_trajectory(merged, sim_config):
    adata = normalize_and_scale(merged, sim_config)

    adata = run_pca_umap_clustering(adata, sim_config)

    assert adata.obsm["X_pca"].shape == (merged.n_obs, 10)
    assert adata.obsm["X_umap"].shape == (merged.n_obs, 2)
    assert adata.uns["clustering_run"] == clustering_run_params(sim_config)

    # every cluster holds a single simulated population
    groups = adata.obs_names.map(simulated_group)
    for cluster in adata.obs["leiden"].cat.categories:
        mask = (adata.obs["leiden"] == cluster).values
        assert len(set(groups[mask])) == 1
    assert adata.obs["leiden"].nunique() >= 3

    root = adata.obs["leiden"].cat.categories[0]
    connectivities = run_trajectory(adata, root)

    n_clusters = adata.obs["leiden"].nunique()
    assert connectivities.shape == (n_clusters, n_clusters)
    assert adata.obs["dpt_pseudotime"].iloc[adata.uns["iroot"]] == 0
    assert (adata.obs["dpt_pseudotime"] >= 0).all()

    handoff = build_handoff(adata)
    assert handoff.n_vars == adata.raw.n_vars
    assert "dpt_pseudotime" in handoff.obs


def test_too_many_pcs_fails(merged, sim_config):
    adata = normalize_and_scale(merged, sim_config)
    sim_config["n_pcs"] = 500

    with pytest.raises(ValueError, match="n_pcs=500"):
        run_pca_umap_clustering(adata, sim_config)


def test_resolution_sweep_leaves_clusters(merged, sim_config):
    adata = run_pca_umap_clustering(normalize_and_scale(merged, sim_config), sim_config)
    before = adata.obs["leiden"].copy()

    chosen, metrics_df = choose_leiden_resolution(adata, resolution_grid=[0.2, 0.5, 1.0])

    assert chosen in {0.2, 0.5, 1.0}
    assert list(metrics_df["resolution"]) == [0.2, 0.5, 1.0]
    assert "leiden_0.50" in adata.obs
    assert adata.obs["leiden"].equals(before)


def test_command_line_run_and_resume(simulated_data_dir, tmp_path):
    config_path = tmp_path / "overrides.json"
    config_path.write_text(json.dumps(OVERRIDES))
    results_dir = tmp_path / "results"

    results = cerebellum_pipeline.main(
        [
            "--data-dir",
            str(simulated_data_dir),
            "--output-dir",
            str(results_dir),
            "--variant",
            "primary",
            "--config",
            str(config_path),
        ]
    )

    out = results_dir / "primary"
    for name in [
        "qc_summary.csv",
        "checkpoint_filtered/manifest.json",
        "all_clustered.h5ad",
        "all_clusters.csv",
        "all_top_markers_by_cluster.csv",
        "all_annotation_template.json",
        "all_handoff.h5ad",
    ]:
        assert (out / name).exists(), name
    assert list(results) == ["primary"]
    assert "celltype" not in results["primary"]["all"].obs

    # Fill in the template and rerun from the checkpoints
    annotation = load_cluster_annotation(out / "all_annotation_template.json")
    first = next(iter(annotation["labels"]))
    annotation["labels"][first] = "Granule"
    write_cluster_annotation(annotation, out / "all_annotation.json")

    config = make_config("primary", **OVERRIDES)
    resumed = cerebellum_pipeline.run_pipeline(
        config,
        simulated_data_dir,
        results_dir,
        resume=True,
        root_clusters=cerebellum_pipeline.parse_root_clusters([first]),
    )

    adata = resumed["all"]
    assert "Granule" in set(adata.obs["celltype"])
    np.testing.assert_array_equal(
        adata.obs["leiden"].values, results["primary"]["all"].obs["leiden"].values
    )
    assert (out / "all_pseudotime_by_cluster.csv").exists()
    assert (out / "all_paga_connectivities.csv").exists()


def test_parse_root_clusters():
    roots = cerebellum_pipeline.parse_root_clusters(["3", "E18=5"])

    assert roots == {"*": "3", "E18": "5"}


def test_resume_recomputes_stale_checkpoints(simulated_data_dir, tmp_path, capsys):
    results_dir = tmp_path / "results"
    first = cerebellum_pipeline.run_pipeline(
        make_config("primary", **OVERRIDES), simulated_data_dir, results_dir
    )["all"]

    # Raise the count floor: the filtered samples must be rebuilt
    stricter = make_config("primary", **dict(OVERRIDES, min_counts=700))
    resumed = cerebellum_pipeline.run_pipeline(
        stricter, simulated_data_dir, results_dir, resume=True
    )["all"]

    expected = preprocess_samples(load_samples(simulated_data_dir), stricter)
    assert resumed.n_obs == sum(adata.n_obs for adata in expected.values())
    assert resumed.n_obs < first.n_obs
    assert resumed.uns["clustering_run"]["min_counts"] == 700
    out = capsys.readouterr().out
    assert "was built with other parameters" in out
    assert "min_counts: checkpoint=1, config=700" in out

    # Only the resolution changes: filtered samples are reused, clusters are not
    finer = make_config("primary", **dict(OVERRIDES, min_counts=700, resolution=0.6))
    reclustered = cerebellum_pipeline.run_pipeline(
        finer, simulated_data_dir, results_dir, resume=True
    )["all"]

    out = capsys.readouterr().out
    assert "E18A.h5ad was built" not in out
    assert "resolution: checkpoint=0.3, config=0.6" in out
    assert reclustered.n_obs == resumed.n_obs
    assert reclustered.uns["clustering_run"]["resolution"] == 0.6


def test_command_line_by_stage(simulated_data_dir, tmp_path):
    config_path = tmp_path / "overrides.json"
    config_path.write_text(json.dumps(OVERRIDES))
    results_dir = tmp_path / "results"

    results = cerebellum_pipeline.main(
        [
            "--data-dir",
            str(simulated_data_dir),
            "--output-dir",
            str(results_dir),
            "--variant",
            "primary",
            "--config",
            str(config_path),
            "--by-stage",
            "--root-cluster",
            "E18=0",
            "--root-cluster",
            "P7=1",
            "--resolution-sweep",
        ]
    )

    assert list(results["primary"]) == ["E18"]
    adata = results["primary"]["E18"]
    assert set(adata.obs["sample"]) == {"E18A", "E18B"}
    assert set(adata.obs["stage"]) == {"E18"}
    assert "dpt_pseudotime" in adata.obs

    out = results_dir / "primary"
    for name in [
        "E18_clustered.h5ad",
        "E18_clusters.csv",
        "E18_leiden_resolution_sweep.csv",
        "E18_paga_connectivities.csv",
        "E18_pseudotime_by_cluster.csv",
        "E18_handoff.h5ad",
    ]:
        assert (out / name).exists(), name
    assert not (out / "all_clusters.csv").exists()
