#!/usr/bin/env python3
"""
Pipeline parameters for the cerebellum single-cell RNA-seq analysis

This file centralizes every threshold used in the pipeline.
A configuration is a plain dict; named variants override the defaults so the
same pipeline can be run side by side with different filtering/clustering
settings.
"""

import copy
import json
from pathlib import Path

# Mitochondrial and ribosomal gene patterns (matched case-insensitively)
GENE_PATTERNS = {
    "mt_pattern": r"^mt-",  # Mouse mitochondrial genes
    "ribo_pattern": r"^Rp[sl]",  # Ribosomal protein genes
    "ribo_exclude": r"ka|kc|-ps",  # Rps6ka*, Rps6kc*, pseudogenes
}

DEFAULT_CONFIG = {
    # Cell-level filters
    "max_percent_mt": 10,  # Cells with percent.mt >= this are dropped
    "min_counts": 2750,  # Total-count range is [min_counts, max_counts)
    "max_counts": 15000,
    # Sample naming: developmental stage code followed by a replicate letter
    "stage_pattern": r"^(?P<stage>[EP]\d+(?:\.\d+)?)[_-]?(?P<replicate>[A-Za-z])$",
    "expected_replicates": 2,
    # Normalization & feature selection
    "target_sum": 1e4,
    "n_top_genes": 2000,
    "regress_keys": ["percent.mt", "total_counts"],
    "scale_max_value": 10,
    # Embedding & clustering
    "n_pcs": 20,
    "n_neighbors": 10,
    "resolution": 0.5,
    "random_state": 0,
}

# The two analysis variants that used to be run as duplicated code
PIPELINE_VARIANTS = {
    "primary": {
        "min_counts": 3200,
        "n_pcs": 20,
        "resolution": 0.5,
    },
    "stringent": {
        "min_counts": 3500,
        "n_pcs": 40,
        "resolution": 0.8,
    },
}

# Thresholds recorded with each filtered sample
QC_FILTER_KEYS = ["max_percent_mt", "min_counts", "max_counts"]

# Parameters that determine the cluster identifiers of a run
CLUSTERING_RUN_KEYS = [
    "max_percent_mt",
    "min_counts",
    "max_counts",
    "n_top_genes",
    "n_pcs",
    "n_neighbors",
    "resolution",
    "random_state",
]


def make_config(variant=None, **overrides):
    """Build a validated configuration record

    Args:
        variant: Name of an entry in PIPELINE_VARIANTS (optional)
        **overrides: Individual parameters that take precedence

    Returns:
        New configuration dict
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    if variant is not None:
        if variant not in PIPELINE_VARIANTS:
            raise ValueError(
                f"Unknown pipeline variant '{variant}'. "
                f"Available: {', '.join(sorted(PIPELINE_VARIANTS))}"
            )
        config.update(copy.deepcopy(PIPELINE_VARIANTS[variant]))
        config["variant"] = variant
    else:
        config["variant"] = "default"

    unknown = set(overrides) - set(DEFAULT_CONFIG)
    if unknown:
        raise ValueError(f"Unknown config parameters: {', '.join(sorted(unknown))}")
    config.update(overrides)

    validate_config(config)
    return config


def load_config_file(path):
    """Read parameter overrides from a JSON file"""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path) as f:
        overrides = json.load(f)
    if not isinstance(overrides, dict):
        raise ValueError(f"Config file {path} must contain a JSON object")
    unknown = set(overrides) - set(DEFAULT_CONFIG)
    if unknown:
        raise ValueError(
            f"Unknown config parameters in {path}: {', '.join(sorted(unknown))}"
        )
    return overrides


def qc_filter_params(config):
    """Return the thresholds that define a filtered sample"""
    return {key: config[key] for key in QC_FILTER_KEYS}


def clustering_run_params(config):
    """Return the parameters that define a clustering run"""
    params = {key: config[key] for key in CLUSTERING_RUN_KEYS}
    params["variant"] = config.get("variant", "default")
    return params


def get_config_summary(config):
    """Return a formatted summary of the configuration"""
    summary = [
        f"=== Pipeline Settings ({config.get('variant', 'default')}) ===",
        "\nCell-level filters:",
        f"  - Max mitochondrial %: < {config['max_percent_mt']}%",
        f"  - Counts per cell: [{config['min_counts']}, {config['max_counts']})",
        "\nNormalization:",
        f"  - Target sum: {config['target_sum']:g}",
        f"  - Highly variable genes: {config['n_top_genes']}",
        f"  - Regressed covariates: {', '.join(config['regress_keys'])}",
        "\nClustering:",
        f"  - PCs: {config['n_pcs']}",
        f"  - Neighbors: {config['n_neighbors']}",
        f"  - Leiden resolution: {config['resolution']}",
        f"  - Random state: {config['random_state']}",
    ]
    return "\n".join(summary)


def validate_config(config):
    """Validate that pipeline parameters make sense"""
    errors = []

    missing = [key for key in DEFAULT_CONFIG if key not in config]
    if missing:
        raise ValueError(f"Config validation failed:\nmissing keys: {', '.join(missing)}")

    if not 0 <= config["max_percent_mt"] <= 100:
        errors.append("max_percent_mt must be between 0 and 100")

    if config["min_counts"] < 0:
        errors.append("min_counts must be non-negative")

    if config["min_counts"] >= config["max_counts"]:
        errors.append("min_counts must be less than max_counts")

    if config["expected_replicates"] < 1:
        errors.append("expected_replicates must be at least 1")

    if config["n_top_genes"] < 1:
        errors.append("n_top_genes must be positive")

    if config["n_pcs"] < 2:
        errors.append("n_pcs must be at least 2")

    if config["n_neighbors"] < 2:
        errors.append("n_neighbors must be at least 2")

    if config["resolution"] <= 0:
        errors.append("resolution must be positive")

    if config["target_sum"] <= 0:
        errors.append("target_sum must be positive")

    if "(?P<stage>" not in config["stage_pattern"]:
        errors.append("stage_pattern must define a 'stage' group")

    if errors:
        raise ValueError("Config validation failed:\n" + "\n".join(errors))

    return True
