#!/usr/bin/env python3
"""
Data loading utilities for single-cell RNA-seq analysis
Handles matrix-market sample loading and merging
"""

import re
import pandas as pd
import numpy as np
from scipy import sparse
from scipy.io import mmread
import anndata
from pathlib import Path

# Raw file suffixes of one sample triplet (optionally gzipped)
FILE_SUFFIXES = {
    "barcodes": "barcodes.tsv",
    "genes": "genes.tsv",
    "matrix": "matrix.mtx",
}


def _split_raw_filename(name):
    """Return (prefix, kind) for a raw sample file, or (None, None)"""
    stem = name[:-3] if name.endswith(".gz") else name
    for kind, suffix in FILE_SUFFIXES.items():
        if stem == suffix:
            return "", kind
        if stem.endswith("_" + suffix):
            return stem[: -len(suffix) - 1], kind
    return None, None


def discover_samples(data_dir):
    """Find the barcode/gene/matrix triplet of every sample

    Two layouts are accepted, also side by side: one subdirectory per sample
    (files named barcodes.tsv, genes.tsv, matrix.mtx, with or without the
    sample prefix), or flat <sample>_barcodes.tsv, <sample>_genes.tsv,
    <sample>_matrix.mtx files. Hidden entries such as .ipynb_checkpoints
    are ignored.

    Args:
        data_dir: Directory holding the raw data

    Returns:
        Dict mapping sample name to {"barcodes": Path, "genes": Path, "matrix": Path}
    """
    data_dir = Path(data_dir)
    if not data_dir.is_dir():
        raise FileNotFoundError(f"Data directory not found: {data_dir}")

    found = {}
    for entry in sorted(data_dir.iterdir()):
        if entry.name.startswith("."):
            continue
        if entry.is_dir():
            for file_path in sorted(entry.iterdir()):
                prefix, kind = _split_raw_filename(file_path.name)
                if kind is None:
                    continue
                if prefix and prefix != entry.name:
                    raise ValueError(
                        f"{file_path.name} in {entry} belongs to sample '{prefix}', "
                        f"not '{entry.name}'"
                    )
                found.setdefault(entry.name, {}).setdefault(kind, []).append(file_path)
        else:
            prefix, kind = _split_raw_filename(entry.name)
            if kind is None:
                continue
            if not prefix:
                raise ValueError(
                    f"Cannot derive a sample name from {entry.name} in {data_dir}"
                )
            found.setdefault(prefix, {}).setdefault(kind, []).append(entry)

    if not found:
        raise ValueError(f"No barcodes/genes/matrix files found in {data_dir}")

    samples = {}
    for sample in sorted(found):
        files = found[sample]
        problems = [
            f"{len(files.get(kind, []))} {kind} file(s)"
            for kind in FILE_SUFFIXES
            if len(files.get(kind, [])) != 1
        ]
        if problems:
            raise ValueError(
                f"Sample '{sample}' does not have exactly one file triplet: "
                + ", ".join(problems)
            )
        samples[sample] = {kind: files[kind][0] for kind in FILE_SUFFIXES}

    return samples


def load_sample_mtx(paths, sample):
    """Load one sample stored as a matrix-market triplet

    Args:
        paths: Dict with "barcodes", "genes" and "matrix" file paths
        sample: Sample identifier written to obs["sample"]

    Returns:
        AnnData object (cells x genes)
    """
    print(f"Loading {sample} from {Path(paths['matrix']).parent}")

    # Matrix-market files are stored genes x cells
    X = sparse.csr_matrix(mmread(str(paths["matrix"])).T, dtype=np.float32)
    genes = pd.read_csv(paths["genes"], sep="\t", header=None, dtype=str)
    barcodes = pd.read_csv(paths["barcodes"], sep="\t", header=None, dtype=str)

    gene_ids = genes[0].tolist()
    gene_names = genes[1].tolist() if genes.shape[1] > 1 else gene_ids
    cell_barcodes = barcodes[0].tolist()

    if X.shape != (len(cell_barcodes), len(gene_names)):
        raise ValueError(
            f"Sample '{sample}': matrix is {X.shape[1]} genes x {X.shape[0]} cells "
            f"but found {len(gene_names)} genes and {len(cell_barcodes)} barcodes"
        )

    adata = anndata.AnnData(
        X,
        obs=pd.DataFrame(index=pd.Index(cell_barcodes, dtype=str)),
        var=pd.DataFrame({"gene_ids": gene_ids}, index=pd.Index(gene_names, dtype=str)),
    )

    # Make gene names unique
    adata.var_names_make_unique()

    adata.obs["sample"] = sample
    adata.obs["orig.ident"] = sample

    print(f"  {adata.n_obs} cells, {adata.n_vars} genes")
    return adata


def load_samples(data_dir, sample_names=None):
    """Load every sample found under data_dir

    Args:
        data_dir: Directory holding the raw data
        sample_names: Optional subset of samples to load

    Returns:
        Dict mapping sample name to AnnData, in sorted sample order
    """
    print("Loading samples...")
    triplets = discover_samples(data_dir)

    if sample_names is not None:
        missing = [s for s in sample_names if s not in triplets]
        if missing:
            raise ValueError(f"Samples not found in {data_dir}: {', '.join(missing)}")
        triplets = {s: triplets[s] for s in sample_names}

    return {sample: load_sample_mtx(paths, sample) for sample, paths in triplets.items()}


def _match_stage(sample, stage_pattern):
    match = re.match(stage_pattern, sample)
    if match is None:
        return None
    groups = match.groupdict()
    return groups["stage"], groups.get("replicate") or ""


def parse_stage(sample, stage_pattern):
    """Split a sample identifier into (stage, replicate)

    Args:
        sample: Sample identifier, e.g. "E18A"
        stage_pattern: Regex with a "stage" group and optional "replicate" group

    Returns:
        Tuple (stage, replicate)
    """
    parsed = _match_stage(sample, stage_pattern)
    if parsed is None:
        raise ValueError(
            f"Sample '{sample}' does not follow the stage naming pattern {stage_pattern}"
        )
    return parsed


def prefix_barcodes(adata, sample):
    """Prefix cell barcodes with the sample identifier (in place)"""
    adata.obs_names = [f"{sample}_{barcode}" for barcode in adata.obs_names]
    return adata


def merge_samples(samples, stage_pattern=None, require_stage=True):
    """Concatenate samples along the cell axis

    Args:
        samples: Dict mapping sample name to AnnData
        stage_pattern: If given, obs["stage"] and obs["replicate"] are parsed
            from each sample name
        require_stage: If False, a sample name that does not follow
            stage_pattern gets an empty stage and a warning instead of an error

    Returns:
        Merged AnnData object with sample-prefixed barcodes and the genes
        shared by all samples
    """
    print(f"Merging {len(samples)} samples: {', '.join(samples)}")

    adatas = []
    for sample, adata in samples.items():
        if not adata.obs_names.is_unique:
            raise ValueError(f"Sample '{sample}' has duplicated cell barcodes")

        adata = adata.copy()
        prefix_barcodes(adata, sample)
        adata.obs["sample"] = sample
        if stage_pattern is not None:
            if require_stage:
                stage, replicate = parse_stage(sample, stage_pattern)
            else:
                parsed = _match_stage(sample, stage_pattern)
                if parsed is None:
                    print(
                        f"  Warning: sample {sample} does not follow the stage "
                        f"naming pattern, stage left empty"
                    )
                stage, replicate = parsed or ("", "")
            adata.obs["stage"] = stage
            adata.obs["replicate"] = replicate
        adatas.append(adata)

    adata_merged = anndata.concat(adatas, join="inner", merge="same")

    if not adata_merged.obs_names.is_unique:
        duplicated = adata_merged.obs_names[adata_merged.obs_names.duplicated()]
        raise ValueError(
            f"Cell identifiers collide after merging {', '.join(samples)}: "
            f"{', '.join(duplicated[:5])}"
        )
    if adata_merged.n_vars == 0:
        raise ValueError(f"Samples {', '.join(samples)} share no genes")

    for col in ["sample", "stage", "replicate"]:
        if col in adata_merged.obs:
            adata_merged.obs[col] = adata_merged.obs[col].astype("category")

    print(f"  Merged: {adata_merged.n_obs} cells, {adata_merged.n_vars} genes")
    return adata_merged


def merge_by_stage(samples, stage_pattern, expected_replicates=2):
    """Merge replicate samples of each developmental stage

    Args:
        samples: Dict mapping sample name to AnnData
        stage_pattern: Regex used by parse_stage
        expected_replicates: Number of replicates expected per stage

    Returns:
        Dict mapping stage to merged AnnData
    """
    print("Merging samples by stage...")

    groups = {}
    for sample in samples:
        stage, _ = parse_stage(sample, stage_pattern)
        groups.setdefault(stage, []).append(sample)

    merged = {}
    for stage, members in groups.items():
        if len(members) != expected_replicates:
            print(
                f"  Warning: stage {stage} has {len(members)} replicate(s) "
                f"({', '.join(members)}), expected {expected_replicates}"
            )
        merged[stage] = merge_samples({s: samples[s] for s in members}, stage_pattern)

    return merged
