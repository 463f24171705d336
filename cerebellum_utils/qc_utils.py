#!/usr/bin/env python3
"""
Quality control utilities for single-cell RNA-seq analysis
Handles QC metrics calculation and per-sample cell/gene filtering
"""

import numpy as np
import pandas as pd
import scanpy as sc
from cerebellum_utils.pipeline_config import GENE_PATTERNS, qc_filter_params


def build_qc_gene_sets(symbols, patterns=GENE_PATTERNS):
    """Build the mitochondrial and ribosomal gene sets

    Args:
        symbols: Gene symbols to search
        patterns: Dict with "mt_pattern", "ribo_pattern" and "ribo_exclude"

    Returns:
        Dict with "mt" and "ribo" sets of gene symbols
    """
    symbols = pd.Index(symbols, dtype=str)

    mt = symbols.str.contains(patterns["mt_pattern"], case=False, regex=True)
    ribo = symbols.str.contains(
        patterns["ribo_pattern"], case=False, regex=True
    ) & ~symbols.str.contains(patterns["ribo_exclude"], case=False, regex=True)

    return {"mt": set(symbols[mt]), "ribo": set(symbols[ribo])}


def gene_universe(samples):
    """Union of gene symbols across all samples"""
    genes = set()
    for adata in samples.values():
        genes.update(adata.var_names)
    return sorted(genes)


def _subset_sum(X, mask):
    return np.asarray(X[:, np.flatnonzero(mask)].sum(axis=1)).ravel().astype(np.float64)


def _refresh_qc_metrics(adata):
    # total_counts / n_genes_by_counts follow the current gene axis
    if adata.n_obs and adata.n_vars:
        sc.pp.calculate_qc_metrics(adata, percent_top=None, log1p=False, inplace=True)
    elif adata.n_obs:
        adata.obs["total_counts"] = 0.0
        adata.obs["n_genes_by_counts"] = 0
    return adata


def calculate_qc_metrics(adata, gene_sets):
    """Calculate QC metrics

    Args:
        adata: AnnData object
        gene_sets: Dict with "mt" and "ribo" gene symbol sets

    Returns:
        AnnData object with QC metrics added
    """
    adata.var["mt"] = adata.var_names.isin(list(gene_sets["mt"]))
    adata.var["ribo"] = adata.var_names.isin(list(gene_sets["ribo"]))

    # Calculate QC metrics
    _refresh_qc_metrics(adata)

    # Add mitochondrial and ribosomal percentages
    total = np.asarray(adata.X.sum(axis=1)).ravel().astype(np.float64)
    for key, col in [("mt", "percent.mt"), ("ribo", "percent.ribo")]:
        subset = _subset_sum(adata.X, adata.var[key].values)
        percent = np.divide(
            subset * 100, total, out=np.zeros_like(total), where=total > 0
        )
        adata.obs[col] = np.clip(percent, 0, 100)

    return adata


def check_dimensions(adata, sample="dataset"):
    """Raise if the count matrix and its metadata tables disagree"""
    n_cells, n_genes = adata.X.shape
    if n_cells != adata.obs.shape[0] or n_genes != adata.var.shape[0]:
        raise ValueError(
            f"Sample '{sample}': matrix has {n_cells} cells x {n_genes} genes but "
            f"metadata has {adata.obs.shape[0]} cells and {adata.var.shape[0]} genes"
        )
    return True


def filter_high_mt_cells(adata, max_percent_mt):
    """Drop cells with percent.mt >= max_percent_mt"""
    if "percent.mt" not in adata.obs:
        raise KeyError("percent.mt not found in adata.obs, run calculate_qc_metrics first")

    keep = (adata.obs["percent.mt"] < max_percent_mt).values
    return adata[keep].copy()


def remove_genes(adata, genes):
    """Drop the given genes from the gene axis and refresh per-cell totals"""
    keep = ~adata.var_names.isin(list(genes))
    adata = adata[:, keep].copy()
    return _refresh_qc_metrics(adata)


def filter_by_total_counts(adata, min_counts, max_counts):
    """Keep cells with min_counts <= total_counts < max_counts"""
    if "total_counts" not in adata.obs:
        raise KeyError("total_counts not found in adata.obs, run calculate_qc_metrics first")

    total = adata.obs["total_counts"]
    keep = ((total >= min_counts) & (total < max_counts)).values
    return adata[keep].copy()


def drop_zero_count_genes(adata):
    """Drop genes whose counts sum to exactly zero over the remaining cells"""
    gene_sums = np.asarray(adata.X.sum(axis=0)).ravel()
    adata = adata[:, gene_sums != 0].copy()
    return _refresh_qc_metrics(adata)


def filter_sample(adata, gene_sets, config, sample="sample"):
    """Apply QC filtering to one sample

    Steps run in a fixed order: mitochondrial-percentage cutoff, removal of
    mitochondrial/ribosomal genes, total-count range, zero-count genes.

    Args:
        adata: AnnData object with QC metrics
        gene_sets: Dict with "mt" and "ribo" gene symbol sets
        config: Pipeline configuration dict
        sample: Sample name used in messages

    Returns:
        Filtered AnnData object
    """
    print(f"Applying QC filters to {sample}...")
    print(f"  Starting with {adata.n_obs} cells and {adata.n_vars} genes")
    check_dimensions(adata, sample)

    summary = {
        "cells_before": int(adata.n_obs),
        "genes_before": int(adata.n_vars),
        **qc_filter_params(config),
    }

    adata = filter_high_mt_cells(adata, config["max_percent_mt"])
    check_dimensions(adata, sample)
    print(f"  percent.mt < {config['max_percent_mt']}: {adata.n_obs} cells")
    summary["cells_after_mt"] = int(adata.n_obs)
    if adata.n_obs == 0:
        raise ValueError(f"Sample '{sample}': no cells left after the percent.mt filter")

    adata = remove_genes(adata, gene_sets["mt"] | gene_sets["ribo"])
    check_dimensions(adata, sample)
    print(f"  Removed mitochondrial/ribosomal genes: {adata.n_vars} genes")
    summary["genes_after_mt_ribo"] = int(adata.n_vars)

    adata = filter_by_total_counts(adata, config["min_counts"], config["max_counts"])
    check_dimensions(adata, sample)
    print(
        f"  total_counts in [{config['min_counts']}, {config['max_counts']}): "
        f"{adata.n_obs} cells"
    )
    summary["cells_after_counts"] = int(adata.n_obs)
    if adata.n_obs == 0:
        raise ValueError(f"Sample '{sample}': no cells left after the total-count filter")

    adata = drop_zero_count_genes(adata)
    check_dimensions(adata, sample)
    summary["genes_after_zero"] = int(adata.n_vars)

    adata.uns["qc_filter"] = summary
    print(f"  After filtering: {adata.n_obs} cells and {adata.n_vars} genes")

    return adata


def preprocess_samples(samples, config, patterns=GENE_PATTERNS):
    """Annotate and filter every sample independently

    Args:
        samples: Dict mapping sample name to raw AnnData
        config: Pipeline configuration dict
        patterns: Gene patterns used to build the QC gene sets

    Returns:
        Dict mapping sample name to filtered AnnData
    """
    print("Calculating QC metrics...")
    gene_sets = build_qc_gene_sets(gene_universe(samples), patterns)
    print(
        f"  {len(gene_sets['mt'])} mitochondrial genes, "
        f"{len(gene_sets['ribo'])} ribosomal genes"
    )

    filtered = {}
    for sample, adata in samples.items():
        calculate_qc_metrics(adata, gene_sets)
        filtered[sample] = filter_sample(adata, gene_sets, config, sample)

    return filtered


def summarize_qc(samples):
    """Per-sample QC summary table"""
    rows = []
    for sample, adata in samples.items():
        rows.append(
            {
                "sample": sample,
                "n_cells": adata.n_obs,
                "n_genes": adata.n_vars,
                "median_total_counts": float(np.median(adata.obs["total_counts"])),
                "median_percent_mt": float(np.median(adata.obs["percent.mt"])),
                "median_percent_ribo": float(np.median(adata.obs["percent.ribo"])),
            }
        )
    return pd.DataFrame(rows).set_index("sample")
