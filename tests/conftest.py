"""
Shared pytest configuration and fixtures for the cerebellum pipeline tests.

Fixtures build small synthetic samples, either in memory as AnnData objects
or on disk as matrix-market triplets.
"""

import pytest
import numpy as np
import pandas as pd
import anndata as ad
from scipy import sparse
from scipy.io import mmwrite


def make_adata(counts, genes, barcodes=None, sample="S1"):
    """Build a cells x genes AnnData from a dense count list"""
    counts = np.asarray(counts, dtype=np.float32)
    if barcodes is None:
        barcodes = [f"AAAC{i:04d}-1" for i in range(counts.shape[0])]
    adata = ad.AnnData(
        sparse.csr_matrix(counts),
        obs=pd.DataFrame(index=pd.Index(barcodes, dtype=str)),
        var=pd.DataFrame(
            {"gene_ids": [f"ENSMUSG{i:011d}" for i in range(len(genes))]},
            index=pd.Index(genes, dtype=str),
        ),
    )
    adata.obs["sample"] = sample
    adata.obs["orig.ident"] = sample
    return adata


def write_sample_triplet(directory, counts, genes, barcodes, prefix=""):
    """Write one sample as barcodes/genes/matrix files (matrix is genes x cells)"""
    directory.mkdir(parents=True, exist_ok=True)
    lead = f"{prefix}_" if prefix else ""
    pd.DataFrame(barcodes).to_csv(
        directory / f"{lead}barcodes.tsv", sep="\t", header=False, index=False
    )
    pd.DataFrame(
        {"id": [f"ENSMUSG{i:011d}" for i in range(len(genes))], "symbol": genes}
    ).to_csv(directory / f"{lead}genes.tsv", sep="\t", header=False, index=False)
    mmwrite(
        str(directory / f"{lead}matrix.mtx"),
        sparse.coo_matrix(np.asarray(counts).T),
    )


# Five genes: two ordinary, one mitochondrial, one ribosomal, one never expressed
TOY_GENES = ["Snap25", "Pax6", "mt-Co1", "Rpl13", "Zfp999"]

TOY_COUNTS = {
    "E18A": [
        [5, 4, 0, 1, 0],  # kept, total 9 after mt/ribo removal
        [1, 0, 5, 0, 0],  # percent.mt 83%
        [1, 0, 0, 3, 0],  # total 1 after removal
        [50, 48, 0, 4, 0],  # total 98 after removal
    ],
    "E18B": [
        [3, 0, 0, 0, 0],  # kept, total 3
        [0, 2, 1, 0, 0],  # percent.mt 33%
        [9, 9, 1, 0, 0],  # percent.mt 5.3%, kept, total 18
        [0, 0, 0, 0, 0],  # empty droplet
    ],
}

TOY_BARCODES = ["AAACCTGA-1", "AAACCTGC-1", "AAACCTGG-1", "AAACCTGT-1"]


@pytest.fixture
def random_seed():
    """
    Provides a consistent random seed for reproducible tests.
    """
    return 42


@pytest.fixture(autouse=True)
def reset_random_state(random_seed):
    """
    Automatically reset random state before each test for reproducibility.
    """
    np.random.seed(random_seed)


@pytest.fixture
def toy_samples():
    """Two in-memory samples sharing identical raw barcodes"""
    return {
        name: make_adata(counts, TOY_GENES, TOY_BARCODES, sample=name)
        for name, counts in TOY_COUNTS.items()
    }


@pytest.fixture
def toy_data_dir(tmp_path):
    """The toy samples written as one subdirectory per sample"""
    data_dir = tmp_path / "data"
    for name, counts in TOY_COUNTS.items():
        write_sample_triplet(data_dir / name, counts, TOY_GENES, TOY_BARCODES)
    return data_dir


def simulate_counts(n_cells_per_group=60, n_groups=3, n_genes=200, n_mt=3, seed=0):
    """Poisson counts with group-specific marker blocks and a few mt- genes"""
    rng = np.random.default_rng(seed)
    genes = [f"mt-Gene{i}" for i in range(n_mt)] + [
        f"Gene{i}" for i in range(n_genes - n_mt)
    ]
    block = (n_genes - n_mt) // (n_groups + 1)

    blocks = []
    for group in range(n_groups):
        rates = np.full(n_genes, 1.0)
        rates[:n_mt] = 0.5
        start = n_mt + group * block
        rates[start : start + block] = 12.0
        blocks.append(rng.poisson(rates, size=(n_cells_per_group, n_genes)))

    return np.vstack(blocks), genes


@pytest.fixture
def simulated_data_dir(tmp_path):
    """Two replicate samples of one stage with three cell populations each"""
    data_dir = tmp_path / "sim"
    for seed, name in enumerate(["E18A", "E18B"]):
        counts, genes = simulate_counts(seed=seed)
        barcodes = [f"CELL{i:05d}-1" for i in range(counts.shape[0])]
        write_sample_triplet(data_dir / name, counts, genes, barcodes)
    return data_dir


def pytest_configure(config):
    """
    Register custom pytest markers for better test organization.
    """
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
