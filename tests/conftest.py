# -*- coding: utf-8 -*-
import numpy as np
import pysam
import pytest
from pathlib import Path

from strandstate.core import (
    UNLABELLED,
    CellCounts,
    CellInfo,
    GenomeLayout,
    GoodBins,
    buildChromMap,
    medianCount,
)
from strandstate.intervals import createFixedBins


def pytest_configure(config):
    config.addinivalue_line("markers", "correctness: numerical correctness checks")
    config.addinivalue_line("markers", "hmm: HMM engine and decoding")


@pytest.fixture
def toy_layout():
    # two chromosomes, 10 + 5 bins of 1kb
    return GenomeLayout(names=("chr1", "chr2"), lengths=(10_000, 5_000))


@pytest.fixture
def toy_bins(toy_layout):
    return createFixedBins(toy_layout, 1000)


@pytest.fixture
def make_cell():
    def _make(cellId, watson, crick, sampleName="S1", cellName=None):
        watson = np.asarray(watson, dtype=np.int64)
        crick = np.asarray(crick, dtype=np.int64)
        info = CellInfo(
            cellId=cellId,
            cellName=cellName or f"cell{cellId}",
            path=f"cell{cellId}.bam",
            sampleName=sampleName,
            medianBinCount=medianCount(watson + crick),
        )
        return CellCounts(
            info=info,
            watson=watson,
            crick=crick,
            states=np.full(watson.size, UNLABELLED, dtype=np.int8),
        )

    return _make


@pytest.fixture
def make_good_bins():
    def _make(bins, indices=None):
        if indices is None:
            indices = np.arange(bins.numBins)
        indices = np.asarray(indices, dtype=np.int64)
        badIndices = np.setdiff1d(np.arange(bins.numBins), indices).astype(np.int64)
        return GoodBins(
            indices=indices,
            goodMap=buildChromMap(bins.chroms[indices], bins.layout.numChroms),
            badIndices=badIndices,
            badReasons=["l"] * badIndices.size,
            binMeans=np.ones(bins.numBins),
            binVariances=np.zeros(bins.numBins),
        )

    return _make


@pytest.fixture
def write_bam(tmp_path):
    r"""Write a small BAM file. `reads` holds (chrom, start, flag, mapq) tuples."""

    def _write(name, reads, sampleNames=("S1",), layout=None):
        layout = layout or GenomeLayout(names=("chr1", "chr2"), lengths=(10_000, 5_000))
        header = {
            "HD": {"VN": "1.6", "SO": "unsorted"},
            "SQ": [
                {"SN": chrom, "LN": length}
                for chrom, length in zip(layout.names, layout.lengths)
            ],
        }
        if sampleNames:
            header["RG"] = [
                {"ID": f"rg{i}", "SM": sampleName}
                for i, sampleName in enumerate(sampleNames)
            ]
        path = Path(tmp_path) / name
        with pysam.AlignmentFile(str(path), "wb", header=header) as out:
            for i, (chrom, start, flag, mapq) in enumerate(reads):
                read = pysam.AlignedSegment(out.header)
                read.query_name = f"read{i}"
                read.query_sequence = "ACGTACGTAC"
                read.query_qualities = pysam.qualitystring_to_array("IIIIIIIIII")
                read.flag = flag
                if flag & 0x4:
                    read.reference_id = -1
                    read.reference_start = -1
                else:
                    read.reference_id = out.get_tid(chrom)
                    read.reference_start = start
                    read.cigartuples = [(0, 10)]
                read.mapping_quality = mapq
                out.write(read)
        return str(path)

    return _write
