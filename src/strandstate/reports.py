# -*- coding: utf-8 -*-
r"""Writers for the count table and the optional cell, sample and removed-bin reports."""

import logging
from typing import Mapping

import numpy as np
import pandas as pd

from .core import (
    FAILED,
    STATE_LABELS,
    UNLABELLED,
    CellCounts,
    GenomeBins,
    GoodBins,
    SampleInfo,
    labelName,
)
from .filtering import iterRemovedBins

logger = logging.getLogger(__name__)

COUNT_TABLE_COLUMNS = ["chrom", "start", "end", "sample", "cell", "c", "w", "class"]

CELL_INFO_COMMENTS = [
    "# medbin:  Median total count (w+c) per bin",
    "# mapped:  Total number of reads seen",
    "# suppl:   Supplementary, secondary or QC-failed reads (filtered out)",
    "# dupl:    Reads filtered out as PCR duplicates",
    "# mapq:    Reads filtered out due to low mapping quality",
    "# read2:   Reads filtered out as 2nd read of pair",
    "# good:    Reads used for counting.",
]


def _fmt(x: float) -> str:
    return f"{x:.6g}"


def stateLabels(states: np.ndarray) -> np.ndarray:
    r"""Vectorized :func:`strandstate.core.labelName`."""
    lookup = np.asarray(
        [labelName(FAILED), labelName(UNLABELLED)] + list(STATE_LABELS), dtype=object
    )
    return lookup[np.asarray(states, dtype=np.int64) - FAILED]


def countTable(bins: GenomeBins, cells: Mapping[int, CellCounts]) -> pd.DataFrame:
    r"""One row per (cell, bin), cells in input order, bins in genome order."""
    chromNames = np.asarray(bins.layout.names, dtype=object)[bins.chroms]
    frames = [
        pd.DataFrame(
            {
                "chrom": chromNames,
                "start": bins.starts,
                "end": bins.ends,
                "sample": cell.info.sampleName,
                "cell": cell.info.cellName,
                "c": cell.crick,
                "w": cell.watson,
                "class": stateLabels(cell.states),
            },
            columns=COUNT_TABLE_COLUMNS,
        )
        for cell in cells.values()
    ]
    if not frames:
        return pd.DataFrame(columns=COUNT_TABLE_COLUMNS)
    return pd.concat(frames, ignore_index=True)


def writeCountTable(
    path: str, bins: GenomeBins, cells: Mapping[int, CellCounts]
) -> None:
    r"""Write the primary tab-separated count table with a header row.

    :raises OSError: If `path` cannot be written.
    """
    logger.info(f"[Write] count table: {path}")
    countTable(bins, cells).to_csv(path, sep="\t", index=False)


def writeCellInfo(path: str, cells: Mapping[int, CellCounts]) -> None:
    r"""Write one row per cell (sample, cell, median count, read tallies), sorted by sample then input order."""
    logger.info(f"[Write] Cell summary: {path}")
    infos = sorted(
        (cell.info for cell in cells.values()),
        key=lambda info: (info.sampleName, info.cellId),
    )
    with open(path, "w", encoding="utf-8") as out:
        out.write("\n".join(CELL_INFO_COMMENTS) + "\n")
        out.write("sample\tcell\tmedbin\tmapped\tsuppl\tdupl\tmapq\tread2\tgood\n")
        for info in infos:
            fields = [
                info.sampleName,
                info.cellName,
                _fmt(info.medianBinCount),
                info.numMapped,
                info.numSupplementary,
                info.numDuplicates,
                info.numLowMapq,
                info.numRead2,
                info.numCounted,
            ]
            out.write("\t".join(str(x) for x in fields) + "\n")


def writeSampleInfo(path: str, samples: Mapping[str, SampleInfo]) -> None:
    r"""Write one row per sample: name, number of cells, `p`, comma-joined cell means and variances.

    Samples whose fit failed are listed again after the table as ``# FAILED`` comment lines
    carrying the reason. Their cells are labelled ``fail`` in the count table.
    """
    logger.info(f"[Write] sample information: {path}")
    failed = [
        (sampleName, sample.error)
        for sampleName, sample in samples.items()
        if not sample.valid
    ]
    with open(path, "w", encoding="utf-8") as out:
        out.write("sample\tcells\tp\tmeans\tvars\n")
        for sampleName, sample in samples.items():
            out.write(
                "\t".join(
                    [
                        sampleName,
                        str(len(sample.means)),
                        _fmt(sample.p),
                        ",".join(_fmt(m) for m in sample.means),
                        ",".join(_fmt(v) for v in sample.vars),
                    ]
                )
                + "\n"
            )
        for sampleName, error in failed:
            out.write(f"# FAILED {sampleName}: {error}\n")


def writeRemovedBins(path: str, bins: GenomeBins, goodBins: GoodBins) -> None:
    r"""Write removed bins as headerless BED with a reason column (``l`` or ``h``)."""
    logger.info(f"[Write] removed bins: {path}")
    pd.DataFrame(
        list(iterRemovedBins(bins, goodBins)),
        columns=["chrom", "start", "end", "reason"],
    ).to_csv(path, sep="\t", header=False, index=False)
