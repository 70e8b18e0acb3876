# -*- coding: utf-8 -*-
r"""
Population-level bin quality filtering.

Counts of each cell are normalized by the cell's median bin count. A bin's
statistic is the mean (across cells) of its normalized Watson+Crick count.
Bins whose mean is too low (``'l'``) or an outlier on the high side (``'h'``)
are removed from decoding.
"""

import logging
from typing import Dict, Iterator, Mapping, Tuple

import numpy as np
import numpy.typing as npt

from .core import CellCounts, GenomeBins, GoodBins, buildChromMap, filterParams

logger = logging.getLogger(__name__)


def normalizedTotals(
    cells: Mapping[int, CellCounts], numBins: int
) -> npt.NDArray[np.float64]:
    r"""Matrix of (Watson + Crick) / medianBinCount, one row per cell.

    Cells with a median bin count of zero cannot be normalized and are left out.

    :param cells: Per-cell counts, see :func:`strandstate.counting.countCells`.
    :type cells: Mapping[int, CellCounts]
    :param numBins: Number of bins.
    :type numBins: int
    :return: Array of shape ``(numNormalizedCells, numBins)``.
    :rtype: npt.NDArray[np.float64]
    """
    rows = []
    for cell in cells.values():
        median_ = cell.info.medianBinCount
        if median_ <= 0:
            logger.warning(
                f"Cell {cell.info.cellName} has a median bin count of 0 and is left out of bin filtering"
            )
            continue
        rows.append(
            (cell.watson / float(median_)) + (cell.crick / float(median_))
        )
    if not rows:
        return np.zeros((0, numBins), dtype=np.float64)
    return np.vstack(rows).astype(np.float64)


def getBinStatistics(
    cells: Mapping[int, CellCounts], numBins: int
) -> Tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    r"""Per-bin population mean and variance of normalized counts across cells.

    :return: ``(binMeans, binVariances)``. All zeros if no cell can be normalized.
    """
    normalized = normalizedTotals(cells, numBins)
    if normalized.shape[0] == 0:
        logger.warning("No cell with a non-zero median bin count")
        return np.zeros(numBins), np.zeros(numBins)
    return normalized.mean(axis=0), normalized.var(axis=0)


def filterBins(
    cells: Mapping[int, CellCounts],
    bins: GenomeBins,
    filterArgs: filterParams = filterParams(),
) -> GoodBins:
    r"""Split bins into good and bad ones.

    A bin is good iff ``minBinMean < mean < mu + maxSDs * sd`` with `mu`/`sd` the mean and
    (population) standard deviation of all bin means. Bad bins are tagged ``'l'`` if their mean
    is at most `minBinMean`, else ``'h'``.

    :param cells: Per-cell counts.
    :type cells: Mapping[int, CellCounts]
    :param bins: The bins the counts refer to.
    :type bins: GenomeBins
    :param filterArgs: See :class:`filterParams`.
    :type filterArgs: filterParams
    :return: Good bin indices and their chromosome index, bad bins with reason codes.
    :rtype: GoodBins
    """
    binMeans, binVariances = getBinStatistics(cells, bins.numBins)
    if bins.numBins > 0:
        meanOfMeans = float(np.mean(binMeans))
        sdOfMeans = float(np.std(binMeans))
    else:
        meanOfMeans, sdOfMeans = 0.0, 0.0
    logger.info(f"Mean mean bin count is {meanOfMeans}")
    logger.info(f"Mean bin count SD is {sdOfMeans}")

    upper = meanOfMeans + filterArgs.maxSDs * sdOfMeans
    isGood = (binMeans > filterArgs.minBinMean) & (binMeans < upper)
    indices = np.flatnonzero(isGood).astype(np.int64)
    badIndices = np.flatnonzero(~isGood).astype(np.int64)
    badReasons = [
        "l" if binMeans[b] <= filterArgs.minBinMean else "h" for b in badIndices
    ]
    logger.info(f"Filtering {badIndices.size} bins.")

    return GoodBins(
        indices=indices,
        goodMap=buildChromMap(bins.chroms[indices], bins.layout.numChroms),
        badIndices=badIndices,
        badReasons=badReasons,
        binMeans=binMeans,
        binVariances=binVariances,
    )


def iterRemovedBins(
    bins: GenomeBins, goodBins: GoodBins
) -> Iterator[Tuple[str, int, int, str]]:
    r"""Yield ``(chrom, start, end, reason)`` for every removed bin, in bin order."""
    names = bins.layout.names
    for b, reason in zip(goodBins.badIndices, goodBins.badReasons):
        yield (
            names[int(bins.chroms[b])],
            int(bins.starts[b]),
            int(bins.ends[b]),
            reason,
        )
