# -*- coding: utf-8 -*-
r"""
Genome layout, bin construction and bin lookup.

Bins are half-open ``[start, end)`` intervals, sorted by chromosome (in alignment
header order) and then by start. Each chromosome's bins occupy a contiguous range
``chromMap[c]:chromMap[c+1]`` of the bin arrays.
"""

import logging
import os
from typing import Dict, List, Optional, Tuple

import numpy as np
import numpy.typing as npt
import pybedtools as bed
import pysam
from pybedtools.cbedtools import MalformedBedLineError

from .core import GenomeBins, GenomeLayout, binParams, buildChromMap, medianCount
from .exceptions import ConfigError

logger = logging.getLogger(__name__)


def getGenomeLayout(header: pysam.AlignmentHeader) -> GenomeLayout:
    r"""Build the chromosome names and lengths from an alignment header.

    :param header: Header of an opened alignment file.
    :type header: pysam.AlignmentHeader
    :return: Chromosome names and lengths in header order.
    :rtype: GenomeLayout
    """
    return GenomeLayout(
        names=tuple(str(name) for name in header.references),
        lengths=tuple(int(length) for length in header.lengths),
    )


def readBedIntervals(
    bedFile: str, layout: GenomeLayout
) -> List[Tuple[int, int, int]]:
    r"""Read the first three columns of a BED file and validate them against `layout`.

    :param bedFile: Path to a BED file.
    :type bedFile: str
    :param layout: Genome layout from the alignment header.
    :type layout: GenomeLayout
    :return: ``(chromIndex, start, end)`` for every entry, in file order.
    :rtype: List[Tuple[int, int, int]]
    :raises ConfigError: If the file is missing or an entry is malformed, references an
        unknown chromosome, is empty, or extends past the end of its chromosome.
    """
    if not os.path.exists(bedFile):
        raise ConfigError(f"Could not find {bedFile}")
    chromIndex = layout.chromIndex()
    entries: List[Tuple[int, int, int]] = []
    try:
        for lineNum, feature in enumerate(bed.BedTool(str(bedFile)), start=1):
            chrom = feature.chrom
            start, end = int(feature.start), int(feature.end)
            if chrom not in chromIndex:
                raise ConfigError(
                    f"{bedFile} (entry {lineNum}): chromosome {chrom} is not in the alignment header"
                )
            c = chromIndex[chrom]
            if start < 0 or end <= start:
                raise ConfigError(
                    f"{bedFile} (entry {lineNum}): invalid interval {chrom}:{start}-{end}"
                )
            if end > layout.lengths[c]:
                raise ConfigError(
                    f"{bedFile} (entry {lineNum}): {chrom}:{start}-{end} exceeds chromosome length {layout.lengths[c]}"
                )
            entries.append((c, start, end))
    except ConfigError:
        raise
    except MalformedBedLineError as ex:
        raise ConfigError(f"Malformed line in {bedFile}: {ex}") from ex
    except (ValueError, IndexError) as ex:
        raise ConfigError(f"Could not parse {bedFile}: {ex}") from ex
    return entries


def mergeIntervals(
    entries: List[Tuple[int, int, int]], numChroms: int
) -> Dict[int, Tuple[npt.NDArray[np.int64], npt.NDArray[np.int64]]]:
    r"""Sort and merge overlapping or book-ended intervals per chromosome.

    :return: ``{chromIndex: (starts, ends)}`` with disjoint, sorted intervals.
    """
    merged: Dict[int, Tuple[np.ndarray, np.ndarray]] = {}
    for c in range(numChroms):
        spans = sorted((s, e) for (c_, s, e) in entries if c_ == c)
        if not spans:
            continue
        starts: List[int] = []
        ends: List[int] = []
        for s, e in spans:
            if starts and s <= ends[-1]:
                ends[-1] = max(ends[-1], e)
            else:
                starts.append(s)
                ends.append(e)
        merged[c] = (
            np.asarray(starts, dtype=np.int64),
            np.asarray(ends, dtype=np.int64),
        )
    return merged


def readExcludeFile(bedFile: str, layout: GenomeLayout):
    r"""Read, validate, sort and merge excluded regions.

    :seealso: :func:`readBedIntervals`, :func:`mergeIntervals`
    """
    return mergeIntervals(readBedIntervals(bedFile, layout), layout.numChroms)


def _overlapMask(
    binStarts: np.ndarray,
    binEnds: np.ndarray,
    exStarts: np.ndarray,
    exEnds: np.ndarray,
) -> npt.NDArray[np.bool_]:
    # exclusions are sorted and disjoint: the first one ending after a bin's
    # start is the only candidate for overlap
    if exStarts.size == 0:
        return np.zeros(binStarts.size, dtype=np.bool_)
    idx = np.searchsorted(exEnds, binStarts, side="right")
    hasCandidate = idx < exStarts.size
    candidateStarts = exStarts[np.minimum(idx, exStarts.size - 1)]
    return hasCandidate & (candidateStarts < binEnds)


def createFixedBins(
    layout: GenomeLayout,
    windowSize: int,
    exclude: Optional[Dict[int, Tuple[np.ndarray, np.ndarray]]] = None,
) -> GenomeBins:
    r"""Partition every chromosome into consecutive windows of `windowSize` bp.

    The last window of a chromosome may be shorter. Windows that overlap an excluded
    region at all are omitted.

    :param layout: Genome layout from the alignment header.
    :type layout: GenomeLayout
    :param windowSize: See :class:`binParams`.
    :type windowSize: int
    :param exclude: Merged excluded regions, see :func:`readExcludeFile`.
    :return: The bins and chromosome index.
    :rtype: GenomeBins
    """
    if windowSize <= 0:
        raise ConfigError(f"Window size must be positive, got {windowSize}")
    exclude = exclude or {}
    chromList: List[np.ndarray] = []
    startList: List[np.ndarray] = []
    endList: List[np.ndarray] = []
    for c, chromLength in enumerate(layout.lengths):
        starts = np.arange(0, chromLength, windowSize, dtype=np.int64)
        ends = np.minimum(starts + windowSize, chromLength).astype(np.int64)
        if c in exclude:
            keep = ~_overlapMask(starts, ends, *exclude[c])
            starts, ends = starts[keep], ends[keep]
        chromList.append(np.full(starts.size, c, dtype=np.int32))
        startList.append(starts)
        endList.append(ends)
    return _assemble(layout, chromList, startList, endList)


def readDynamicBins(bedFile: str, layout: GenomeLayout) -> GenomeBins:
    r"""Read variable-width bins from a BED file.

    Chromosomes may appear in any order in the file, but within a chromosome the bins
    must be sorted by start and must not overlap.

    :param bedFile: See :class:`binParams`.
    :type bedFile: str
    :param layout: Genome layout from the alignment header.
    :type layout: GenomeLayout
    :raises ConfigError: If the file cannot be parsed, references an unknown chromosome,
        or contains unsorted/overlapping bins.
    """
    entries = readBedIntervals(bedFile, layout)
    if not entries:
        raise ConfigError(f"No bins found in {bedFile}")
    chromList: List[np.ndarray] = []
    startList: List[np.ndarray] = []
    endList: List[np.ndarray] = []
    for c in range(layout.numChroms):
        spans = [(s, e) for (c_, s, e) in entries if c_ == c]
        starts = np.asarray([s for s, _ in spans], dtype=np.int64)
        ends = np.asarray([e for _, e in spans], dtype=np.int64)
        if starts.size > 1 and np.any(starts[1:] < ends[:-1]):
            bad = int(np.flatnonzero(starts[1:] < ends[:-1])[0])
            raise ConfigError(
                f"{bedFile}: bins on {layout.names[c]} are unsorted or overlapping "
                f"({starts[bad]}-{ends[bad]} followed by {starts[bad + 1]}-{ends[bad + 1]})"
            )
        chromList.append(np.full(starts.size, c, dtype=np.int32))
        startList.append(starts)
        endList.append(ends)
    return _assemble(layout, chromList, startList, endList)


def _assemble(layout, chromList, startList, endList) -> GenomeBins:
    chroms = (
        np.concatenate(chromList) if chromList else np.empty(0, dtype=np.int32)
    )
    starts = (
        np.concatenate(startList) if startList else np.empty(0, dtype=np.int64)
    )
    ends = np.concatenate(endList) if endList else np.empty(0, dtype=np.int64)
    return GenomeBins(
        layout=layout,
        chroms=chroms.astype(np.int32),
        starts=starts.astype(np.int64),
        ends=ends.astype(np.int64),
        chromMap=buildChromMap(chroms, layout.numChroms),
    )


def medianBinSize(bins: GenomeBins) -> float:
    r"""Median bin width in bp. Reported as a health signal only."""
    return medianCount(bins.ends - bins.starts)


def makeBins(binArgs: binParams, layout: GenomeLayout) -> GenomeBins:
    r"""Build bins either from `binArgs.binsFile` or as fixed windows of `binArgs.windowSize`.

    :seealso: :func:`readDynamicBins`, :func:`createFixedBins`
    """
    if binArgs.binsFile:
        if binArgs.excludeFile:
            raise ConfigError(
                "Excluded regions have no effect when a bins file is given"
            )
        bins = readDynamicBins(binArgs.binsFile, layout)
        logger.info(
            f"Reading {bins.numBins} variable-width bins with median bin size of "
            f"{round(medianBinSize(bins) / 1000)}kb"
        )
        return bins

    exclude = {}
    numExcluded = 0
    if binArgs.excludeFile:
        exclude = readExcludeFile(binArgs.excludeFile, layout)
        numExcluded = sum(starts.size for starts, _ in exclude.values())
    logger.info(
        f"Creating {round(binArgs.windowSize / 1000)}kb bins with {numExcluded} excluded regions"
    )
    return createFixedBins(layout, binArgs.windowSize, exclude)


def findBin(bins: GenomeBins, chrom: int, pos: int) -> int:
    r"""Index of the bin containing `pos` on chromosome `chrom`, or ``-1``."""
    first, last = bins.chromRange(chrom)
    if first == last:
        return -1
    i = int(np.searchsorted(bins.starts[first:last], pos, side="right")) - 1
    if i < 0 or pos >= bins.ends[first + i]:
        return -1
    return first + i


def assignBins(
    bins: GenomeBins, chrom: int, positions: np.ndarray
) -> npt.NDArray[np.int64]:
    r"""Vectorized :func:`findBin` for many positions on one chromosome.

    :return: Bin index for every position, ``-1`` where no bin contains it.
    """
    positions_ = np.asarray(positions, dtype=np.int64)
    out = np.full(positions_.size, -1, dtype=np.int64)
    first, last = bins.chromRange(chrom)
    if first == last or positions_.size == 0:
        return out
    local = np.searchsorted(bins.starts[first:last], positions_, side="right") - 1
    valid = local >= 0
    candidates = first + np.maximum(local, 0)
    valid &= positions_ < bins.ends[candidates]
    out[valid] = candidates[valid]
    return out
