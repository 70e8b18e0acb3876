# -*- coding: utf-8 -*-
r"""
strandstate core parameter and data records.

"""

import logging
from typing import Dict, List, NamedTuple, Optional, Tuple

import numpy as np
import numpy.typing as npt

logger = logging.getLogger(__name__)


STATE_LABELS: Tuple[str, str, str] = ("CC", "WC", "WW")
UNLABELLED: int = -1
FAILED: int = -2


def labelName(state: int) -> str:
    r"""Map an integer state code to the label written in output tables."""
    if state == UNLABELLED:
        return "None"
    if state == FAILED:
        return "fail"
    return STATE_LABELS[state]


class samParams(NamedTuple):
    r"""Parameters related to reading alignment (BAM/SAM/CRAM) files

    :param minMappingQuality: Minimum mapping quality (MAPQ) for reads to be counted.
    :type minMappingQuality: int
    :param samThreads: The number of threads to use for decompressing alignment files.
    :type samThreads: int
    :param chunkSize: Number of counted read starts buffered per cell before they are assigned to bins.
    :type chunkSize: int

    .. tip::

        Reads are counted by their leftmost reference position. For paired-end data, only read 1 is counted.

    """

    minMappingQuality: int = 10
    samThreads: int = 1
    chunkSize: int = 100_000


class binParams(NamedTuple):
    r"""Parameters related to partitioning the genome into bins.

    :param windowSize: Length (bp) of fixed-width bins. Ignored if `binsFile` is given.
    :type windowSize: int
    :param binsFile: A BED file of variable-width bins. Mutually exclusive with an explicitly set `windowSize`.
    :type binsFile: str, optional
    :param excludeFile: A BED file of regions to exclude. Only valid with fixed-width bins: any bin
        overlapping an excluded region (even partially) is omitted.
    :type excludeFile: str, optional
    """

    windowSize: int = 1_000_000
    binsFile: Optional[str] = None
    excludeFile: Optional[str] = None


class filterParams(NamedTuple):
    r"""Parameters related to bin quality filtering.

    A bin is kept iff its mean normalized count across cells, :math:`m_b`, satisfies
    :math:`\textsf{minBinMean} < m_b < \mu + \textsf{maxSDs} \cdot \sigma`, where
    :math:`\mu, \sigma` are the mean and standard deviation of all :math:`m_b`.

    :param minBinMean: Lower bound on the mean normalized count.
    :type minBinMean: float
    :param maxSDs: Number of standard deviations above the mean of bin means for the upper bound.
    :type maxSDs: float
    """

    minBinMean: float = 0.01
    maxSDs: float = 3.0


class hmmParams(NamedTuple):
    r"""Parameters related to the strand-state HMM.

    :param initialProbs: Initial state distribution over (CC, WC, WW).
    :type initialProbs: Tuple[float, float, float]
    :param expectedTransitions: Expected number of state changes per cell, genome-wide. The off-diagonal
        transition probability is ``expectedTransitions / totalBinCount``.
    :type expectedTransitions: float
    :param zeroBinMean: Size parameter of the negative binomial in the non-dominant channel of the
        homozygous states (CC, WW).
    :type zeroBinMean: float
    :param numWorkers: Number of processes used to decode cells. ``1`` decodes in the calling process.
    :type numWorkers: int
    """

    initialProbs: Tuple[float, float, float] = (1.0 / 3.0, 1.0 / 3.0, 1.0 / 3.0)
    expectedTransitions: float = 10.0
    zeroBinMean: float = 0.5
    numWorkers: int = 1


class outputParams(NamedTuple):
    r"""Parameters related to output files.

    :param countsFile: Path of the primary per-cell, per-bin table.
    :type countsFile: str
    :param cellInfoFile: If given, write a per-cell summary (median count and read tallies).
    :type cellInfoFile: str, optional
    :param sampleInfoFile: If given, write a per-sample summary (fitted `p`, cell means and variances).
    :type sampleInfoFile: str, optional
    :param removedBinsFile: If given, write filtered-out bins as BED with a reason code (`l` or `h`).
    :type removedBinsFile: str, optional
    """

    countsFile: str = "out.txt"
    cellInfoFile: Optional[str] = None
    sampleInfoFile: Optional[str] = None
    removedBinsFile: Optional[str] = None


class GenomeLayout(NamedTuple):
    r"""Chromosome names and lengths in alignment header order."""

    names: Tuple[str, ...]
    lengths: Tuple[int, ...]

    def chromIndex(self) -> Dict[str, int]:
        return {name: i for i, name in enumerate(self.names)}

    @property
    def numChroms(self) -> int:
        return len(self.names)


class GenomeBins(NamedTuple):
    r"""Ordered, half-open, non-overlapping genomic bins.

    :param layout: The genome layout the bins refer to.
    :type layout: GenomeLayout
    :param chroms: Chromosome index (into `layout`) of each bin.
    :type chroms: npt.NDArray[np.int32]
    :param starts: Start of each bin (0-based, inclusive).
    :type starts: npt.NDArray[np.int64]
    :param ends: End of each bin (exclusive).
    :type ends: npt.NDArray[np.int64]
    :param chromMap: ``len(layout) + 1`` entries; bins of chromosome ``c`` are ``chromMap[c]:chromMap[c+1]``.
        The last entry equals the total number of bins.
    :type chromMap: npt.NDArray[np.int64]
    """

    layout: GenomeLayout
    chroms: npt.NDArray[np.int32]
    starts: npt.NDArray[np.int64]
    ends: npt.NDArray[np.int64]
    chromMap: npt.NDArray[np.int64]

    @property
    def numBins(self) -> int:
        return int(self.starts.size)

    def chromRange(self, chrom: int) -> Tuple[int, int]:
        return int(self.chromMap[chrom]), int(self.chromMap[chrom + 1])


class CellInfo(NamedTuple):
    r"""Per-cell identity and read tallies.

    The tallies follow the classification order of :func:`strandstate.counting.classifyRead`:
    `numMapped` counts every mapped record, the remaining tallies are disjoint.
    """

    cellId: int
    cellName: str
    path: str
    sampleName: str
    medianBinCount: float = 0.0
    numMapped: int = 0
    numSupplementary: int = 0
    numDuplicates: int = 0
    numLowMapq: int = 0
    numRead2: int = 0
    numCounted: int = 0


class CellCounts(NamedTuple):
    r"""A cell's Watson/Crick counts aligned with :class:`GenomeBins`, and its per-bin states.

    `states` holds ``UNLABELLED`` until decoding assigns an index into :data:`STATE_LABELS`
    (or ``FAILED``).
    """

    info: CellInfo
    watson: npt.NDArray[np.int64]
    crick: npt.NDArray[np.int64]
    states: npt.NDArray[np.int8]

    @property
    def totals(self) -> npt.NDArray[np.int64]:
        return self.watson + self.crick


class SampleInfo(NamedTuple):
    r"""Per-sample moments and fitted dispersion parameter.

    :param means: Good-bin mean of Watson+Crick, one per member cell (input order).
    :param vars: Good-bin population variance of Watson+Crick, one per member cell.
    :param cellIds: Identifiers of the member cells, aligned with `means`/`vars`.
    :param p: Method-of-moments negative binomial parameter.
    :param error: If the fit is invalid, a description of why. `None` otherwise.
    """

    means: List[float]
    vars: List[float]
    cellIds: List[int]
    p: float = float("nan")
    error: Optional[str] = None

    @property
    def valid(self) -> bool:
        return self.error is None


class GoodBins(NamedTuple):
    r"""Bins retained by quality filtering.

    :param indices: Strictly increasing indices into :class:`GenomeBins`.
    :param goodMap: Chromosome index over `indices`, built like :attr:`GenomeBins.chromMap`.
    :param badIndices: Indices of removed bins, increasing.
    :param badReasons: One reason code per removed bin: ``'l'`` (low) or ``'h'`` (high).
    :param binMeans: Mean normalized count of every bin.
    :param binVariances: Variance of normalized count of every bin.
    """

    indices: npt.NDArray[np.int64]
    goodMap: npt.NDArray[np.int64]
    badIndices: npt.NDArray[np.int64]
    badReasons: List[str]
    binMeans: npt.NDArray[np.float64]
    binVariances: npt.NDArray[np.float64]

    def chromRange(self, chrom: int) -> Tuple[int, int]:
        return int(self.goodMap[chrom]), int(self.goodMap[chrom + 1])


def buildChromMap(chroms: np.ndarray, numChroms: int) -> npt.NDArray[np.int64]:
    r"""Index of the first entry of each chromosome in a chromosome-sorted array, plus a sentinel.

    Chromosomes without entries get an empty range, so the result is non-decreasing.
    """
    chroms_ = np.asarray(chroms, dtype=np.int64)
    if chroms_.size > 1 and np.any(np.diff(chroms_) < 0):
        raise ValueError("entries must be sorted by chromosome")
    return np.searchsorted(
        chroms_, np.arange(numChroms + 1, dtype=np.int64), side="left"
    ).astype(np.int64)


def medianCount(values: np.ndarray) -> float:
    r"""Median of a finite multiset, averaging the two middle values for even sizes."""
    values_ = np.asarray(values)
    if values_.size == 0:
        return 0.0
    return float(np.median(values_))
