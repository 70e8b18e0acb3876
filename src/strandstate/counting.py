# -*- coding: utf-8 -*-
r"""
Reading alignment files and counting Watson/Crick read starts per bin.

Each input file holds one cell. Records are classified into read events
(see :func:`classifyRead`); only ``counted`` events contribute to bin counts,
all others only increment the cell's tallies.
"""

import logging
import os
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np
import pysam
from tqdm import tqdm

from .core import (
    UNLABELLED,
    CellCounts,
    CellInfo,
    GenomeBins,
    GenomeLayout,
    medianCount,
    samParams,
)
from .exceptions import MissingSampleTagError, OpenError
from .intervals import assignBins, getGenomeLayout

logger = logging.getLogger(__name__)


COUNTED = "counted"
LOW_MAPQ = "low-mapq"
DUPLICATE = "duplicate"
SUPPLEMENTARY = "supplementary"
READ2 = "read2"


class ReadEvent(NamedTuple):
    r"""A classified, mapped alignment record.

    :param outcome: One of ``counted``, ``low-mapq``, ``duplicate``, ``supplementary``, ``read2``.
    :param chrom: Reference name. Only meaningful for ``counted`` events.
    :param start: 0-based leftmost reference position.
    :param reverse: True if the read maps to the reverse strand (Watson).
    """

    outcome: str
    chrom: Optional[str] = None
    start: int = -1
    reverse: bool = False


def classifyRead(
    read: pysam.AlignedSegment, minMappingQuality: int
) -> Optional[ReadEvent]:
    r"""Classify an alignment record. Unmapped records yield `None`.

    The first matching rule wins: secondary/QC-fail/supplementary, duplicate,
    low mapping quality, second read of a pair, else counted.

    :param read: An alignment record.
    :type read: pysam.AlignedSegment
    :param minMappingQuality: See :class:`samParams`.
    :type minMappingQuality: int
    """
    if read.is_unmapped:
        return None
    if read.is_secondary or read.is_qcfail or read.is_supplementary:
        return ReadEvent(SUPPLEMENTARY)
    if read.is_duplicate:
        return ReadEvent(DUPLICATE)
    if read.mapping_quality < minMappingQuality:
        return ReadEvent(LOW_MAPQ)
    if read.is_read2:
        return ReadEvent(READ2)
    return ReadEvent(
        COUNTED, read.reference_name, read.reference_start, read.is_reverse
    )


def getSampleName(header: pysam.AlignmentHeader, path: str) -> str:
    r"""Return the single sample name (``SM``) found in the header's read groups.

    :raises MissingSampleTagError: If there is no ``SM`` tag, or more than one distinct value.
    """
    headerDict = header.to_dict()
    found = sorted(
        {str(rg["SM"]) for rg in headerDict.get("RG", []) if "SM" in rg}
    )
    if len(found) != 1:
        raise MissingSampleTagError(path, found)
    return found[0]


class AlignmentReader:
    r"""Scoped, sequential access to one alignment file.

    Use as a context manager; the file is closed on exit, including on errors.

    .. code-block:: python

        with AlignmentReader("cell1.bam") as reader:
            sampleName = reader.sampleName()
            for event in reader.events(minMappingQuality=10):
                ...

    """

    def __init__(self, path: str, samThreads: int = 1):
        self.path = str(path)
        self.samThreads = samThreads
        self._handle: Optional[pysam.AlignmentFile] = None

    def __enter__(self) -> "AlignmentReader":
        if not os.path.exists(self.path):
            raise OpenError(self.path, "file does not exist")
        try:
            self._handle = pysam.AlignmentFile(
                self.path, "r", threads=self.samThreads
            )
        except (OSError, ValueError) as ex:
            raise OpenError(self.path, str(ex)) from ex
        return self

    def __exit__(self, excType, excValue, traceback) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    @property
    def header(self) -> pysam.AlignmentHeader:
        if self._handle is None:
            raise RuntimeError(f"{self.path} is not open")
        return self._handle.header

    def layout(self) -> GenomeLayout:
        return getGenomeLayout(self.header)

    def sampleName(self) -> str:
        return getSampleName(self.header, self.path)

    def events(self, minMappingQuality: int) -> Iterator[ReadEvent]:
        r"""Yield a :class:`ReadEvent` for every mapped record, in file order.

        :raises OpenError: If the file turns out to be truncated or corrupt while reading.
        """
        if self._handle is None:
            raise RuntimeError(f"{self.path} is not open")
        try:
            for read in self._handle:
                event = classifyRead(read, minMappingQuality)
                if event is not None:
                    yield event
        except (OSError, ValueError) as ex:
            raise OpenError(self.path, str(ex)) from ex


def scanHeaders(
    paths: Sequence[str], samThreads: int = 1
) -> Tuple[GenomeLayout, List[str]]:
    r"""Read the sample name of every input file and the genome layout of the first.

    Any failure here is fatal to the run.

    :return: The genome layout and one sample name per path.
    :raises OpenError: If a file cannot be opened.
    :raises MissingSampleTagError: If a file does not have exactly one sample name.
    """
    if len(paths) == 0:
        raise ValueError("No alignment files given")
    layout: Optional[GenomeLayout] = None
    sampleNames: List[str] = []
    for path in paths:
        with AlignmentReader(path, samThreads) as reader:
            sampleNames.append(reader.sampleName())
            if layout is None:
                layout = reader.layout()
            elif reader.layout() != layout:
                logger.warning(
                    f"{path}: reference sequences differ from {paths[0]}; "
                    f"reads on chromosomes absent from {paths[0]} are ignored"
                )
    return layout, sampleNames


class _BinAccumulator:
    r"""Buffers read starts per chromosome and assigns them to bins in chunks."""

    def __init__(self, bins: GenomeBins, chunkSize: int):
        self.bins = bins
        self.chunkSize = max(1, int(chunkSize))
        self.chromIndex = bins.layout.chromIndex()
        self.watson = np.zeros(bins.numBins, dtype=np.int64)
        self.crick = np.zeros(bins.numBins, dtype=np.int64)
        self.numCounted = 0
        self._buffer: Dict[str, Tuple[List[int], List[bool]]] = {}
        self._size = 0

    def add(self, chrom: str, start: int, reverse: bool) -> None:
        starts, strands = self._buffer.setdefault(chrom, ([], []))
        starts.append(start)
        strands.append(reverse)
        self._size += 1
        if self._size >= self.chunkSize:
            self.flush()

    def flush(self) -> None:
        numBins = self.bins.numBins
        for chrom, (starts, strands) in self._buffer.items():
            c = self.chromIndex.get(chrom)
            if c is None:
                continue
            idx = assignBins(self.bins, c, np.asarray(starts, dtype=np.int64))
            reverse = np.asarray(strands, dtype=np.bool_)
            inBin = idx >= 0
            self.watson += np.bincount(idx[inBin & reverse], minlength=numBins)
            self.crick += np.bincount(idx[inBin & ~reverse], minlength=numBins)
            self.numCounted += int(np.count_nonzero(inBin))
        self._buffer = {}
        self._size = 0


def countEvents(
    events: Iterable[ReadEvent],
    bins: GenomeBins,
    info: CellInfo,
    chunkSize: int = 100_000,
) -> CellCounts:
    r"""Accumulate a cell's read events into per-bin Watson/Crick counts.

    Reverse-strand ``counted`` events are Watson reads, forward-strand events are Crick reads.
    ``counted`` events outside every bin are discarded and not tallied.

    :param events: Classified read events of one cell.
    :type events: Iterable[ReadEvent]
    :param bins: See :func:`strandstate.intervals.makeBins`.
    :type bins: GenomeBins
    :param info: The cell's identity. Tallies and median count are filled in.
    :type info: CellInfo
    :param chunkSize: See :class:`samParams`.
    :type chunkSize: int
    :return: The cell's counts, with every state ``UNLABELLED``.
    :rtype: CellCounts
    """
    tallies = {SUPPLEMENTARY: 0, DUPLICATE: 0, LOW_MAPQ: 0, READ2: 0}
    numMapped = 0
    accumulator = _BinAccumulator(bins, chunkSize)
    for event in events:
        numMapped += 1
        if event.outcome == COUNTED:
            accumulator.add(event.chrom, event.start, event.reverse)
        elif event.outcome in tallies:
            tallies[event.outcome] += 1
        else:
            raise ValueError(f"Unknown read event outcome: {event.outcome}")
    accumulator.flush()

    watson, crick = accumulator.watson, accumulator.crick
    info = info._replace(
        medianBinCount=medianCount(watson + crick),
        numMapped=numMapped,
        numSupplementary=tallies[SUPPLEMENTARY],
        numDuplicates=tallies[DUPLICATE],
        numLowMapq=tallies[LOW_MAPQ],
        numRead2=tallies[READ2],
        numCounted=accumulator.numCounted,
    )
    return CellCounts(
        info=info,
        watson=watson,
        crick=crick,
        states=np.full(bins.numBins, UNLABELLED, dtype=np.int8),
    )


def countCell(
    path: str, cellId: int, bins: GenomeBins, samArgs: samParams
) -> CellCounts:
    r"""Open one alignment file, read its sample name, and count its reads.

    :raises OpenError: If the file cannot be opened or read.
    :raises MissingSampleTagError: If the file has no unique sample name.
    """
    with AlignmentReader(path, samArgs.samThreads) as reader:
        info = CellInfo(
            cellId=cellId,
            cellName=Path(path).stem,
            path=str(path),
            sampleName=reader.sampleName(),
        )
        return countEvents(
            reader.events(samArgs.minMappingQuality),
            bins,
            info,
            samArgs.chunkSize,
        )


def countCells(
    paths: Sequence[str], bins: GenomeBins, samArgs: samParams
) -> Dict[int, CellCounts]:
    r"""Count every input file. Files that cannot be read are dropped with a warning.

    :param paths: Alignment files, one cell each. A cell's identifier is its position in `paths`.
    :type paths: Sequence[str]
    :return: Counts of the readable cells keyed by cell identifier, in input order.
    :rtype: Dict[int, CellCounts]
    """
    cells: Dict[int, CellCounts] = {}
    for cellId, path in tqdm(
        enumerate(paths),
        desc="Counting reads",
        unit=" files",
        total=len(paths),
    ):
        try:
            cells[cellId] = countCell(path, cellId, bins, samArgs)
        except (OpenError, MissingSampleTagError) as ex:
            logger.warning(f"Ignoring cell {path}: {ex}")
    return cells
