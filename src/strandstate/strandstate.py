#!/usr/bin/env python
# -*- coding: utf-8 -*-

import argparse
import glob
import logging
import pprint
import sys
from pathlib import Path
from collections.abc import Mapping
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import yaml

import strandstate.core as core
import strandstate.counting as counting
import strandstate.estimation as estimation
import strandstate.filtering as filtering
import strandstate.hmm as hmm
import strandstate.intervals as intervals
import strandstate.reports as reports
from strandstate.exceptions import ConfigError, MissingSampleTagError, OpenError


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(module)s.%(funcName)s -  %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


def _loadConfig(
    configSource: Union[str, Path, Mapping[str, Any], None],
) -> Dict[str, Any]:
    r"""Load a YAML config from a path or accept an already-parsed mapping.

    `None` gives an empty config.
    """
    if configSource is None:
        return {}
    if isinstance(configSource, Mapping):
        configData = configSource
    elif isinstance(configSource, (str, Path)):
        try:
            with open(configSource, "r") as fileHandle:
                configData = yaml.safe_load(fileHandle) or {}
        except OSError as ex:
            raise ConfigError(f"Cannot read config file {configSource}: {ex}") from ex
        except yaml.YAMLError as ex:
            raise ConfigError(f"Cannot parse config file {configSource}: {ex}") from ex
    else:
        raise TypeError("`config` must be a path or a mapping/dict.")

    if not isinstance(configData, Mapping):
        raise ConfigError("Top-level YAML must be a mapping/object.")
    return dict(configData)


def _cfgGet(
    configMap: Mapping[str, Any],
    dottedKey: str,
    defaultVal: Any = None,
) -> Any:
    r"""Support both dotted keys and yaml/dict-style nested access for configs."""

    # e.g., samParams.minMappingQuality
    if dottedKey in configMap:
        return configMap[dottedKey]

    # e.g.,
    # samParams:
    #   minMappingQuality: 10
    currentVal: Any = configMap
    for keyPart in dottedKey.split("."):
        if isinstance(currentVal, Mapping) and keyPart in currentVal:
            currentVal = currentVal[keyPart]
        else:
            return defaultVal
    return currentVal


def _cfgGetTyped(
    configMap: Mapping[str, Any],
    dottedKey: str,
    defaultVal: Any,
    cast: Callable[[Any], Any],
) -> Any:
    r"""Like :func:`_cfgGet`, converting the value with `cast`. A null value gives `defaultVal`.

    :raises ConfigError: If the value cannot be converted.
    """
    value = _cfgGet(configMap, dottedKey, defaultVal)
    if value is None:
        return defaultVal
    try:
        return cast(value)
    except (TypeError, ValueError) as ex:
        raise ConfigError(f"Invalid value for {dottedKey}: {value!r} ({ex})") from ex


def expandWildCards(bamList: Sequence[str]) -> List[str]:
    expandedList: List[str] = []
    for bamEntry in bamList:
        if "*" in bamEntry or "?" in bamEntry or "[" in bamEntry:
            expandedList.extend(sorted(glob.glob(bamEntry)))
        else:
            expandedList.append(bamEntry)
    return expandedList


def readConfig(
    configSource: Union[str, Path, Mapping[str, Any], None] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    r"""Read and validate the run configuration.

    :param configSource: Path to a YAML config file, an already-parsed mapping, or `None`.
    :param overrides: Dotted keys (e.g. ``samParams.minMappingQuality``) taking precedence over
        `configSource`. `None` values are ignored.
    :return: Dictionary with the input files and one parameter record per group.
    :raises ConfigError: If options conflict or are out of range.
    """
    configData = _loadConfig(configSource)
    for key, value in (overrides or {}).items():
        if value is not None:
            configData[key] = value

    bamFiles = expandWildCards(
        list(_cfgGet(configData, "inputParams.bamFiles", []) or [])
    )
    if len(bamFiles) == 0:
        raise ConfigError("No alignment files given")

    windowSize = _cfgGetTyped(configData, "binParams.windowSize", None, int)
    binsFile = _cfgGet(configData, "binParams.binsFile", None)
    excludeFile = _cfgGet(configData, "binParams.excludeFile", None)
    if windowSize is not None and binsFile:
        raise ConfigError("A window size and a bins file cannot be specified together")
    if binsFile and excludeFile:
        raise ConfigError(
            "Excluded regions have no effect when a bins file is specified"
        )
    binArgs = core.binParams(
        windowSize=windowSize if windowSize is not None else core.binParams().windowSize,
        binsFile=binsFile,
        excludeFile=excludeFile,
    )
    if binArgs.windowSize <= 0:
        raise ConfigError(f"Window size must be positive, got {binArgs.windowSize}")

    samArgs = core.samParams(
        minMappingQuality=_cfgGetTyped(configData, "samParams.minMappingQuality", 10, int),
        samThreads=_cfgGetTyped(configData, "samParams.samThreads", 1, int),
        chunkSize=_cfgGetTyped(configData, "samParams.chunkSize", 100_000, int),
    )
    if samArgs.minMappingQuality < 0:
        raise ConfigError("Minimum mapping quality must be >= 0")
    if samArgs.samThreads < 1 or samArgs.chunkSize < 1:
        raise ConfigError("samThreads and chunkSize must be >= 1")

    filterArgs = core.filterParams(
        minBinMean=_cfgGetTyped(configData, "filterParams.minBinMean", 0.01, float),
        maxSDs=_cfgGetTyped(configData, "filterParams.maxSDs", 3.0, float),
    )

    hmmArgs = core.hmmParams(
        initialProbs=_cfgGetTyped(
            configData,
            "hmmParams.initialProbs",
            core.hmmParams().initialProbs,
            lambda probs: tuple(float(x) for x in probs),
        ),
        expectedTransitions=_cfgGetTyped(
            configData, "hmmParams.expectedTransitions", 10.0, float
        ),
        zeroBinMean=_cfgGetTyped(configData, "hmmParams.zeroBinMean", 0.5, float),
        numWorkers=_cfgGetTyped(configData, "hmmParams.numWorkers", 1, int),
    )
    if len(hmmArgs.initialProbs) != 3 or abs(sum(hmmArgs.initialProbs) - 1.0) > 1e-3:
        raise ConfigError("hmmParams.initialProbs must be three probabilities summing to 1")
    if hmmArgs.expectedTransitions <= 0 or hmmArgs.zeroBinMean <= 0:
        raise ConfigError("hmmParams.expectedTransitions and hmmParams.zeroBinMean must be > 0")
    if hmmArgs.numWorkers < 1:
        raise ConfigError("hmmParams.numWorkers must be >= 1")

    outputArgs = core.outputParams(
        countsFile=str(_cfgGet(configData, "outputParams.countsFile", "out.txt")),
        cellInfoFile=_cfgGet(configData, "outputParams.cellInfoFile", None),
        sampleInfoFile=_cfgGet(configData, "outputParams.sampleInfoFile", None),
        removedBinsFile=_cfgGet(configData, "outputParams.removedBinsFile", None),
    )

    return {
        "bamFiles": bamFiles,
        "samArgs": samArgs,
        "binArgs": binArgs,
        "filterArgs": filterArgs,
        "hmmArgs": hmmArgs,
        "outputArgs": outputArgs,
    }


def _writeOptional(writer, path: Optional[str], *args) -> None:
    if not path:
        return
    try:
        writer(path, *args)
    except OSError as ex:
        logger.error(f"Cannot write to {path}: {ex}")


def runStrandState(config: Dict[str, Any]) -> int:
    r"""Run binning, counting, filtering, estimation and decoding; write outputs.

    :param config: See :func:`readConfig`.
    :return: Exit code: 0 on success, 1 if no cell could be counted, 2 if the count table cannot be written.
    :raises ConfigError: If bins cannot be built.
    :raises OpenError: If an input file cannot be opened during the header scan.
    :raises MissingSampleTagError: If an input file has no unique sample name.
    """
    bamFiles: List[str] = config["bamFiles"]
    samArgs: core.samParams = config["samArgs"]
    binArgs: core.binParams = config["binArgs"]
    filterArgs: core.filterParams = config["filterArgs"]
    hmmArgs: core.hmmParams = config["hmmArgs"]
    outputArgs: core.outputParams = config["outputArgs"]

    logger.info("Exploring SAM headers...")
    layout, _ = counting.scanHeaders(bamFiles, samArgs.samThreads)

    bins = intervals.makeBins(binArgs, layout)
    if bins.numBins == 0:
        raise ConfigError("No bins remain after binning the genome")

    logger.info(f"Reading {len(bamFiles)} alignment files...")
    cells = counting.countCells(bamFiles, bins, samArgs)
    if not cells:
        logger.error("None of the input files could be read")
        return 1
    _writeOptional(reports.writeCellInfo, outputArgs.cellInfoFile, cells)

    goodBins = filtering.filterBins(cells, bins, filterArgs)
    _writeOptional(
        reports.writeRemovedBins, outputArgs.removedBinsFile, bins, goodBins
    )

    samples = estimation.estimateSampleParams(cells, goodBins)
    _writeOptional(reports.writeSampleInfo, outputArgs.sampleInfoFile, samples)

    cells = hmm.runHMM(cells, bins, goodBins, samples, hmmArgs)

    try:
        reports.writeCountTable(outputArgs.countsFile, bins, cells)
    except OSError as ex:
        logger.error(f"Cannot open file: {outputArgs.countsFile}: {ex}")
        return 2
    return 0


def getParser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Classify genomic bins of single-cell Strand-seq data as CC, WC or WW",
        epilog="Reads are counted by start position. One cell per alignment file, with exactly "
        "one SM tag in its header. For paired-end data, only read 1 is counted.",
    )
    parser.add_argument(
        "bamFiles",
        nargs="*",
        help="Alignment files (BAM/SAM/CRAM), one per cell",
    )
    parser.add_argument(
        "--config",
        type=str,
        dest="config",
        help="Path to a YAML config file with parameters defined in `strandstate.core`. "
        "Command-line options take precedence.",
    )
    parser.add_argument(
        "-q", "--mapq", type=int, dest="mapq", help="Minimum mapping quality (default: 10)"
    )
    parser.add_argument(
        "-w",
        "--window",
        type=int,
        dest="window",
        help="Window size of fixed windows (default: 1000000)",
    )
    parser.add_argument(
        "-b",
        "--bins",
        type=str,
        dest="bins",
        help="Variable bin file (BED format, mutually exclusive with -w)",
    )
    parser.add_argument(
        "-x",
        "--exclude",
        type=str,
        dest="exclude",
        help="Regions to exclude (BED format, mutually exclusive with -b)",
    )
    parser.add_argument(
        "-o", "--out", type=str, dest="out", help="Output file for counts (default: out.txt)"
    )
    parser.add_argument(
        "-i", "--info", type=str, dest="info", help="Write info about cells"
    )
    parser.add_argument(
        "-S", "--sample-info", type=str, dest="sampleInfo", help="Write info per sample"
    )
    parser.add_argument(
        "-R",
        "--removed-bins",
        type=str,
        dest="removedBins",
        help="Write bins that were removed (BED file)",
    )
    parser.add_argument(
        "--workers",
        type=int,
        dest="workers",
        help="Number of processes for decoding cells (default: 1)",
    )
    parser.add_argument(
        "--verbose", action="store_true", help="If set, logs config"
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = getParser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as ex:
        # argparse exits with 2 on usage errors; 2 is reserved for output failures
        return 0 if ex.code in (0, None) else 1

    overrides = {
        "inputParams.bamFiles": args.bamFiles or None,
        "samParams.minMappingQuality": args.mapq,
        "binParams.windowSize": args.window,
        "binParams.binsFile": args.bins,
        "binParams.excludeFile": args.exclude,
        "outputParams.countsFile": args.out,
        "outputParams.cellInfoFile": args.info,
        "outputParams.sampleInfoFile": args.sampleInfo,
        "outputParams.removedBinsFile": args.removedBins,
        "hmmParams.numWorkers": args.workers,
    }

    try:
        config = readConfig(args.config, overrides)
    except ConfigError as ex:
        logger.error(f"{ex}")
        parser.print_usage(sys.stderr)
        return 1

    if args.verbose:
        logger.info("Configuration:\n")
        pprint.pprint(config, indent=8)

    try:
        return runStrandState(config)
    except ConfigError as ex:
        logger.error(f"{ex}")
        return 1
    except (OpenError, MissingSampleTagError) as ex:
        logger.error(f"{ex}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
