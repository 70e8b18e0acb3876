# -*- coding: utf-8 -*-
import numpy as np
import pandas as pd

from strandstate.core import FAILED, UNLABELLED, SampleInfo
from strandstate import filtering, reports


def test_state_labels():
    states = np.array([0, 1, 2, UNLABELLED, FAILED], dtype=np.int8)
    assert list(reports.stateLabels(states)) == ["CC", "WC", "WW", "None", "fail"]


def test_count_table(toy_bins, make_cell):
    ones = np.ones(toy_bins.numBins, dtype=np.int64)
    a = make_cell(0, ones * 2, ones, cellName="a")
    b = make_cell(1, ones, ones * 3, sampleName="S2", cellName="b")
    a.states[:] = 1
    a.states[3] = UNLABELLED
    table = reports.countTable(toy_bins, {0: a, 1: b})
    assert list(table.columns) == reports.COUNT_TABLE_COLUMNS
    assert len(table) == 2 * toy_bins.numBins
    first = table.iloc[0]
    assert (first["chrom"], first["start"], first["end"]) == ("chr1", 0, 1000)
    assert (first["sample"], first["cell"], first["c"], first["w"]) == ("S1", "a", 1, 2)
    assert first["class"] == "WC"
    assert table.iloc[3]["class"] == "None"
    last = table.iloc[-1]
    assert (last["chrom"], last["start"], last["end"], last["cell"]) == ("chr2", 4000, 5000, "b")
    assert last["c"] == 3 and last["w"] == 1


def test_write_count_table(tmp_path, toy_bins, make_cell):
    ones = np.ones(toy_bins.numBins, dtype=np.int64)
    path = tmp_path / "counts.txt"
    reports.writeCountTable(str(path), toy_bins, {0: make_cell(0, ones, ones)})
    lines = path.read_text().splitlines()
    assert lines[0] == "chrom\tstart\tend\tsample\tcell\tc\tw\tclass"
    assert lines[1] == "chr1\t0\t1000\tS1\tcell0\t1\t1\tNone"
    assert len(lines) == toy_bins.numBins + 1
    table = pd.read_csv(path, sep="\t", keep_default_na=False)
    assert set(table["class"]) == {"None"}


def test_write_cell_info_sorted_by_sample(tmp_path, toy_bins, make_cell):
    ones = np.ones(toy_bins.numBins, dtype=np.int64)
    cells = {
        0: make_cell(0, ones, ones, sampleName="S2", cellName="x"),
        1: make_cell(1, ones, ones * 2, sampleName="S1", cellName="y"),
        2: make_cell(2, ones, ones, sampleName="S1", cellName="z"),
    }
    cells[1] = cells[1]._replace(
        info=cells[1].info._replace(numMapped=60, numSupplementary=4, numDuplicates=3, numLowMapq=2, numRead2=1, numCounted=45)
    )
    path = tmp_path / "info.txt"
    reports.writeCellInfo(str(path), cells)
    lines = path.read_text().splitlines()
    assert lines[: len(reports.CELL_INFO_COMMENTS)] == reports.CELL_INFO_COMMENTS
    rows = lines[len(reports.CELL_INFO_COMMENTS) :]
    assert rows[0] == "sample\tcell\tmedbin\tmapped\tsuppl\tdupl\tmapq\tread2\tgood"
    assert [row.split("\t")[1] for row in rows[1:]] == ["y", "z", "x"]
    assert rows[1] == "S1\ty\t3\t60\t4\t3\t2\t1\t45"


def test_write_sample_info(tmp_path):
    samples = {
        "S1": SampleInfo(means=[10.0, 12.5], vars=[30.0, 40.25], cellIds=[0, 1], p=0.3125),
        "S2": SampleInfo(means=[5.0], vars=[0.0], cellIds=[2], p=float("inf"), error="degenerate"),
    }
    path = tmp_path / "samples.txt"
    reports.writeSampleInfo(str(path), samples)
    assert path.read_text().splitlines() == [
        "sample\tcells\tp\tmeans\tvars",
        "S1\t2\t0.3125\t10,12.5\t30,40.25",
        "S2\t1\tinf\t5\t0",
        "# FAILED S2: degenerate",
    ]


def test_write_removed_bins(tmp_path, toy_bins, make_cell):
    watson = np.full(toy_bins.numBins, 5)
    watson[[2, 12]] = 0
    goodBins = filtering.filterBins({0: make_cell(0, watson, watson)}, toy_bins)
    path = tmp_path / "removed.bed"
    reports.writeRemovedBins(str(path), toy_bins, goodBins)
    assert path.read_text().splitlines() == [
        "chr1\t2000\t3000\tl",
        "chr2\t2000\t3000\tl",
    ]
