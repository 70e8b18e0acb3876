# -*- coding: utf-8 -*-
import numpy as np
import pytest

from strandstate.core import GenomeLayout, filterParams
from strandstate.intervals import createFixedBins
from strandstate import filtering


def test_all_zero_bin_is_low(toy_bins, make_cell):
    watson = np.array([5, 6, 4, 0, 5, 6, 4, 5, 6, 4, 5, 6, 4, 5, 6])
    cells = {0: make_cell(0, watson, watson), 1: make_cell(1, watson, watson)}
    goodBins = filtering.filterBins(cells, toy_bins)
    assert list(goodBins.badIndices) == [3]
    assert goodBins.badReasons == ["l"]
    assert 3 not in goodBins.indices
    assert list(goodBins.goodMap) == [0, 9, 14]
    # totals are [10, 12, 8, 0, ...] with median 10
    assert goodBins.binMeans[0] == pytest.approx(1.0)
    assert goodBins.binMeans[1] == pytest.approx(1.2)
    assert goodBins.binVariances[0] == pytest.approx(0.0)


def test_outlier_bin_is_high(make_cell):
    layout = GenomeLayout(names=("chr1",), lengths=(31_000,))
    bins = createFixedBins(layout, 1000)
    totals = np.full(bins.numBins, 10)
    totals[30] = 1000
    cells = {0: make_cell(0, totals, np.zeros_like(totals))}
    goodBins = filtering.filterBins(cells, bins)
    assert list(goodBins.badIndices) == [30]
    assert goodBins.badReasons == ["h"]
    assert goodBins.indices.size == 30


def test_good_and_bad_partition_all_bins(toy_bins, make_cell):
    rng = np.random.default_rng(1)
    cells = {
        i: make_cell(i, rng.poisson(5, toy_bins.numBins), rng.poisson(5, toy_bins.numBins))
        for i in range(4)
    }
    cells[0].watson[7] = 0
    goodBins = filtering.filterBins(cells, toy_bins, filterParams(minBinMean=0.01, maxSDs=1.0))
    combined = np.concatenate([goodBins.indices, goodBins.badIndices])
    assert sorted(combined) == list(range(toy_bins.numBins))
    assert np.all(np.diff(goodBins.indices) > 0)
    assert len(goodBins.badReasons) == goodBins.badIndices.size
    assert goodBins.goodMap[-1] == goodBins.indices.size


def test_variance_is_population_variance(toy_bins, make_cell):
    zeros = np.zeros(toy_bins.numBins, dtype=np.int64)
    a = np.full(toy_bins.numBins, 4)
    b = np.full(toy_bins.numBins, 4)
    b[0] = 12  # normalized 3.0 against 1.0
    cells = {0: make_cell(0, a, zeros), 1: make_cell(1, b, zeros)}
    means, variances = filtering.getBinStatistics(cells, toy_bins.numBins)
    assert means[0] == pytest.approx(2.0)
    assert variances[0] == pytest.approx(1.0)


def test_zero_median_cell_left_out(toy_bins, make_cell, caplog):
    counts = np.arange(1, toy_bins.numBins + 1)
    empty = np.zeros(toy_bins.numBins, dtype=np.int64)
    alone = filtering.getBinStatistics({0: make_cell(0, counts, counts)}, toy_bins.numBins)
    with caplog.at_level("WARNING"):
        withEmpty = filtering.getBinStatistics(
            {0: make_cell(0, counts, counts), 1: make_cell(1, empty, empty, cellName="empty")},
            toy_bins.numBins,
        )
    assert np.allclose(alone[0], withEmpty[0])
    assert np.allclose(alone[1], withEmpty[1])
    assert "empty" in caplog.text


def test_no_normalizable_cell_removes_everything(toy_bins, make_cell):
    empty = np.zeros(toy_bins.numBins, dtype=np.int64)
    goodBins = filtering.filterBins({0: make_cell(0, empty, empty)}, toy_bins)
    assert goodBins.indices.size == 0
    assert set(goodBins.badReasons) == {"l"}
    assert list(goodBins.goodMap) == [0, 0, 0]


def test_iter_removed_bins(toy_bins, make_cell):
    watson = np.full(toy_bins.numBins, 5)
    watson[[2, 12]] = 0
    goodBins = filtering.filterBins({0: make_cell(0, watson, watson)}, toy_bins)
    assert list(filtering.iterRemovedBins(toy_bins, goodBins)) == [
        ("chr1", 2000, 3000, "l"),
        ("chr2", 2000, 3000, "l"),
    ]
