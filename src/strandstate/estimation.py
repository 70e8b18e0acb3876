# -*- coding: utf-8 -*-
r"""
Method-of-moments fit of the negative binomial parameter `p` per sample.

For a negative binomial with size `r` and probability `p`, ``mean = r(1-p)/p`` and
``var = mean / p``. Fitting :math:`\textsf{var}_i = \textsf{mean}_i / p` over the cells :math:`i`
of a sample by least squares in :math:`1/p` gives

.. math::

    \hat{p} = \frac{\sum_i \textsf{mean}_i^2}{\sum_i \textsf{mean}_i \cdot \textsf{var}_i}

which is closed-form and valid for a single cell.
"""

import logging
import math
from typing import Dict, Mapping, Sequence, Tuple

import numpy as np

from .core import CellCounts, GoodBins, SampleInfo
from .exceptions import EstimationError

logger = logging.getLogger(__name__)


def cellMoments(cell: CellCounts, goodBins: GoodBins) -> Tuple[float, float]:
    r"""Mean and population variance of a cell's Watson+Crick counts over good bins only."""
    totals = cell.totals[goodBins.indices].astype(np.float64)
    if totals.size == 0:
        return float("nan"), float("nan")
    return float(totals.mean()), float(totals.var())


def fitDispersion(
    sampleName: str, means: Sequence[float], variances: Sequence[float]
) -> float:
    r"""Estimate `p` from per-cell means and variances.

    :raises EstimationError: If the estimate is not finite or not in (0, 1).
    """
    means_ = np.asarray(means, dtype=np.float64)
    vars_ = np.asarray(variances, dtype=np.float64)
    with np.errstate(divide="ignore", invalid="ignore"):
        p = float(np.dot(means_, means_) / np.dot(means_, vars_))
    if not math.isfinite(p) or not (0.0 < p < 1.0):
        raise EstimationError(sampleName, p)
    return p


def estimateSampleParams(
    cells: Mapping[int, CellCounts], goodBins: GoodBins
) -> Dict[str, SampleInfo]:
    r"""Group cells by sample and fit `p` for each sample.

    A sample whose fit fails keeps its moments, and gets ``error`` set (see
    :class:`strandstate.core.SampleInfo`). The failure is logged, not raised.

    :param cells: Per-cell counts.
    :type cells: Mapping[int, CellCounts]
    :param goodBins: See :func:`strandstate.filtering.filterBins`.
    :type goodBins: GoodBins
    :return: Per-sample info keyed by sample name, in order of first appearance.
    :rtype: Dict[str, SampleInfo]
    """
    samples: Dict[str, SampleInfo] = {}
    for cellId, cell in cells.items():
        mean_, var_ = cellMoments(cell, goodBins)
        sample = samples.setdefault(
            cell.info.sampleName, SampleInfo(means=[], vars=[], cellIds=[])
        )
        sample.means.append(mean_)
        sample.vars.append(var_)
        sample.cellIds.append(cellId)

    for sampleName, sample in list(samples.items()):
        try:
            p = fitDispersion(sampleName, sample.means, sample.vars)
        except EstimationError as ex:
            logger.error(str(ex))
            samples[sampleName] = sample._replace(p=ex.p, error=str(ex))
            continue
        logger.info(
            f"Sample {sampleName}: p={p:.4g} from {len(sample.means)} cell(s)"
        )
        samples[sampleName] = sample._replace(p=p)
    return samples
