# -*- coding: utf-8 -*-
r"""
Discrete-time, finite-state hidden Markov model with multivariate count emissions.

The generic engine (:class:`HMM`) only depends on the :class:`EmissionModel`
interface: anything that maps an observation matrix to per-observation
log-likelihoods. Everything is evaluated in log space.

The strand-state model has three states, CC, WC and WW. Each state's emission is the
product of two independent negative binomials, for the Crick and the Watson count of a
bin, parameterized by the sample's `p` and the cell's median bin count.
"""

import logging
from multiprocessing import Pool
from typing import Dict, List, Mapping, NamedTuple, Optional, Protocol, Sequence, Tuple

import numpy as np
import numpy.typing as npt
from scipy import stats

from .core import (
    FAILED,
    STATE_LABELS,
    UNLABELLED,
    CellCounts,
    GenomeBins,
    GoodBins,
    SampleInfo,
    hmmParams,
)

logger = logging.getLogger(__name__)


class EmissionModel(Protocol):
    def logLikelihood(self, observations: np.ndarray) -> npt.NDArray[np.float64]:
        r"""Log-likelihood of each row of `observations` (shape ``(T, d)``). Returns shape ``(T,)``."""
        ...


class NegativeBinomial(NamedTuple):
    r"""Negative binomial with success probability `p` and size `n`.

    :math:`P(k) = \binom{k + n - 1}{k} p^n (1-p)^k`, with mean :math:`n(1-p)/p`.
    """

    p: float
    n: float

    @property
    def mean(self) -> float:
        return self.n * (1.0 - self.p) / self.p

    def logPmf(self, counts: np.ndarray) -> npt.NDArray[np.float64]:
        return stats.nbinom.logpmf(np.asarray(counts), self.n, self.p)


class MultiVariate:
    r"""Product of independent univariate distributions, one per observation column."""

    def __init__(self, components: Sequence[NegativeBinomial]):
        if len(components) == 0:
            raise ValueError("MultiVariate needs at least one component")
        self.components = tuple(components)

    def __repr__(self) -> str:
        return f"MultiVariate({list(self.components)!r})"

    def logLikelihood(self, observations: np.ndarray) -> npt.NDArray[np.float64]:
        obs = np.asarray(observations)
        if obs.ndim == 1:
            obs = obs.reshape(1, -1)
        if obs.shape[1] != len(self.components):
            raise ValueError(
                f"Observations have {obs.shape[1]} columns, expected {len(self.components)}"
            )
        out = np.zeros(obs.shape[0], dtype=np.float64)
        for j, component in enumerate(self.components):
            out += component.logPmf(obs[:, j])
        return out


class HMM:
    r"""Hidden Markov model with pluggable emissions.

    :param labels: One label per state.
    :type labels: Sequence[str]

    .. code-block:: python

        hmm = HMM(["CC", "WC", "WW"])
        hmm.setInitials([1/3, 1/3, 1/3])
        hmm.setTransitions(transitionMatrix(numBins, 10))
        hmm.setEmissions(strandStateEmissions(p, medianBinCount))
        path, logProb = hmm.viterbi(observations)

    """

    def __init__(self, labels: Sequence[str]):
        if len(labels) == 0:
            raise ValueError("An HMM needs at least one state")
        self.labels: Tuple[str, ...] = tuple(labels)
        numStates = len(self.labels)
        self.initials = np.full(numStates, 1.0 / numStates)
        self.transitions = np.full((numStates, numStates), 1.0 / numStates)
        self.emissions: Optional[List[EmissionModel]] = None

    @property
    def numStates(self) -> int:
        return len(self.labels)

    def setInitials(self, initials: Sequence[float]) -> None:
        initials_ = np.asarray(initials, dtype=np.float64)
        if initials_.shape != (self.numStates,):
            raise ValueError(
                f"Expected {self.numStates} initial probabilities, got {initials_.size}"
            )
        if np.any(initials_ < 0) or not np.isclose(initials_.sum(), 1.0, atol=1e-3):
            raise ValueError(f"Initial probabilities must sum to 1: {initials_}")
        self.initials = initials_

    def setTransitions(self, transitions: Sequence[float]) -> None:
        r"""Set the transition matrix, given either as a matrix or row-major flat sequence."""
        transitions_ = np.asarray(transitions, dtype=np.float64).reshape(
            self.numStates, self.numStates
        )
        if np.any(transitions_ < 0) or not np.allclose(
            transitions_.sum(axis=1), 1.0, atol=1e-6
        ):
            raise ValueError(
                f"Transition matrix must be row-stochastic:\n{transitions_}"
            )
        self.transitions = transitions_

    def setEmissions(self, emissions: Sequence[EmissionModel]) -> None:
        if len(emissions) != self.numStates:
            raise ValueError(
                f"Expected {self.numStates} emission models, got {len(emissions)}"
            )
        self.emissions = list(emissions)

    def withEmissions(self, emissions: Sequence[EmissionModel]) -> "HMM":
        r"""Copy of this model with other emissions. Initials and transitions are shared, read-only."""
        other = HMM.__new__(HMM)
        other.labels = self.labels
        other.initials = self.initials
        other.transitions = self.transitions
        other.emissions = None
        other.setEmissions(emissions)
        return other

    def logEmissions(self, observations: np.ndarray) -> npt.NDArray[np.float64]:
        r"""Log-likelihood of every observation under every state, shape ``(T, numStates)``."""
        if self.emissions is None:
            raise ValueError("Emissions are not set")
        return np.column_stack(
            [model.logLikelihood(observations) for model in self.emissions]
        )

    def viterbi(
        self, observations: np.ndarray
    ) -> Tuple[npt.NDArray[np.int64], float]:
        r"""Most likely state sequence for one observation sequence.

        Ties are broken towards the lower state index, so the result is deterministic.

        :param observations: Shape ``(T, d)``.
        :return: State indices of length `T` and the path's log-probability.
        """
        obs = np.asarray(observations)
        if obs.shape[0] == 0:
            return np.empty(0, dtype=np.int64), 0.0
        with np.errstate(divide="ignore"):
            logInitials = np.log(self.initials)
            logTransitions = np.log(self.transitions)
        logB = self.logEmissions(obs)

        numObs, numStates = logB.shape
        backPointers = np.zeros((numObs, numStates), dtype=np.int64)
        toStates = np.arange(numStates)
        delta = logInitials + logB[0]
        for t in range(1, numObs):
            # scores[i, j]: best path ending in i at t-1, then moving to j
            scores = delta[:, None] + logTransitions
            backPointers[t] = np.argmax(scores, axis=0)
            delta = scores[backPointers[t], toStates] + logB[t]

        path = np.empty(numObs, dtype=np.int64)
        path[-1] = int(np.argmax(delta))
        logProb = float(delta[path[-1]])
        for t in range(numObs - 1, 0, -1):
            path[t - 1] = backPointers[t, path[t]]
        return path, logProb

    def decode(
        self, observations: np.ndarray, lengths: Sequence[int]
    ) -> Tuple[npt.NDArray[np.int64], float]:
        r"""Decode concatenated, independent sequences.

        The chain restarts at each sequence boundary: the initial distribution is applied
        to the first observation of every sequence and no transition crosses a boundary.

        :param observations: Shape ``(sum(lengths), d)``.
        :param lengths: Length of each sequence.
        :return: Concatenated state paths and the summed log-probability.
        """
        obs = np.asarray(observations)
        if int(np.sum(lengths)) != obs.shape[0]:
            raise ValueError(
                f"lengths sum to {int(np.sum(lengths))}, but there are {obs.shape[0]} observations"
            )
        paths: List[np.ndarray] = []
        totalLogProb = 0.0
        offset = 0
        for length in lengths:
            path, logProb = self.viterbi(obs[offset : offset + length])
            paths.append(path)
            totalLogProb += logProb
            offset += length
        if not paths:
            return np.empty(0, dtype=np.int64), 0.0
        return np.concatenate(paths), totalLogProb


def transitionMatrix(
    numBins: int, expectedTransitions: float = 10.0
) -> npt.NDArray[np.float64]:
    r"""Three-state transition matrix with uniform off-diagonal probability.

    The off-diagonal entries are ``expectedTransitions / numBins``, the diagonal
    ``1 - 2 * offDiagonal``. With very few bins the off-diagonal probability is capped
    at 1/3 (all transitions equally likely).
    """
    if numBins <= 0:
        raise ValueError("Cannot build a transition matrix without bins")
    pTrans = float(expectedTransitions) / float(numBins)
    if pTrans > 1.0 / 3.0:
        logger.warning(
            f"Only {numBins} bins: capping transition probability {pTrans:.4g} at 1/3"
        )
        pTrans = 1.0 / 3.0
    matrix = np.full((3, 3), pTrans)
    np.fill_diagonal(matrix, 1.0 - 2.0 * pTrans)
    return matrix


def strandStateEmissions(
    p: float, medianBinCount: float, zeroBinMean: float = 0.5
) -> List[MultiVariate]:
    r"""Emission models for CC, WC and WW. Observation columns are (Crick, Watson).

    With :math:`n = \textsf{medianBinCount}/2 \cdot p/(1-p)`:

    - CC: Crick :math:`NB(p, 2n)`, Watson :math:`NB(p, z)`
    - WC: Crick :math:`NB(p, n)`, Watson :math:`NB(p, n)`
    - WW: Crick :math:`NB(p, z)`, Watson :math:`NB(p, 2n)`

    so a WC bin expects half the median count on each strand and a homozygous bin
    expects the full median count on one strand.
    """
    n = medianBinCount / 2.0 * p / (1.0 - p)
    z = zeroBinMean
    return [
        MultiVariate([NegativeBinomial(p, 2 * n), NegativeBinomial(p, z)]),  # CC
        MultiVariate([NegativeBinomial(p, n), NegativeBinomial(p, n)]),  # WC
        MultiVariate([NegativeBinomial(p, z), NegativeBinomial(p, 2 * n)]),  # WW
    ]


def buildStrandStateHMM(numBins: int, hmmArgs: hmmParams = hmmParams()) -> HMM:
    r"""The CC/WC/WW model without emissions. See :func:`strandStateEmissions`."""
    hmm = HMM(STATE_LABELS)
    hmm.setInitials(hmmArgs.initialProbs)
    hmm.setTransitions(transitionMatrix(numBins, hmmArgs.expectedTransitions))
    return hmm


def decodeCell(
    hmm: HMM,
    cell: CellCounts,
    goodBins: GoodBins,
    sample: SampleInfo,
    zeroBinMean: float = 0.5,
) -> npt.NDArray[np.int8]:
    r"""Decode one cell, independently per chromosome, over good bins only.

    Bad bins are skipped: consecutive good bins of a chromosome are adjacent in the chain.

    :return: States aligned with the cell's bins. Bad bins stay ``UNLABELLED``. If the sample's
        fit is invalid or the cell's median count is zero, every bin is ``FAILED``.
    :rtype: npt.NDArray[np.int8]
    """
    numBins = cell.watson.size
    if not sample.valid or cell.info.medianBinCount <= 0:
        return np.full(numBins, FAILED, dtype=np.int8)

    cellModel = hmm.withEmissions(
        strandStateEmissions(sample.p, cell.info.medianBinCount, zeroBinMean)
    )
    indices = goodBins.indices
    observations = np.column_stack((cell.crick[indices], cell.watson[indices]))
    lengths = np.diff(goodBins.goodMap)
    path, _ = cellModel.decode(observations, lengths)

    states = np.full(numBins, UNLABELLED, dtype=np.int8)
    states[indices] = path.astype(np.int8)
    return states


def _decodeWorker(args) -> Tuple[int, np.ndarray]:
    hmm, cell, goodBins, sample, zeroBinMean = args
    return cell.info.cellId, decodeCell(hmm, cell, goodBins, sample, zeroBinMean)


def runHMM(
    cells: Mapping[int, CellCounts],
    bins: GenomeBins,
    goodBins: GoodBins,
    samples: Mapping[str, SampleInfo],
    hmmArgs: hmmParams = hmmParams(),
) -> Dict[int, CellCounts]:
    r"""Decode every cell and return the cells with their states set.

    The transition matrix is derived from the total number of bins (good and bad).
    Cells are independent, so with ``hmmArgs.numWorkers > 1`` they are decoded in a
    process pool; inputs are only read.

    :param cells: Per-cell counts.
    :type cells: Mapping[int, CellCounts]
    :param bins: All bins.
    :type bins: GenomeBins
    :param goodBins: See :func:`strandstate.filtering.filterBins`.
    :type goodBins: GoodBins
    :param samples: See :func:`strandstate.estimation.estimateSampleParams`.
    :type samples: Mapping[str, SampleInfo]
    :param hmmArgs: See :class:`hmmParams`.
    :type hmmArgs: hmmParams
    :return: Cells keyed as in `cells`, each with a new `states` array.
    :rtype: Dict[int, CellCounts]
    """
    hmm = buildStrandStateHMM(bins.numBins, hmmArgs)
    argsList = [
        (hmm, cell, goodBins, samples[cell.info.sampleName], hmmArgs.zeroBinMean)
        for cell in cells.values()
    ]
    for cell in cells.values():
        if not samples[cell.info.sampleName].valid:
            logger.warning(
                f"Cell {cell.info.cellName}: not decoded, parameter fit of sample {cell.info.sampleName} failed"
            )
        elif cell.info.medianBinCount <= 0:
            logger.warning(
                f"Cell {cell.info.cellName}: not decoded, median bin count is 0"
            )

    if hmmArgs.numWorkers > 1 and len(argsList) > 1:
        with Pool(processes=min(hmmArgs.numWorkers, len(argsList))) as pool:
            results = pool.map(_decodeWorker, argsList)
    else:
        results = [_decodeWorker(args) for args in argsList]

    decoded: Dict[int, CellCounts] = {}
    for cellId, states in results:
        decoded[cellId] = cells[cellId]._replace(states=states)
    return decoded
