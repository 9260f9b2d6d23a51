# src/transmission_trees/mcmc/oracles.py
"""
Narrow interface to the tree machinery the samplers consume but do not own:
building the starting combined tree, proposing tree moves, extracting the
transmission tree, scoring trees and scoring epidemiological penalties.
"""

from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence, Tuple

import math
import numpy as np

from .config import DelayDistributions
from .parameters import Parameters

# build_ctree(ptree, off_r or None, off_p, neg, pi, w_shape, w_scale, ws_shape, ws_scale, date_t)
TreeBuilder = Callable[..., Any]
# propose(ctree) -> (candidate ctree, hastings ratio)
ProposalGenerator = Callable[[Any], Tuple[Any, float]]
# extract_ttree(ctree) -> ttree
TransmissionExtractor = Callable[[Any], Any]
# prob_ttree(ttree, off_r, off_p, pi, w_shape, w_scale, ws_shape, ws_scale, date_t) -> log value
TTreeLikelihood = Callable[..., float]
# prob_ptree(ctree, neg) -> log value
PTreeLikelihood = Callable[[Any, float], float]
# epi_penalty(ttree, epi_data, info) -> (penalty vector of 3, info or None)
PenaltyEvaluator = Callable[[Any, Any, bool], Tuple[Sequence[float], Any]]


@dataclass(frozen=True)
class TransmissionModel:
    build_ctree: TreeBuilder
    propose: ProposalGenerator
    extract_ttree: TransmissionExtractor
    prob_ttree: TTreeLikelihood
    prob_ptree: PTreeLikelihood
    epi_penalty: Optional[PenaltyEvaluator] = None

    def initial_ctree(self, ptree, params: Parameters, delays: DelayDistributions,
                      date_t: float, opti_start: bool):
        """Starting combined tree; off.r is withheld unless the start is optimised."""
        off_r = params.off_r if opti_start else None
        return self.build_ctree(ptree, off_r, params.off_p, params.neg, params.pi,
                                *delays.as_args(), date_t)

    def score_ttree(self, ttree, params: Parameters, delays: DelayDistributions, date_t: float) -> float:
        return float(self.prob_ttree(ttree, params.off_r, params.off_p, params.pi,
                                     *delays.as_args(), date_t))

    def score_ptree(self, ctree, neg: float) -> float:
        return float(self.prob_ptree(ctree, neg))

    def hastings_log(self, ratio: float) -> float:
        """log of the proposal ratio; NaN stays NaN so the caller can stop."""
        if math.isnan(ratio):
            return math.nan
        if ratio <= 0:
            return -math.inf
        return math.log(ratio)


def penalty_vector(raw) -> np.ndarray:
    """Coerce the evaluator's penalty to the (exposure, contact, location) vector."""
    vec = np.asarray(raw, dtype=float).ravel()
    if vec.size != 3:
        raise ValueError(f"Expected 3 penalty components (exposure, contact, location), got {vec.size}")
    return vec
