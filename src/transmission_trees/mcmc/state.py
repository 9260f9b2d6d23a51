# src/transmission_trees/mcmc/state.py
"""
State of one Markov chain and the block updates that move it.

A chain holds its combined tree (ctree), the transmission tree extracted from
it (ttree), the cached log-probabilities and the current parameters. Every
update returns a new ChainState; a rejected proposal simply returns the old
one, so the candidate is never seen by anyone else.

Update functions return ``(chain, stop_reason)``. ``stop_reason`` is None
unless a score broke down (NaN or +inf, or a NaN penalty), in which case the
caller stops the run and keeps what it has recorded. A candidate scored -inf
is an ordinary rejection.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Optional, Tuple

import logging
import math
import numpy as np

from .config import DelayDistributions
from .oracles import TransmissionModel, penalty_vector
from .parameters import (
    PTREE_PARAMS,
    UPDATE_ORDER,
    Param,
    Parameters,
    UpdateFlags,
    log_beta_ratio,
    log_prior_ratio,
    metropolis_accept,
    propose_value,
)

logger = logging.getLogger(__name__)


def is_breakdown(x: float) -> bool:
    """NaN or +inf: a score the chain cannot continue from."""
    return math.isnan(x) or x == math.inf


@dataclass(frozen=True)
class LogProbs:
    p_ttree: float  # transmission tree log prior/likelihood minus the log penalty
    p_ptree: float  # genealogy given transmission tree and neg

    @property
    def posterior(self) -> float:
        return self.p_ttree + self.p_ptree

    def is_finite(self) -> bool:
        return bool(np.isfinite(self.p_ttree) and np.isfinite(self.p_ptree))


@dataclass(frozen=True)
class Penalty:
    exposure: float
    contact: float
    location: float
    info: Any = None

    @property
    def total(self) -> float:
        return self.exposure + self.contact + self.location


@dataclass(frozen=True)
class AcceptanceCounts:
    ttree: int = 0
    neg: int = 0
    off_r: int = 0
    off_p: int = 0
    pi: int = 0

    def bump(self, name: str) -> "AcceptanceCounts":
        return replace(self, **{name: getattr(self, name) + 1})


@dataclass(frozen=True)
class PenaltySettings:
    """Epidemiological data attached to one chain and how it is used."""
    epi_data: Any = None
    penalize: bool = False
    track: bool = False
    prulebreak: float = 0.8

    @classmethod
    def build(cls, epi_data, penalize: bool, track: bool, prulebreak: float) -> "PenaltySettings":
        # penalties only mean something when there is data to check against
        has_data = epi_data is not None
        return cls(epi_data=epi_data, penalize=has_data and penalize,
                   track=has_data and track, prulebreak=prulebreak)

    @property
    def active(self) -> bool:
        return self.penalize or self.track

    def evaluate(self, model: TransmissionModel, ttree) -> Tuple[float, Optional[Penalty]]:
        """Return (log penalty, breakdown). The log penalty is 0 unless penalizing."""
        if not self.active:
            return 0.0, None
        if model.epi_penalty is None:
            raise ValueError("Epidemiological data was supplied but the model has no penalty evaluator")

        raw, info = model.epi_penalty(ttree, self.epi_data, self.track)
        vec = penalty_vector(raw)
        penalty = Penalty(float(vec[0]), float(vec[1]), float(vec[2]), info if self.track else None)
        if not self.penalize:
            # tracked only, so an undefined penalty does not touch the score
            return 0.0, penalty
        if math.isnan(penalty.total):
            return math.nan, penalty
        return penalty.total * math.log(self.prulebreak), penalty


@dataclass(frozen=True)
class ChainContext:
    """Everything a chain update needs besides the chain itself."""
    model: TransmissionModel
    delays: DelayDistributions
    date_t: float
    flags: UpdateFlags
    epi: PenaltySettings = field(default_factory=PenaltySettings)
    pi_prior: Optional[Tuple[float, float]] = None


@dataclass(frozen=True)
class ChainState:
    ctree: Any
    ttree: Any
    logp: LogProbs
    params: Parameters
    log_penalty: float = 0.0
    penalty: Optional[Penalty] = None
    accepted: AcceptanceCounts = field(default_factory=AcceptanceCounts)


def initial_chain_state(ptree, ctx: ChainContext, params: Parameters,
                        opti_start: bool = True, start_ctree=None) -> ChainState:
    """Build (or take) the starting combined tree and score it.

    Raises:
        RuntimeError: if pTTree or pPTree of the starting state is not finite
    """
    if start_ctree is None:
        ctree = ctx.model.initial_ctree(ptree, params, ctx.delays, ctx.date_t, opti_start)
    else:
        ctree = start_ctree

    ttree = ctx.model.extract_ttree(ctree)
    log_pen, penalty = ctx.epi.evaluate(ctx.model, ttree)
    p_ttree = ctx.model.score_ttree(ttree, params, ctx.delays, ctx.date_t) - log_pen
    p_ptree = ctx.model.score_ptree(ctree, params.neg)

    if not np.isfinite(p_ttree):
        raise RuntimeError(f"pTTree is {p_ttree} at the starting point, stopping inference")
    if not np.isfinite(p_ptree):
        raise RuntimeError(f"pPTree is {p_ptree} at the starting point, stopping inference")

    return ChainState(ctree=ctree, ttree=ttree, logp=LogProbs(p_ttree, p_ptree),
                      params=params, log_penalty=log_pen, penalty=penalty)


def refresh_penalty(ctx: ChainContext, chain: ChainState) -> Tuple[ChainState, Optional[str]]:
    """Re-evaluate the penalty on the current transmission tree."""
    if not ctx.epi.active:
        return chain, None

    log_pen, penalty = ctx.epi.evaluate(ctx.model, chain.ttree)
    if math.isnan(log_pen):
        return chain, "penalty is NaN"

    p_ttree = chain.logp.p_ttree + chain.log_penalty - log_pen
    return replace(chain, logp=replace(chain.logp, p_ttree=p_ttree),
                   log_penalty=log_pen, penalty=penalty), None


def tree_move(ctx: ChainContext, chain: ChainState, rng) -> Tuple[ChainState, Optional[str]]:
    """Metropolis-Hastings update of the combined tree."""
    model = ctx.model
    ctree2, qr = model.propose(chain.ctree)
    ttree2 = model.extract_ttree(ctree2)

    log_pen2, penalty2 = ctx.epi.evaluate(model, ttree2)
    if math.isnan(log_pen2):
        return chain, "penalty is NaN for the proposed transmission tree"

    p_ttree2 = model.score_ttree(ttree2, chain.params, ctx.delays, ctx.date_t) - log_pen2
    p_ptree2 = model.score_ptree(ctree2, chain.params.neg)
    if is_breakdown(p_ttree2):
        return chain, f"pTTree2 is {p_ttree2} in Metropolis update for transmission tree"
    if is_breakdown(p_ptree2):
        return chain, f"pPTree2 is {p_ptree2} in Metropolis update for transmission tree"

    log_q = model.hastings_log(qr)
    if is_breakdown(log_q):
        return chain, f"Hastings ratio is {qr} in Metropolis update for transmission tree"

    log_ratio = log_q + p_ttree2 + p_ptree2 - chain.logp.posterior
    if metropolis_accept(log_ratio, rng):
        chain = replace(chain, ctree=ctree2, ttree=ttree2, logp=LogProbs(p_ttree2, p_ptree2),
                        log_penalty=log_pen2, penalty=penalty2,
                        accepted=chain.accepted.bump("ttree"))
    return chain, None


def current_score(chain: ChainState, param: Param) -> float:
    """The cached log-probability component that `param` enters."""
    if param in PTREE_PARAMS:
        return chain.logp.p_ptree
    return chain.logp.p_ttree


def score_parameters(ctx: ChainContext, chain: ChainState, params: Parameters, param: Param) -> float:
    """Re-score the component of `chain` affected by `param` under `params`."""
    if param in PTREE_PARAMS:
        return ctx.model.score_ptree(chain.ctree, params.neg)
    return ctx.model.score_ttree(chain.ttree, params, ctx.delays, ctx.date_t) - chain.log_penalty


def commit_parameter(chain: ChainState, param: Param, value: float, score: float) -> ChainState:
    """Accept `value` for `param`, together with its re-scored log-probability."""
    if param in PTREE_PARAMS:
        logp = replace(chain.logp, p_ptree=score)
    else:
        logp = replace(chain.logp, p_ttree=score)
    return replace(chain, params=chain.params.with_value(param, value), logp=logp,
                   accepted=chain.accepted.bump(param.attr))


def parameter_move(ctx: ChainContext, chain: ChainState, param: Param, rng) -> Tuple[ChainState, Optional[str]]:
    """Metropolis update of a single parameter of one chain."""
    old = chain.params.get(param)
    new = propose_value(param, old, rng)
    score = score_parameters(ctx, chain, chain.params.with_value(param, new), param)
    if is_breakdown(score):
        return chain, f"log-probability is {score} in Metropolis update for {param.value}"

    log_ratio = score - current_score(chain, param) + log_prior_ratio(param, old, new)
    if param is Param.PI and ctx.pi_prior is not None:
        log_ratio += log_beta_ratio(old, new, *ctx.pi_prior)

    if metropolis_accept(log_ratio, rng):
        chain = commit_parameter(chain, param, new, score)
    return chain, None


def update_chain(ctx: ChainContext, chain: ChainState, rng,
                 skip: Iterable[Param] = ()) -> Tuple[ChainState, Optional[str]]:
    """One full iteration of a chain: penalty, tree, then neg, off.r, off.p, pi.

    Parameters in `skip` (the shared ones, in an ensemble) are left alone.
    """
    skip = frozenset(skip)

    chain, reason = refresh_penalty(ctx, chain)
    if reason:
        return chain, reason

    if ctx.flags.ttree:
        chain, reason = tree_move(ctx, chain, rng)
        if reason:
            return chain, reason

    for param in UPDATE_ORDER:
        if param in skip or not ctx.flags.enabled(param):
            continue
        chain, reason = parameter_move(ctx, chain, param, rng)
        if reason:
            return chain, reason

    return chain, None
