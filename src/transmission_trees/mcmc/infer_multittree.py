# src/transmission_trees/mcmc/infer_multittree.py
"""
Simultaneous inference of transmission trees from several phylogenies, with a
chosen subset of the parameters shared by all of them.

Every iteration has two phases:

- shared phase: each shared parameter gets one proposal, accepted or rejected
  against the sum over chains of the log-probability component it enters.
  On acceptance every chain takes the new value, so shared parameters are
  identical across chains at all times.
- private phase: each chain runs the usual single-chain update (penalty,
  tree move, then its private parameters).

Random numbers: the seed sequence is spawned into one stream for the shared
phase and one per chain. Private pi updates carry the Beta(a, b) prior, which
single-chain runs do not, so an ensemble with nothing shared reproduces
independent single-chain runs seeded with the matching child sequences only
when a = b = 1.
"""

from typing import List, Optional, Sequence, Tuple

import logging
from numpy.random import SeedSequence, default_rng

from ..trees.phylogeny import PhyloTree, prepare_phylogeny
from .config import EnsembleConfig
from .oracles import TransmissionModel
from .parameters import (
    UPDATE_ORDER,
    Param,
    SharingSpec,
    log_beta_ratio,
    log_prior_ratio,
    metropolis_accept,
    propose_value,
)
from .recorder import PosteriorSample, TraceRecorder, make_sample
from .state import (
    ChainContext,
    ChainState,
    PenaltySettings,
    commit_parameter,
    current_score,
    initial_chain_state,
    is_breakdown,
    score_parameters,
    update_chain,
)

logger = logging.getLogger(__name__)


def spawn_streams(seed, n_chains: int):
    """One generator for the shared phase followed by one per chain."""
    ss = seed if isinstance(seed, SeedSequence) else SeedSequence(seed)
    return [default_rng(child) for child in ss.spawn(n_chains + 1)]


def _per_chain(values, n: int, what: str) -> list:
    if values is None:
        return [None] * n
    values = list(values)
    if len(values) != n:
        raise ValueError(f"{what} has {len(values)} entries for {n} phylogenies")
    return values


def shared_move(
    contexts: Sequence[ChainContext],
    chains: List[ChainState],
    param: Param,
    rng,
    pi_prior: Optional[Tuple[float, float]] = None,
) -> Tuple[List[ChainState], Optional[str]]:
    """Metropolis update of a parameter shared by all chains."""
    old = chains[0].params.get(param)
    new = propose_value(param, old, rng)

    scores = []
    for k, (ctx, chain) in enumerate(zip(contexts, chains)):
        score = score_parameters(ctx, chain, chain.params.with_value(param, new), param)
        if is_breakdown(score):
            return chains, f"log-probability of chain {k} is {score} in shared update for {param.value}"
        scores.append(score)

    # one prior term for the shared scalar itself
    log_ratio = sum(scores) - sum(current_score(c, param) for c in chains) + log_prior_ratio(param, old, new)
    if param is Param.PI and pi_prior is not None:
        # the Beta prior enters once per chain
        log_ratio += len(chains) * log_beta_ratio(old, new, *pi_prior)

    if metropolis_accept(log_ratio, rng):
        chains = [commit_parameter(c, param, new, s) for c, s in zip(chains, scores)]
    return chains, None


def shared_phase(contexts, chains, sharing: SharingSpec, rng, pi_prior=None):
    for param in UPDATE_ORDER:
        if not sharing.is_shared(param) or not contexts[0].flags.enabled(param):
            continue
        chains, reason = shared_move(contexts, chains, param, rng, pi_prior)
        if reason:
            return chains, reason
    return chains, None


def private_phase(contexts, chains, sharing: SharingSpec, rngs):
    """Single-chain updates, skipping shared parameters. Chains are independent here."""
    updated = []
    for k, (ctx, chain, rng) in enumerate(zip(contexts, chains, rngs)):
        chain, reason = update_chain(ctx, chain, rng, skip=sharing.shared)
        if reason:
            return chains, f"chain {k}: {reason}"
        updated.append(chain)
    return updated, None


def infer_multittree_share_param(
    ptrees: Sequence[PhyloTree],
    model: TransmissionModel,
    config: Optional[EnsembleConfig] = None,
    start_ctrees: Optional[Sequence] = None,
    epi_data: Optional[Sequence] = None,
    seed=None,
) -> List[List[PosteriorSample]]:
    """Simultaneously infer transmission trees given phylogenetic trees.

    Args:
        ptrees: list of dated phylogenies
        model (TransmissionModel): tree and scoring functions, shared by all chains
        config (EnsembleConfig): as InferenceConfig, plus `share` (names among
            "neg", "off.r", "off.p", "pi") and the Beta(a, b) prior on pi
        start_ctrees: optional list of starting combined trees (None entries allowed)
        epi_data: optional list of epidemiological data, one per phylogeny
        seed: int, SeedSequence or None
    Returns:
        one list of PosteriorSample per phylogeny, all of the same length
    Raises:
        ValueError, RuntimeError: as for infer_ttree
    """
    cfg = config if config is not None else EnsembleConfig()
    delays, params = cfg.resolve()
    sharing = cfg.sharing()

    n = len(ptrees)
    if n == 0:
        raise ValueError("At least one phylogeny is required")
    start_ctrees = _per_chain(start_ctrees, n, "start_ctrees")
    epi_data = _per_chain(epi_data, n, "epi_data")

    shared_rng, *chain_rngs = spawn_streams(seed, n)
    pi_prior = (cfg.prior_pi_a, cfg.prior_pi_b)

    contexts, chains = [], []
    for k in range(n):
        ptree = prepare_phylogeny(ptrees[k], rng=chain_rngs[k])
        ctx = ChainContext(
            model=model,
            delays=delays,
            date_t=cfg.date_t,
            flags=cfg.update_flags(),
            epi=PenaltySettings.build(epi_data[k], cfg.penalize, cfg.track_penalty, cfg.prulebreak),
            pi_prior=pi_prior,
        )
        contexts.append(ctx)
        chains.append(initial_chain_state(ptree, ctx, params, opti_start=cfg.opti_start,
                                          start_ctree=start_ctrees[k]))

    recorders = [TraceRecorder(cfg.mcmc_iterations, cfg.thinning) for _ in range(n)]
    logger.info("Running %d MCMC iterations on %d phylogenies (thinning %d, %d samples, shared: %s)",
                cfg.mcmc_iterations, n, cfg.thinning, cfg.n_samples(), [p.value for p in sharing.shared])

    # Main MCMC loop
    for i in range(1, cfg.mcmc_iterations + 1):
        chains, reason = shared_phase(contexts, chains, sharing, shared_rng, pi_prior)
        if not reason:
            chains, reason = private_phase(contexts, chains, sharing, chain_rngs)
        if reason:
            logger.warning("%s at iteration %d, stopping inference and returning %d samples per tree",
                           reason, i, len(recorders[0]))
            break

        if recorders[0].due(i):
            for k, chain in enumerate(chains):
                recorders[k].record(i, make_sample(chain, i, delays, contexts[k].epi.track))
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("it=%d,%s", i, ";".join(
                    f"neg={c.params.neg:f},off.r={c.params.off_r:f},off.p={c.params.off_p:f},pi={c.params.pi:f}"
                    for c in chains))

    logger.info("Recorded %d of %d samples per tree", len(recorders[0]), recorders[0].capacity)
    return [rec.samples() for rec in recorders]
