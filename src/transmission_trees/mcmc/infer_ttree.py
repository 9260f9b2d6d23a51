# src/transmission_trees/mcmc/infer_ttree.py
"""
Single-chain sampler: posterior sample of transmission trees given one
dated phylogeny.

Each iteration refreshes the epidemiological penalty, proposes a new combined
tree, then updates neg, off.r, off.p and pi in that order. Every `thinning`
iterations a PosteriorSample is recorded. If a score breaks down mid-chain
the run stops and the samples recorded so far are returned; a trace shorter
than mcmc_iterations // thinning is a normal outcome.
"""

from typing import List, Optional

import logging
from numpy.random import default_rng

from ..trees.phylogeny import PhyloTree, prepare_phylogeny
from .config import InferenceConfig
from .oracles import TransmissionModel
from .recorder import PosteriorSample, TraceRecorder, make_sample
from .state import ChainContext, PenaltySettings, initial_chain_state, update_chain

logger = logging.getLogger(__name__)


def infer_ttree(
    ptree: PhyloTree,
    model: TransmissionModel,
    config: Optional[InferenceConfig] = None,
    start_ctree=None,
    epi_data=None,
    rng=None,
) -> List[PosteriorSample]:
    """Infer a transmission tree given a phylogenetic tree.

    Args:
        ptree (PhyloTree): dated phylogeny; leaf dates are jittered and
            branch lengths checked before inference
        model (TransmissionModel): tree builder, proposal, extraction and
            scoring functions
        config (InferenceConfig): priors, iterations, thinning, update flags
        start_ctree: optional combined tree to start from
        epi_data: optional epidemiological data for the penalty evaluator
        rng: numpy Generator or seed
    Returns:
        list of PosteriorSample, at most mcmc_iterations // thinning long
    Raises:
        ValueError: bad configuration or negative branch lengths
        RuntimeError: the starting point has a non-finite log-probability
    """
    cfg = config if config is not None else InferenceConfig()
    delays, params = cfg.resolve()
    rng = default_rng(rng)

    ptree = prepare_phylogeny(ptree, rng=rng)

    ctx = ChainContext(
        model=model,
        delays=delays,
        date_t=cfg.date_t,
        flags=cfg.update_flags(),
        epi=PenaltySettings.build(epi_data, cfg.penalize, cfg.track_penalty, cfg.prulebreak),
    )
    chain = initial_chain_state(ptree, ctx, params, opti_start=cfg.opti_start, start_ctree=start_ctree)

    recorder = TraceRecorder(cfg.mcmc_iterations, cfg.thinning)
    logger.info("Running %d MCMC iterations (thinning %d, %d samples)",
                cfg.mcmc_iterations, cfg.thinning, cfg.n_samples())

    # Main MCMC loop
    for i in range(1, cfg.mcmc_iterations + 1):
        chain, reason = update_chain(ctx, chain, rng)
        if reason:
            logger.warning("%s at iteration %d, stopping inference and returning %d samples",
                           reason, i, len(recorder))
            break

        if recorder.due(i):
            recorder.record(i, make_sample(chain, i, delays, ctx.epi.track))
            logger.debug("it=%d,neg=%f,off.r=%f,off.p=%f,pi=%f,Prior=%e,Likelihood=%f",
                         i, chain.params.neg, chain.params.off_r, chain.params.off_p,
                         chain.params.pi, chain.logp.p_ttree, chain.logp.p_ptree)

    logger.info("Recorded %d of %d samples", len(recorder), recorder.capacity)
    return recorder.samples()
