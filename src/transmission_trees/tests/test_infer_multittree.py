import logging
import math

import numpy as np
import pytest
from numpy.random import SeedSequence

from transmission_trees.mcmc.config import DelayDistributions, EnsembleConfig
from transmission_trees.mcmc.infer_multittree import infer_multittree_share_param, shared_move, spawn_streams
from transmission_trees.mcmc.infer_ttree import infer_ttree
from transmission_trees.mcmc.parameters import Param, Parameters, UpdateFlags
from transmission_trees.mcmc.state import ChainContext, initial_chain_state

from conftest import BreaksAfter, FixedUniforms, PtreeBreaksAfter, ctree_with_index, small_ptree


def chains_for(toy, n, params):
    ctx = ChainContext(
        model=toy.as_model(),
        delays=DelayDistributions(2.0, 1.0, 2.0, 1.0),
        date_t=math.inf,
        flags=UpdateFlags(),
    )
    contexts = [ctx] * n
    return contexts, [initial_chain_state(small_ptree(), ctx, params) for _ in range(n)]


def trajectory(samples):
    return [(s.neg, s.off_r, s.off_p, s.pi) for s in samples]


def test_every_chain_gets_a_trace(toy):
    cfg = EnsembleConfig(mcmc_iterations=50, thinning=5, share=("off.r",))
    traces = infer_multittree_share_param([small_ptree()] * 3, toy.as_model(), cfg, seed=1)
    assert len(traces) == 3
    assert all(len(t) == 10 for t in traces)
    assert all(s.source in {"A", "Unsampled"} for t in traces for s in t)


def test_all_shared_parameters_are_identical_across_chains(toy):
    cfg = EnsembleConfig(mcmc_iterations=200, share=("neg", "off.r", "off.p", "pi"), update_off_p=True)
    traces = infer_multittree_share_param([small_ptree()] * 3, toy.as_model(), cfg, seed=2)

    first = trajectory(traces[0])
    assert len(set(first)) > 1  # the parameters did move
    for t in traces[1:]:
        assert trajectory(t) == first


def test_partially_shared_parameters(toy):
    cfg = EnsembleConfig(mcmc_iterations=200, share=("pi",))
    a, b = infer_multittree_share_param([small_ptree()] * 2, toy.as_model(), cfg, seed=3)

    assert [s.pi for s in a] == [s.pi for s in b]
    assert [s.neg for s in a] != [s.neg for s in b]


def test_nothing_shared_matches_independent_runs(toy):
    # Beta(1, 1) is flat, so the private pi update matches the single-chain one
    cfg = EnsembleConfig(mcmc_iterations=60, thinning=3, share=(), prior_pi_a=1, prior_pi_b=1)
    traces = infer_multittree_share_param([small_ptree()] * 2, toy.as_model(), cfg, seed=7)

    children = SeedSequence(7).spawn(3)
    for k, trace in enumerate(traces):
        single = infer_ttree(small_ptree(), toy.as_model(), cfg, rng=children[k + 1])
        assert trajectory(trace) == trajectory(single)
        assert [s.posterior for s in trace] == [s.posterior for s in single]


def test_breakdown_stops_every_chain():
    # two chains score once each at the start, then three times per iteration each
    model = BreaksAfter(2 + 6 * 10).as_model()
    cfg = EnsembleConfig(mcmc_iterations=100, thinning=5)
    traces = infer_multittree_share_param([small_ptree()] * 2, model, cfg, seed=4)
    assert [len(t) for t in traces] == [2, 2]


def test_shared_breakdown_stops_every_chain(caplog):
    # only the shared neg move scores pPTree: two chains at the start, then two per iteration
    model = PtreeBreaksAfter(2 + 2 * 7).as_model()
    cfg = EnsembleConfig(mcmc_iterations=20, share=("neg",), update_ttree=False)
    with caplog.at_level(logging.WARNING):
        traces = infer_multittree_share_param([small_ptree()] * 2, model, cfg, seed=8)
    assert [len(t) for t in traces] == [7, 7]
    assert "shared update for neg" in caplog.text
    assert "stopping inference" in caplog.text


def test_shared_pi_beta_prior_counts_once_per_chain(toy):
    contexts, chains = chains_for(toy, 3, Parameters(neg=0.3, off_r=1.0, off_p=0.5, pi=0.6))

    # pi 0.6 -> 0.65: each chain loses 0.01, Beta(1, 5) adds 4*log(0.35/0.4) per chain
    log_ratio = 3 * -0.01 + 3 * 4 * math.log(0.35 / 0.4)
    assert log_ratio < -1.0

    kept, reason = shared_move(contexts, chains, Param.PI, FixedUniforms([1.0, math.exp(-1.0)]), (1.0, 5.0))
    assert reason is None
    assert [c.params.pi for c in kept] == [0.6] * 3

    moved, _ = shared_move(contexts, chains, Param.PI, FixedUniforms([1.0, math.exp(log_ratio - 0.01)]),
                           (1.0, 5.0))
    assert [c.params.pi for c in moved] == pytest.approx([0.65] * 3)
    assert all(c.logp.p_ttree == pytest.approx(-0.01) for c in moved)
    assert all(c.accepted.pi == 1 for c in moved)


def test_shared_neg_exp_prior_counts_once(toy):
    contexts, chains = chains_for(toy, 2, Parameters(neg=0.3, off_r=1.0, off_p=0.5, pi=0.6))

    # neg 0.3 -> 0.55: pPTree falls by 0.0625 in each chain, one prior term of -0.25
    moved, _ = shared_move(contexts, chains, Param.NEG, FixedUniforms([1.0, math.exp(-0.5)]))
    assert [c.params.neg for c in moved] == pytest.approx([0.55, 0.55])
    assert [c.logp.p_ptree for c in moved] == pytest.approx([-1.0625, -1.0625])


def test_shared_breakdown_is_reported(toy):
    contexts, chains = chains_for(toy, 2, Parameters(neg=0.3, off_r=1.0, off_p=0.5, pi=0.6))
    broken = ChainContext(
        model=BreaksAfter(0).as_model(),
        delays=contexts[0].delays,
        date_t=math.inf,
        flags=UpdateFlags(),
    )
    kept, reason = shared_move([contexts[0], broken], chains, Param.OFF_R, FixedUniforms([0.9, 0.5]))
    assert "chain 1" in reason
    assert kept is chains


def test_spawn_streams_are_reproducible():
    a = [g.uniform() for g in spawn_streams(11, 2)]
    b = [g.uniform() for g in spawn_streams(SeedSequence(11), 2)]
    assert a == b
    assert len(set(a)) == 3


def test_bad_inputs(toy):
    model = toy.as_model()
    with pytest.raises(ValueError):
        infer_multittree_share_param([], model)
    with pytest.raises(ValueError):
        infer_multittree_share_param([small_ptree()] * 2, model, epi_data=[{}])
    with pytest.raises(ValueError):
        infer_multittree_share_param([small_ptree()], model, EnsembleConfig(share=("R0",)))


def test_warm_start_per_chain(toy):
    starts = [ctree_with_index(3), None]
    cfg = EnsembleConfig(mcmc_iterations=2, update_ttree=False)
    traces = infer_multittree_share_param([small_ptree()] * 2, toy.as_model(), cfg, start_ctrees=starts, seed=5)
    assert toy.calls["build"] == 1
    assert traces[0][0].source == "Unsampled"
    assert traces[1][0].source == "A"
    assert np.isfinite(traces[0][-1].posterior)
