import math

import numpy as np
import pytest

from transmission_trees.mcmc.oracles import TransmissionModel
from transmission_trees.trees.combined import CombinedTree
from transmission_trees.trees.phylogeny import PhyloTree


class FixedUniforms:
    """Stand-in for a numpy Generator that returns preset uniforms in order."""

    def __init__(self, values):
        self.values = list(values)

    def uniform(self):
        return self.values.pop(0)


def small_ptree():
    # ((A:0.5,B:1.0):0.5,C:2.0) dated forwards from 1.0
    return PhyloTree.from_arrays(
        times=[2.0, 2.5, 3.0, 1.5, 1.0],
        children=[[-1, -1], [-1, -1], [-1, -1], [0, 1], [3, 2]],
        names=["A", "B", "C"],
    )


def ctree_with_index(host):
    """Combined tree over small_ptree whose index case is `host`."""
    return CombinedTree.from_arrays(
        times=[2.0, 2.5, 3.0, 1.5, 1.0, 0.5],
        children=[[-1, -1], [-1, -1], [-1, -1], [0, 1], [3, 2], [4, -1]],
        hosts=[0, 1, 2, host, host, -1],
        names=["A", "B", "C"],
    )


class ToyModel:
    """Smooth toy scores; the index case flips between A and an unsampled host."""

    def __init__(self):
        self.calls = {"build": 0, "propose": 0, "ttree": 0}

    def build_ctree(self, ptree, off_r, off_p, neg, pi, w_shape, w_scale, ws_shape, ws_scale, date_t):
        self.calls["build"] += 1
        return ctree_with_index(0)

    def propose(self, ctree):
        self.calls["propose"] += 1
        host = 3 if ctree.hosts[4] == 0 else 0
        return ctree_with_index(host), 1.0

    def extract_ttree(self, ctree):
        return int(ctree.hosts[4])

    def prob_ttree(self, ttree, off_r, off_p, pi, w_shape, w_scale, ws_shape, ws_scale, date_t):
        self.calls["ttree"] += 1
        return -(off_r - 1.0) ** 2 - (off_p - 0.5) ** 2 - 4 * (pi - 0.6) ** 2 - 0.1 * (ttree != 0)

    def prob_ptree(self, ctree, neg):
        return -((neg - 0.3) ** 2) - 1.0

    def epi_penalty(self, ttree, epi_data, info):
        exposure = epi_data.get("exposure", 0)
        if ttree != 0:
            exposure = epi_data.get("exposure_unsampled", exposure)
        vec = [float(exposure), 1.0, 0.0]
        return vec, ({"ttree": ttree} if info else None)

    def as_model(self):
        return TransmissionModel(
            build_ctree=self.build_ctree,
            propose=self.propose,
            extract_ttree=self.extract_ttree,
            prob_ttree=self.prob_ttree,
            prob_ptree=self.prob_ptree,
            epi_penalty=self.epi_penalty,
        )


class BreaksAfter(ToyModel):
    """prob_ttree turns NaN once it has been called `n` times."""

    def __init__(self, n, value=math.nan):
        super().__init__()
        self.n = n
        self.value = value

    def prob_ttree(self, *args):
        score = super().prob_ttree(*args)
        if self.calls["ttree"] > self.n:
            return self.value
        return score


class PtreeBreaksAfter(ToyModel):
    """prob_ptree turns NaN once it has been called `n` times."""

    def __init__(self, n):
        super().__init__()
        self.n = n
        self.ptree_calls = 0

    def prob_ptree(self, ctree, neg):
        self.ptree_calls += 1
        if self.ptree_calls > self.n:
            return math.nan
        return super().prob_ptree(ctree, neg)


@pytest.fixture
def ptree():
    return small_ptree()


@pytest.fixture
def toy():
    return ToyModel()


@pytest.fixture
def model(toy):
    return toy.as_model()


@pytest.fixture
def rng():
    return np.random.default_rng(123)
