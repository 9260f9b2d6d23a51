# src/transmission_trees/trees/phylogeny.py
# Dated phylogeny (ptree) as a node table, plus the input checks run
# before any inference starts.

from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
from numpy.random import Generator, default_rng


@dataclass(frozen=True)
class PhyloTree:
    """Dated genealogy of the sampled pathogen genomes.

    Attributes:
        times (np.ndarray): node dates, shape (n,)
        children (np.ndarray): child rows of each node, shape (n, 2), -1 if none
        names (list of str): leaf labels; leaves are rows 0..len(names)-1
    """
    times: np.ndarray
    children: np.ndarray
    names: List[str]

    @classmethod
    def from_arrays(cls, times, children, names: Sequence[str]) -> "PhyloTree":
        times = np.asarray(times, dtype=float)
        children = np.asarray(children, dtype=int)

        if times.ndim != 1:
            raise ValueError("times is not a 1D sequence of node dates")
        if children.shape != (times.size, 2):
            raise ValueError(f"children must have shape ({times.size}, 2), got {children.shape}")
        if len(names) > times.size:
            raise ValueError("More leaf names than nodes in the tree")

        return cls(times=times, children=children, names=list(names))

    @property
    def n_leaves(self) -> int:
        return len(self.names)

    @property
    def n_nodes(self) -> int:
        return int(self.times.size)

    def internal_nodes(self) -> np.ndarray:
        return np.arange(self.n_leaves, self.n_nodes)


def branch_lengths(ptree: PhyloTree) -> np.ndarray:
    """Child date minus parent date for every parent-child edge."""
    parents = ptree.internal_nodes()
    kids = ptree.children[parents]
    mask = kids >= 0
    parent_times = np.repeat(ptree.times[parents][:, None], 2, axis=1)
    return (ptree.times[kids] - parent_times)[mask]


def check_branch_lengths(ptree: PhyloTree) -> None:
    """Raise ValueError if any node is dated before its parent."""
    if np.any(branch_lengths(ptree) < 0):
        raise ValueError("The phylogenetic tree contains negative branch lengths!")


def jitter_leaf_times(ptree: PhyloTree, rng: Optional[Generator] = None, scale: float = 1e-10) -> PhyloTree:
    """Perturb leaf dates by U(0, scale) so that no two leaves share a date.

    Dates that differ by more than `scale` keep their order; exact ties are
    broken at random. Internal nodes are left alone, so branch lengths can
    only grow.
    """
    if rng is None:
        rng = default_rng()

    times = ptree.times.copy()
    times[: ptree.n_leaves] += rng.uniform(size=ptree.n_leaves) * scale
    return PhyloTree(times=times, children=ptree.children.copy(), names=list(ptree.names))


def prepare_phylogeny(ptree: PhyloTree, rng: Optional[Generator] = None) -> PhyloTree:
    """Jitter tied leaf dates, then validate branch lengths."""
    jittered = jitter_leaf_times(ptree, rng=rng)
    check_branch_lengths(jittered)
    return jittered
