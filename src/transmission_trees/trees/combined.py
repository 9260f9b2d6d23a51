# src/transmission_trees/trees/combined.py
# Combined tree (ctree): genealogy plus the transmission history linking hosts.

from dataclasses import dataclass
from typing import List

import numpy as np

UNSAMPLED = "Unsampled"


@dataclass(frozen=True)
class CombinedTree:
    """Node table of a combined tree.

    Columns follow the phylogeny layout with one extra column, `hosts`:
    the host each node lives in. Hosts 0..len(names)-1 are the sampled hosts
    (same order as `names`), larger ids are unsampled hosts and -1 marks the
    root, i.e. the infection event that introduces the index case.

    Trees are never edited in place by the samplers: an accepted move swaps
    in a whole new tree.
    """
    times: np.ndarray
    children: np.ndarray
    hosts: np.ndarray
    names: List[str]

    @classmethod
    def from_arrays(cls, times, children, hosts, names) -> "CombinedTree":
        times = np.asarray(times, dtype=float)
        children = np.asarray(children, dtype=int)
        hosts = np.asarray(hosts, dtype=int)

        if children.shape != (times.size, 2) or hosts.shape != times.shape:
            raise ValueError("times, children and hosts must describe the same nodes")
        if np.count_nonzero(hosts == -1) != 1:
            raise ValueError("A combined tree needs exactly one root (host -1)")

        return cls(times=times, children=children, hosts=hosts, names=list(names))

    def copy(self) -> "CombinedTree":
        return CombinedTree(
            times=self.times.copy(),
            children=self.children.copy(),
            hosts=self.hosts.copy(),
            names=list(self.names),
        )

    @property
    def root(self) -> int:
        return int(np.flatnonzero(self.hosts == -1)[0])

    def source(self) -> str:
        """Label of the index case, or "Unsampled" if it was never sampled."""
        first_child = self.children[self.root, 0]
        host = int(self.hosts[first_child])
        if 0 <= host < len(self.names):
            return self.names[host]
        return UNSAMPLED
