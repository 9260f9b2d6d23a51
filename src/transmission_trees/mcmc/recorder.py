# src/transmission_trees/mcmc/recorder.py
# Thinned posterior trace: fixed-schema samples in a pre-sized buffer.

from dataclasses import dataclass, fields
from typing import Any, List, Optional

import pandas as pd

from .config import DelayDistributions
from .state import ChainState


@dataclass(frozen=True)
class PosteriorSample:
    """Snapshot of one chain at a recorded iteration."""
    ctree: Any
    p_ttree: float
    p_ptree: float
    neg: float
    off_r: float
    off_p: float
    pi: float
    w_shape: float
    w_scale: float
    ws_shape: float
    ws_scale: float
    acc_rate_neg: float
    acc_rate_off_r: float
    acc_rate_off_p: float
    acc_rate_pi: float
    acc_rate_ttree: float
    posterior: float
    source: str
    penalty_exposure: Optional[float] = None
    penalty_contact: Optional[float] = None
    penalty_location: Optional[float] = None
    penalty_info: Any = None


def make_sample(chain: ChainState, iteration: int, delays: DelayDistributions,
                track_penalty: bool = False) -> PosteriorSample:
    """Snapshot `chain` after `iteration` iterations (1-based)."""
    acc = chain.accepted
    penalty = chain.penalty if track_penalty else None

    return PosteriorSample(
        ctree=chain.ctree,
        p_ttree=chain.logp.p_ttree,
        p_ptree=chain.logp.p_ptree,
        neg=chain.params.neg,
        off_r=chain.params.off_r,
        off_p=chain.params.off_p,
        pi=chain.params.pi,
        w_shape=delays.w_shape,
        w_scale=delays.w_scale,
        ws_shape=delays.ws_shape,
        ws_scale=delays.ws_scale,
        # rates are per iteration, not per recorded sample
        acc_rate_neg=acc.neg / iteration,
        acc_rate_off_r=acc.off_r / iteration,
        acc_rate_off_p=acc.off_p / iteration,
        acc_rate_pi=acc.pi / iteration,
        acc_rate_ttree=acc.ttree / iteration,
        posterior=chain.logp.posterior,
        source=str(chain.ctree.source()),
        penalty_exposure=None if penalty is None else penalty.exposure,
        penalty_contact=None if penalty is None else penalty.contact,
        penalty_location=None if penalty is None else penalty.location,
        penalty_info=None if penalty is None else penalty.info,
    )


class TraceRecorder:
    """Buffer of floor(mcmc_iterations / thinning) samples, filled in order."""

    def __init__(self, mcmc_iterations: int, thinning: int = 1):
        if thinning < 1:
            raise ValueError("thinning must be >= 1")
        self.thinning = thinning
        self.capacity = max(0, mcmc_iterations // thinning)
        self._buffer: List[Optional[PosteriorSample]] = [None] * self.capacity
        self._n = 0

    def due(self, iteration: int) -> bool:
        return iteration % self.thinning == 0

    def record(self, iteration: int, sample: PosteriorSample) -> None:
        slot = iteration // self.thinning - 1
        if slot != self._n or slot >= self.capacity:
            raise IndexError(f"Iteration {iteration} does not map to the next free slot ({self._n})")
        self._buffer[slot] = sample
        self._n += 1

    def __len__(self) -> int:
        return self._n

    def samples(self) -> List[PosteriorSample]:
        return list(self._buffer[: self._n])


# Columns that are not scalars and stay out of the table
_NON_SCALAR = ("ctree", "penalty_info")


def trace_frame(samples: List[PosteriorSample]) -> pd.DataFrame:
    """One row per sample with the scalar fields, for diagnostics."""
    columns = [f.name for f in fields(PosteriorSample) if f.name not in _NON_SCALAR]
    rows = [{c: getattr(s, c) for c in columns} for s in samples]
    return pd.DataFrame(rows, columns=columns)
