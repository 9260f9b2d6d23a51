# src/transmission_trees/mcmc/parameters.py
# Model parameters, their random-walk proposal kernels and the
# Metropolis acceptance rule.
#
# Kernels (u ~ U(0,1)):
#   neg   : |neg + (u-0.5)*0.5|                         Exp(1) prior
#   off.r : |off.r + (u-0.5)*0.5|                       Exp(1) prior
#   off.p : |off.p + (u-0.5)*0.1|, reflected at 1       flat prior
#   pi    : pi + (u-0.5)*0.1, reflected at 0.01 and 1   flat (or Beta) prior

from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, Tuple, Union

import math
from scipy.special import xlogy

PI_MIN = 0.01


class Param(Enum):
    """The four scalar parameters, in the order they are updated."""
    NEG = "neg"
    OFF_R = "off.r"
    OFF_P = "off.p"
    PI = "pi"

    @property
    def attr(self) -> str:
        return self.name.lower()


UPDATE_ORDER: Tuple[Param, ...] = (Param.NEG, Param.OFF_R, Param.OFF_P, Param.PI)

# Parameters whose value enters pPTree (within-host likelihood); the rest enter pTTree
PTREE_PARAMS = frozenset({Param.NEG})

STEP_WIDTH = {
    Param.NEG: 0.5,
    Param.OFF_R: 0.5,
    Param.OFF_P: 0.1,
    Param.PI: 0.1,
}


@dataclass(frozen=True)
class Parameters:
    """Current values of Ne*g, off.r, off.p and pi."""
    neg: float
    off_r: float
    off_p: float
    pi: float

    def get(self, param: Param) -> float:
        return getattr(self, param.attr)

    def with_value(self, param: Param, value: float) -> "Parameters":
        return replace(self, **{param.attr: float(value)})

    def check(self) -> None:
        """Raise ValueError if a value lies outside its domain."""
        if self.neg < 0:
            raise ValueError("neg must be >= 0")
        if self.off_r < 0:
            raise ValueError("off.r must be >= 0")
        if not 0.0 <= self.off_p <= 1.0:
            raise ValueError("off.p must lie in [0, 1]")
        if not PI_MIN <= self.pi <= 1.0:
            raise ValueError(f"pi must lie in [{PI_MIN}, 1]")


@dataclass(frozen=True)
class UpdateFlags:
    """Which blocks of the chain are updated."""
    ttree: bool = True
    neg: bool = True
    off_r: bool = True
    off_p: bool = False
    pi: bool = True

    def enabled(self, param: Param) -> bool:
        return getattr(self, param.attr)


def propose_value(param: Param, value: float, rng) -> float:
    """Draw a candidate for `param` from its reflecting random walk."""
    new = value + (rng.uniform() - 0.5) * STEP_WIDTH[param]

    if param is Param.PI:
        if new < PI_MIN:
            new = 2 * PI_MIN - new
        if new > 1:
            new = 2 - new
        return new

    new = abs(new)
    if param is Param.OFF_P and new > 1:
        new = 2 - new
    return new


def log_prior_ratio(param: Param, old: float, new: float) -> float:
    """Log prior ratio of the built-in priors: Exp(1) on neg and off.r, flat otherwise."""
    if param in (Param.NEG, Param.OFF_R):
        return -(new - old)
    return 0.0


def log_beta_ratio(old: float, new: float, a: float, b: float) -> float:
    """log Beta(new; a, b) - log Beta(old; a, b), without the normalising constant."""
    return float(
        xlogy(a - 1, new) + xlogy(b - 1, 1 - new)
        - xlogy(a - 1, old) - xlogy(b - 1, 1 - old)
    )


def metropolis_accept(log_ratio: float, rng) -> bool:
    """Accept iff log(u) < log_ratio with u ~ U(0,1)."""
    u = rng.uniform()
    if u <= 0.0:
        return log_ratio > -math.inf
    return bool(math.log(u) < log_ratio)


@dataclass(frozen=True)
class SharingSpec:
    """Boolean mask over Param naming the parameters shared by all chains."""
    mask: Tuple[bool, ...] = (False, False, False, False)

    @classmethod
    def from_names(cls, names: Union[str, Iterable[str], None]) -> "SharingSpec":
        if isinstance(names, str):
            names = [names]
        names = set(names or ())
        if not names:
            return cls.none()
        known = {p.value for p in Param}
        unknown = names - known
        if unknown:
            raise ValueError(f"Unknown shared parameters {sorted(unknown)}; allowed: {sorted(known)}")
        return cls(mask=tuple(p.value in names for p in UPDATE_ORDER))

    @classmethod
    def none(cls) -> "SharingSpec":
        return cls()

    def is_shared(self, param: Param) -> bool:
        return self.mask[UPDATE_ORDER.index(param)]

    @property
    def shared(self) -> Tuple[Param, ...]:
        return tuple(p for p, s in zip(UPDATE_ORDER, self.mask) if s)

