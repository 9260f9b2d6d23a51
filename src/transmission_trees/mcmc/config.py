# src/transmission_trees/mcmc/config.py
# Run configuration for the samplers. Defaults follow the published
# TransPhylo defaults.

from dataclasses import dataclass, field
from typing import Optional, Sequence, Tuple, Union

import math

from .parameters import Parameters, SharingSpec, UpdateFlags


def gamma_shape_scale(mean: float, std: float) -> Tuple[float, float]:
    """Convert the mean and std of a Gamma distribution into (shape, scale).

    Args:
        mean (float): mean of the distribution
        std (float): standard deviation of the distribution
    Returns:
        (shape, scale)
    Raises:
        ValueError
    """
    if mean <= 0 or std <= 0:
        raise ValueError("Mean and std of a Gamma distribution must be > 0")
    shape = (mean / std) ** 2
    scale = std ** 2 / mean
    return shape, scale


def solve_offspring(R0: Optional[float], off_r: Optional[float], off_p: Optional[float]) -> Tuple[float, float]:
    """Starting (off.r, off.p) of the negative binomial offspring distribution.

    With R0 given, the missing member of (r, p) is solved from
    R0 = r * p / (1 - p).
    """
    if R0 is None:
        return (1.0 if off_r is None else float(off_r),
                0.5 if off_p is None else float(off_p))

    if R0 <= 0:
        raise ValueError("R0 must be > 0")

    if off_r is None and off_p is None:
        return float(R0), 0.5
    if off_r is None:
        if not 0 < off_p < 1:
            raise ValueError("off.p must lie in (0, 1) to solve off.r from R0")
        return R0 * (1 - off_p) / off_p, float(off_p)
    if off_p is None:
        return float(off_r), R0 / (R0 + off_r)

    # both given: R0 is redundant
    return float(off_r), float(off_p)


@dataclass(frozen=True)
class DelayDistributions:
    """Gamma generation-time (w) and sampling-time (ws) distributions."""
    w_shape: float
    w_scale: float
    ws_shape: float
    ws_scale: float

    def as_args(self) -> Tuple[float, float, float, float]:
        return self.w_shape, self.w_scale, self.ws_shape, self.ws_scale


@dataclass
class InferenceConfig:
    w_shape: float = 2.0
    w_scale: float = 1.0
    ws_shape: Optional[float] = None
    ws_scale: Optional[float] = None
    w_mean: Optional[float] = None
    w_std: Optional[float] = None
    ws_mean: Optional[float] = None
    ws_std: Optional[float] = None
    mcmc_iterations: int = 1000
    thinning: int = 1
    start_neg: float = 100 / 365
    R0: Optional[float] = None
    start_off_r: Optional[float] = None
    start_off_p: Optional[float] = None
    start_pi: float = 0.5
    update_neg: bool = True
    update_off_r: bool = True
    update_off_p: bool = False
    update_pi: bool = True
    update_ttree: bool = True
    opti_start: bool = True
    date_t: float = math.inf
    penalize: bool = True
    track_penalty: bool = False
    prulebreak: float = 0.8

    def delays(self) -> DelayDistributions:
        w_shape, w_scale = self.w_shape, self.w_scale
        if self.w_mean is not None and self.w_std is not None:
            w_shape, w_scale = gamma_shape_scale(self.w_mean, self.w_std)

        # sampling time defaults to the generation time
        ws_shape = w_shape if self.ws_shape is None else self.ws_shape
        ws_scale = w_scale if self.ws_scale is None else self.ws_scale
        if self.ws_mean is not None and self.ws_std is not None:
            ws_shape, ws_scale = gamma_shape_scale(self.ws_mean, self.ws_std)

        if min(w_shape, w_scale, ws_shape, ws_scale) <= 0:
            raise ValueError("Shape and scale parameters must be > 0")
        return DelayDistributions(w_shape, w_scale, ws_shape, ws_scale)

    def start_parameters(self) -> Parameters:
        off_r, off_p = solve_offspring(self.R0, self.start_off_r, self.start_off_p)
        params = Parameters(neg=float(self.start_neg), off_r=off_r, off_p=off_p, pi=float(self.start_pi))
        params.check()
        return params

    def update_flags(self) -> UpdateFlags:
        return UpdateFlags(
            ttree=self.update_ttree,
            neg=self.update_neg,
            off_r=self.update_off_r,
            off_p=self.update_off_p,
            pi=self.update_pi,
        )

    def n_samples(self) -> int:
        return self.mcmc_iterations // self.thinning

    def resolve(self) -> Tuple[DelayDistributions, Parameters]:
        """Validate the configuration and return (delays, starting parameters)."""
        if self.mcmc_iterations < 0:
            raise ValueError("mcmc_iterations must be >= 0")
        if self.thinning < 1:
            raise ValueError("thinning must be >= 1")
        if not 0 < self.prulebreak <= 1:
            raise ValueError("prulebreak must lie in (0, 1]")
        return self.delays(), self.start_parameters()


@dataclass
class EnsembleConfig(InferenceConfig):
    share: Union[str, Sequence[str], SharingSpec] = field(default_factory=tuple)
    prior_pi_a: float = 5.0
    prior_pi_b: float = 1.0

    def sharing(self) -> SharingSpec:
        if isinstance(self.share, SharingSpec):
            return self.share
        return SharingSpec.from_names(self.share)

    def resolve(self) -> Tuple[DelayDistributions, Parameters]:
        if self.prior_pi_a <= 0 or self.prior_pi_b <= 0:
            raise ValueError("Beta prior parameters for pi must be > 0")
        self.sharing()
        return super().resolve()
