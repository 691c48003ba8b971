"""
mapprior.stats.schemes.map_prior.model
======================================

Configuration of the Meta-Analytic-Predictive (MAP) model.

The MAP model is a normal random-effects model on the link scale:

    theta_i = mu + tau * z_i,   z_i ~ N(0, 1)          (study effects)
    theta*  = mu + tau * z*                            (new study)
    mu  ~ N(beta_mean, beta_sd)
    tau ~ HalfNormal(scale) or HalfCauchy(scale)

with a binomial (logit link), gaussian (identity link) or Poisson (log link,
exposure offset) likelihood per study. The MAP prior is the predictive
distribution of theta* on the natural scale.

Examples
--------
>>> from mapprior.stats.schemes.map_prior.model import MAPModel, TauPrior
>>> model = MAPModel(family="binomial", beta_prior=(0.0, 2.0), tau_prior=TauPrior("halfnormal", 1.0))
>>> model.validate()
>>> model.link, model.family_tag.value
('logit', 'beta')
"""

from __future__ import annotations
import math
from dataclasses import dataclass, replace
from typing import Optional, Tuple

from mapprior.core.names import FamilyTag

TAU_DISTRIBUTIONS = ("halfnormal", "halfcauchy")

_LINKS = {"binomial": "logit", "gaussian": "identity", "poisson": "log"}
_FAMILIES = {
    "binomial": FamilyTag.BETA,
    "gaussian": FamilyTag.NORMAL,
    "poisson": FamilyTag.GAMMA,
}
_LIKELIHOODS = {"binomial": "binomial", "gaussian": "normal", "poisson": "poisson"}


@dataclass(frozen=True)
class TauPrior:
    """Prior of the between-study standard deviation tau (link scale)."""

    dist: str = "halfnormal"
    scale: float = 1.0

    def validate(self) -> None:
        if self.dist not in TAU_DISTRIBUTIONS:
            raise ValueError(f"tau prior must be one of {TAU_DISTRIBUTIONS}, got {self.dist!r}")
        if not math.isfinite(self.scale) or self.scale <= 0:
            raise ValueError(f"tau prior scale must be positive, got {self.scale}")


@dataclass(frozen=True)
class SamplerConfig:
    """
    Settings of the posterior sampler.

    Parameters
    ----------
    draws : int, default=2000
        Retained draws per chain
    tune : int, default=1000
        Warm-up iterations per chain
    chains : int, default=4
        Number of chains
    target_accept : float, default=0.9
        NUTS target acceptance rate
    seed : int, optional
        Random seed passed to the sampler
    rhat_threshold : float, default=1.1
        Largest acceptable R-hat before a convergence warning is emitted
    """

    draws: int = 2000
    tune: int = 1000
    chains: int = 4
    target_accept: float = 0.9
    seed: Optional[int] = None
    rhat_threshold: float = 1.1

    def validate(self) -> None:
        if self.draws < 1:
            raise ValueError(f"draws must be >= 1, got {self.draws}")
        if self.tune < 0:
            raise ValueError(f"tune must be >= 0, got {self.tune}")
        if self.chains < 1:
            raise ValueError(f"chains must be >= 1, got {self.chains}")
        if not 0 < self.target_accept < 1:
            raise ValueError(f"target_accept must lie in (0, 1), got {self.target_accept}")
        if self.rhat_threshold <= 1:
            raise ValueError(f"rhat_threshold must exceed 1, got {self.rhat_threshold}")


@dataclass(frozen=True)
class MAPModel:
    """
    Random-effects model for one outcome type.

    Attributes:
        family: ``"binomial"``, ``"gaussian"`` or ``"poisson"``
        beta_prior: (mean, sd) of the normal prior on the population mean mu
        tau_prior: Prior of the between-study heterogeneity tau
        sigma: Reference scale of gaussian outcomes (derived from the data if None)
    """

    family: str
    beta_prior: Tuple[float, float]
    tau_prior: TauPrior = TauPrior()
    sigma: Optional[float] = None

    def validate(self) -> None:
        if self.family not in _LINKS:
            raise ValueError(f"Unknown MAP family {self.family!r}; use one of {sorted(_LINKS)}")
        if len(self.beta_prior) != 2:
            raise ValueError("beta_prior must be a (mean, sd) pair")
        mean, sd = self.beta_prior
        if not math.isfinite(mean) or not math.isfinite(sd) or sd <= 0:
            raise ValueError(f"beta_prior needs a finite mean and sd > 0, got {self.beta_prior}")
        self.tau_prior.validate()
        if self.sigma is not None:
            if self.family != "gaussian":
                raise ValueError("sigma applies to gaussian outcomes only")
            if self.sigma <= 0:
                raise ValueError(f"sigma must be positive, got {self.sigma}")

    @property
    def link(self) -> str:
        return _LINKS[self.family]

    @property
    def family_tag(self) -> FamilyTag:
        """Conjugate family the MAP prior is approximated with."""
        return _FAMILIES[self.family]

    @property
    def likelihood(self) -> str:
        return _LIKELIHOODS[self.family]

    def with_sigma(self, sigma: Optional[float]) -> "MAPModel":
        return replace(self, sigma=sigma)
