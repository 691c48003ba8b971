"""
mapprior.stats.schemes.map_prior.sampler
========================================

Boundary between the MAP scheme and a probabilistic-programming engine.

A `PosteriorSampler` turns a `MAPModel`, grouped data and a `SamplerConfig`
into a `SamplerResult`: posterior draws on the link scale (``mu``, ``tau``,
per-study ``theta`` with shape (draws, studies) and the new-study
``theta_pred``) together with convergence diagnostics.

`PyMCSampler` implements the protocol with PyMC (NUTS) and ArviZ, both
optional dependencies installed with the ``mcmc`` extra. Tests and callers
with their own engine provide any object with a matching `sample` method.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Dict, List, Protocol

import numpy as np

from mapprior.stats.schemes.map_prior.data import GroupedDataSet
from mapprior.stats.schemes.map_prior.model import MAPModel, SamplerConfig

logger = logging.getLogger(__name__)

DRAW_NAMES = ("mu", "tau", "theta", "theta_pred")


@dataclass(frozen=True)
class SamplerDiagnostics:
    """
    Convergence summary of one sampler run.

    Attributes:
        max_rhat: Largest split R-hat over mu, tau and the study effects
        min_ess_bulk: Smallest bulk effective sample size
        divergences: Number of divergent transitions after warm-up
        converged: R-hat below threshold and no divergences
    """

    max_rhat: float
    min_ess_bulk: float
    divergences: int
    converged: bool

    @classmethod
    def from_values(
        cls, max_rhat: float, min_ess_bulk: float, divergences: int, rhat_threshold: float
    ) -> "SamplerDiagnostics":
        converged = bool(np.isfinite(max_rhat) and max_rhat <= rhat_threshold and divergences == 0)
        return cls(
            max_rhat=float(max_rhat),
            min_ess_bulk=float(min_ess_bulk),
            divergences=int(divergences),
            converged=converged,
        )

    def problems(self, rhat_threshold: float) -> List[str]:
        """Human-readable reasons the run is not trustworthy."""
        out: List[str] = []
        if not np.isfinite(self.max_rhat) or self.max_rhat > rhat_threshold:
            out.append(f"max R-hat {self.max_rhat:.3f} exceeds {rhat_threshold}")
        if self.divergences:
            out.append(f"{self.divergences} divergent transitions")
        return out


@dataclass(frozen=True)
class SamplerResult:
    draws: Dict[str, np.ndarray]
    diagnostics: SamplerDiagnostics

    def __post_init__(self) -> None:
        missing = [k for k in DRAW_NAMES if k not in self.draws]
        if missing:
            raise ValueError(f"Sampler result lacks draws for {missing}")


class PosteriorSampler(Protocol):
    """Anything that can draw from the posterior of a MAP model."""

    def sample(
        self, model: MAPModel, data: GroupedDataSet, config: SamplerConfig
    ) -> SamplerResult: ...


class PyMCSampler:
    """
    NUTS sampling of the non-centred random-effects model with PyMC.

    Examples
    --------
    >>> sampler = PyMCSampler(progressbar=False)
    >>> sampler.progressbar
    False
    """

    def __init__(self, progressbar: bool = False) -> None:
        self.progressbar = progressbar

    def sample(
        self, model: MAPModel, data: GroupedDataSet, config: SamplerConfig
    ) -> SamplerResult:
        try:
            import arviz as az
            import pymc as pm
        except ImportError as exc:
            raise ImportError(
                "PyMCSampler needs PyMC and ArviZ; install mapprior[mcmc]"
            ) from exc

        n_studies = data.n_studies
        beta_mean, beta_sd = model.beta_prior
        with pm.Model():
            mu = pm.Normal("mu", mu=beta_mean, sigma=beta_sd)
            if model.tau_prior.dist == "halfnormal":
                tau = pm.HalfNormal("tau", sigma=model.tau_prior.scale)
            else:
                tau = pm.HalfCauchy("tau", beta=model.tau_prior.scale)
            z = pm.Normal("z", mu=0.0, sigma=1.0, shape=n_studies)
            theta = pm.Deterministic("theta", mu + tau * z)
            z_pred = pm.Normal("z_pred", mu=0.0, sigma=1.0)
            pm.Deterministic("theta_pred", mu + tau * z_pred)

            if model.family == "binomial":
                pm.Binomial("r", n=data.column("n"), logit_p=theta, observed=data.column("r"))
            elif model.family == "gaussian":
                pm.Normal("y", mu=theta, sigma=data.column("y_se"), observed=data.column("y"))
            else:
                pm.Poisson(
                    "y", mu=data.column("n") * pm.math.exp(theta), observed=data.column("y")
                )

            logger.info(
                "Sampling %s MAP model: %d studies, %d chains x %d draws",
                model.family,
                n_studies,
                config.chains,
                config.draws,
            )
            idata = pm.sample(
                draws=config.draws,
                tune=config.tune,
                chains=config.chains,
                target_accept=config.target_accept,
                random_seed=config.seed,
                progressbar=self.progressbar,
                return_inferencedata=True,
            )

        var_names = ["mu", "tau", "theta"]
        rhat = az.rhat(idata, var_names=var_names)
        ess_bulk = az.ess(idata, var_names=var_names, method="bulk")
        max_rhat = max(float(np.nanmax(rhat[v].values)) for v in var_names)
        min_ess = min(float(np.nanmin(ess_bulk[v].values)) for v in var_names)
        divergences = int(idata.sample_stats["diverging"].values.sum())

        post = idata.posterior
        draws = {
            "mu": post["mu"].values.reshape(-1),
            "tau": post["tau"].values.reshape(-1),
            "theta": post["theta"].values.reshape(-1, n_studies),
            "theta_pred": post["theta_pred"].values.reshape(-1),
        }
        diagnostics = SamplerDiagnostics.from_values(
            max_rhat, min_ess, divergences, config.rhat_threshold
        )
        return SamplerResult(draws=draws, diagnostics=diagnostics)
