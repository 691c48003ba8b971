"""
mapprior.stats.schemes.map_prior.core
=====================================

Derivation of Meta-Analytic-Predictive (MAP) priors.

`gMAP` fits the random-effects model of `MAPModel` to historical summaries
through a `PosteriorSampler` and returns a `MAPResult` holding the
predictive draws of a new study's parameter on the natural scale. The draws
are turned into a parametric mixture prior with `MAPResult.fit_mixture`,
which runs the EM fitting engine with information-criterion selection.

For gaussian outcomes without an explicit reference scale, sigma is derived
from the data as

    sigma = sqrt( sum_i n_i * (n_i * se_i^2) / sum_i n_i )

i.e. the sample-size weighted pooled sampling standard deviation.

Examples
--------
>>> import numpy as np
>>> from mapprior.stats.schemes.map_prior.core import gMAP
>>> from mapprior.stats.schemes.map_prior.data import GroupedDataSet
>>> from mapprior.stats.schemes.map_prior.model import MAPModel
>>> from mapprior.stats.schemes.map_prior.sampler import SamplerDiagnostics, SamplerResult
>>> class NormalDraws:
...     def sample(self, model, data, config):
...         rng = np.random.default_rng(0)
...         mu = rng.normal(-1.0, 0.1, 4000)
...         return SamplerResult(
...             draws={"mu": mu, "tau": np.full(4000, 0.2),
...                    "theta": np.tile(mu[:, None], (1, data.n_studies)),
...                    "theta_pred": mu + 0.2 * rng.normal(size=4000)},
...             diagnostics=SamplerDiagnostics.from_values(1.0, 1000.0, 0, 1.1),
...         )
>>> data = GroupedDataSet.from_records(
...     [{"study": "A", "n": 50, "r": 12}, {"study": "B", "n": 40, "r": 9}], outcome="binomial")
>>> result = gMAP(data, MAPModel("binomial", beta_prior=(0.0, 2.0)), sampler=NormalDraws())
>>> bool(0.2 < result.theta_pred.mean() < 0.35)
True
"""

from __future__ import annotations
import logging
import math
import warnings
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import numpy as np
import polars as pl

from mapprior.core.errors import SamplerConvergenceWarning
from mapprior.stats.common.mixture import SeedLike
from mapprior.stats.methods.mixture_algebra.core import get_link
from mapprior.stats.methods.mixture_fit.core import FitConfig, MixtureSelection, select_mixture
from mapprior.stats.schemes.map_prior.data import GroupedDataSet
from mapprior.stats.schemes.map_prior.model import MAPModel, SamplerConfig
from mapprior.stats.schemes.map_prior.sampler import (
    PosteriorSampler,
    PyMCSampler,
    SamplerDiagnostics,
)

logger = logging.getLogger(__name__)

SUMMARY_PROBS = (0.025, 0.5, 0.975)


def reference_scale(data: GroupedDataSet) -> float:
    """Pooled sampling sd of gaussian summaries, weighted by sample size."""
    if data.outcome != "gaussian":
        raise ValueError("A reference scale is defined for gaussian data only")
    if not data.has("n"):
        raise ValueError("Column 'n': needed to derive sigma; pass MAPModel(sigma=...)")
    n = data.column("n").astype(float)
    se = data.column("y_se").astype(float)
    return math.sqrt(float(np.sum(n * (n * se**2)) / np.sum(n)))


@dataclass(frozen=True)
class MAPResult:
    """
    Posterior of a MAP model.

    Attributes:
        model: Fitted model (with the resolved reference scale)
        data: Historical data
        draws: Link-scale draws of mu, tau, theta and theta_pred
        theta_pred: Predictive draws of a new study on the natural scale
        diagnostics: Sampler convergence summary
        warnings: Convergence problems reported by the sampler
    """

    model: MAPModel
    data: GroupedDataSet
    draws: Dict[str, np.ndarray]
    theta_pred: np.ndarray
    diagnostics: SamplerDiagnostics
    warnings: Tuple[str, ...] = ()

    @property
    def sigma(self) -> Optional[float]:
        return self.model.sigma

    def _natural(self, x: np.ndarray) -> np.ndarray:
        return np.asarray(get_link(self.model.link).inverse(x), dtype=float)

    def study_summary(self) -> pl.DataFrame:
        """Shrunken per-study estimates next to the observed ones."""
        theta = self._natural(np.asarray(self.draws["theta"]))
        qs = np.quantile(theta, SUMMARY_PROBS, axis=0)
        columns = {
            "study": self.data.studies,
            "observed": self.data.raw_estimates().astype(float),
            "mean": theta.mean(axis=0),
            "sd": theta.std(axis=0, ddof=1),
        }
        for p, q in zip(SUMMARY_PROBS, qs):
            columns[f"q{p * 100:g}"] = q
        return pl.DataFrame(columns)

    def summary(self) -> Dict[str, float]:
        """Mean, sd and quantiles of the MAP predictive and of tau."""
        out: Dict[str, float] = {
            "mean": float(np.mean(self.theta_pred)),
            "sd": float(np.std(self.theta_pred, ddof=1)),
        }
        for p, q in zip(SUMMARY_PROBS, np.quantile(self.theta_pred, SUMMARY_PROBS)):
            out[f"q{p * 100:g}"] = float(q)
        out["tau_median"] = float(np.median(self.draws["tau"]))
        return out

    def fit_mixture(
        self, config: Optional[FitConfig] = None, rng: SeedLike = None
    ) -> MixtureSelection:
        """
        Approximate the MAP predictive draws by a conjugate mixture.

        Sampler warnings are re-emitted and carried on the selection.
        """
        for message in self.warnings:
            warnings.warn(message, SamplerConvergenceWarning, stacklevel=2)
        return select_mixture(
            self.theta_pred,
            self.model.family_tag,
            likelihood=self.model.likelihood,
            sigma=self.model.sigma,
            config=config,
            rng=rng,
            warnings=self.warnings,
        )


def gMAP(
    data: GroupedDataSet,
    model: MAPModel,
    *,
    sampler: Optional[PosteriorSampler] = None,
    config: Optional[SamplerConfig] = None,
) -> MAPResult:
    """
    Fit the MAP model to historical data.

    Parameters
    ----------
    data : GroupedDataSet
        Historical per-study summaries
    model : MAPModel
        Outcome family and priors of the random-effects model
    sampler : PosteriorSampler, optional
        Posterior sampler; `PyMCSampler` if omitted
    config : SamplerConfig, optional
        Sampler settings

    Returns
    -------
    MAPResult
        Predictive draws, diagnostics and convergence warnings

    Raises
    ------
    ValueError
        Invalid model/config or data of a different outcome type
    """
    model.validate()
    cfg = config or SamplerConfig()
    cfg.validate()
    if data.outcome != model.family:
        raise ValueError(f"Model family {model.family!r} does not match {data.outcome!r} data")
    if model.family == "gaussian" and model.sigma is None:
        model = model.with_sigma(reference_scale(data))
        logger.info("Using data-derived reference scale sigma=%.4g", model.sigma)

    engine = sampler if sampler is not None else PyMCSampler()
    result = engine.sample(model, data, cfg)
    diagnostics = result.diagnostics

    problems = tuple(diagnostics.problems(cfg.rhat_threshold))
    for message in problems:
        logger.warning("MAP sampler: %s", message)
        warnings.warn(message, SamplerConvergenceWarning, stacklevel=2)

    theta_pred = np.asarray(
        get_link(model.link).inverse(np.asarray(result.draws["theta_pred"], dtype=float)),
        dtype=float,
    )
    logger.info(
        "MAP prior from %d studies: %d predictive draws, max R-hat %.3f",
        data.n_studies,
        theta_pred.size,
        diagnostics.max_rhat,
    )
    return MAPResult(
        model=model,
        data=data,
        draws=dict(result.draws),
        theta_pred=theta_pred,
        diagnostics=diagnostics,
        warnings=problems,
    )
