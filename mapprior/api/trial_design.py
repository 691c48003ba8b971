"""
mapprior.api.trial_design
=========================

Trial-design facade with clinical-trial terminology.

This module bundles the steps of a historical-borrowing design:

- `map_prior()`: historical studies -> MAP prior (robustified on request)
- `prior_summary()`: moments, quantiles and effective sample sizes of a prior
- `two_arm_trial()`: a look-by-look two-arm trial on a ledger
- `oc_table()`: operating characteristics of a two-arm design on a grid
- `export_table()`: write any result frame to CSV or Parquet

Examples
--------
>>> from mapprior.stats.common.mixture import mixbeta
>>> from mapprior.api.trial_design import oc_table, prior_summary, two_arm_trial
>>> control = mixbeta((0.8, 11, 29), (0.2, 1, 1))
>>> round(prior_summary(control)["mean"], 3)
0.32
>>> trial = two_arm_trial("ph2", treatment_prior=mixbeta((1.0, 1, 1)),
...                       control_prior=control, n_treatment=40, n_control=20)
>>> trial.design.decision.lower_diff
False
>>> table = oc_table(mixbeta((1.0, 1, 1)), control, 40, 20,
...                  trial.design.decision, theta1=[0.3, 0.5], theta2=0.3)
>>> table.columns
['theta1', 'theta2', 'prob_success']
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Union

import numpy as np
import polars as pl

from mapprior.backends.polars.io import PathLike, sink_for
from mapprior.stats.common.mixture import MixtureDistribution, SeedLike
from mapprior.stats.methods.decision.core import DecisionRule2S, decision2S
from mapprior.stats.methods.decision.operating import oc2S
from mapprior.stats.methods.ess.core import ess
from mapprior.stats.methods.mixture_algebra.core import robustify
from mapprior.stats.methods.mixture_fit.core import FitConfig, MixtureSelection
from mapprior.stats.schemes.map_prior.core import MAPResult, gMAP
from mapprior.stats.schemes.map_prior.data import GroupedDataSet
from mapprior.stats.schemes.map_prior.model import MAPModel, SamplerConfig, TauPrior
from mapprior.stats.schemes.map_prior.sampler import PosteriorSampler
from mapprior.stats.schemes.two_arm.template import TwoArmTrialTemplate

logger = logging.getLogger(__name__)

_DEFAULT_BETA_PRIOR = {
    "binomial": (0.0, 2.0),
    "poisson": (0.0, 2.0),
}


@dataclass(frozen=True)
class MAPPrior:
    """
    A MAP prior together with the steps that produced it.

    Attributes:
        result: Posterior of the meta-analytic model
        selection: Mixture approximation of the predictive draws
        prior: Selected mixture, robustified if requested
        robust_weight: Weight of the vague component (None: not robustified)
    """

    result: MAPResult
    selection: MixtureSelection
    prior: MixtureDistribution
    robust_weight: Optional[float] = None

    def ess(self, method: str = "elir") -> float:
        return ess(self.prior, method)


def map_prior(
    data: Union[GroupedDataSet, PathLike],
    outcome: Optional[str] = None,
    *,
    tau_scale: float = 1.0,
    tau_dist: str = "halfnormal",
    beta_prior: Optional[tuple[float, float]] = None,
    sigma: Optional[float] = None,
    robust_weight: Optional[float] = None,
    robust_mean: Optional[float] = None,
    sampler: Optional[PosteriorSampler] = None,
    sampler_config: Optional[SamplerConfig] = None,
    fit_config: Optional[FitConfig] = None,
    rng: SeedLike = None,
) -> MAPPrior:
    """
    Derive a (robust) MAP prior from historical studies.

    Parameters
    ----------
    data : GroupedDataSet or path
        Historical per-study summaries, or a CSV/Parquet file holding them
    outcome : {"binomial", "gaussian", "poisson"}, optional
        Outcome type of the studies; taken from a `GroupedDataSet`, and
        "binomial" for files when not given
    tau_scale : float, default=1.0
        Scale of the heterogeneity prior
    tau_dist : {"halfnormal", "halfcauchy"}, default="halfnormal"
        Heterogeneity prior family
    beta_prior : (mean, sd), optional
        Prior of the population mean on the link scale; binomial and poisson
        default to (0, 2), gaussian outcomes require it
    sigma : float, optional
        Reference scale of gaussian outcomes (derived from the data if None)
    robust_weight : float, optional
        Weight of a vague component added to the fitted mixture
    robust_mean : float, optional
        Mean of the vague component
    sampler, sampler_config
        Posterior sampler (PyMC by default) and its settings
    fit_config : FitConfig, optional
        Settings of the EM mixture approximation
    rng : int or Generator, optional
        Seed of the mixture fit

    Returns
    -------
    MAPPrior
        MAP posterior, mixture selection and the resulting prior
    """
    if isinstance(data, GroupedDataSet):
        if outcome is not None and outcome != data.outcome:
            raise ValueError(f"outcome {outcome!r} does not match {data.outcome!r} data")
        dataset = data
        outcome = data.outcome
    else:
        outcome = outcome or "binomial"
        dataset = GroupedDataSet.read(data, outcome)
    if beta_prior is None:
        if outcome not in _DEFAULT_BETA_PRIOR:
            raise ValueError(f"beta_prior is required for {outcome!r} outcomes")
        beta_prior = _DEFAULT_BETA_PRIOR[outcome]

    model = MAPModel(
        family=outcome,
        beta_prior=beta_prior,
        tau_prior=TauPrior(tau_dist, tau_scale),
        sigma=sigma,
    )
    result = gMAP(dataset, model, sampler=sampler, config=sampler_config)
    selection = result.fit_mixture(fit_config, rng=rng)
    prior = selection.mixture
    if robust_weight is not None:
        prior = robustify(prior, robust_weight, mean=robust_mean)
    logger.info(
        "MAP prior: %d-component %s mixture from %d studies",
        prior.n_components,
        prior.family.value,
        dataset.n_studies,
    )
    return MAPPrior(result=result, selection=selection, prior=prior, robust_weight=robust_weight)


def prior_summary(
    prior: MixtureDistribution, sigma: Optional[float] = None
) -> Dict[str, float]:
    """
    Mean, sd, quantiles and effective sample sizes of a mixture prior.

    Parameters
    ----------
    prior : MixtureDistribution
        Prior to summarise
    sigma : float, optional
        Reference scale for normal priors (defaults to the prior's)

    Returns
    -------
    Dict[str, float]
        ``mean``, ``sd``, quantiles ``q2.5``/``q50``/``q97.5`` and
        ``ess_elir``/``ess_moment``/``ess_morita``
    """
    out: Dict[str, float] = dict(prior.summary())
    for method in ("elir", "moment", "morita"):
        out[f"ess_{method}"] = ess(prior, method, sigma=sigma)
    return out


def two_arm_trial(
    experiment_id: str,
    *,
    treatment_prior: MixtureDistribution,
    control_prior: MixtureDistribution,
    n_treatment: float,
    n_control: float,
    threshold: float = 0.0,
    confidence: float = 0.975,
    higher_is_better: bool = True,
    link: str = "identity",
    futility: Optional[float] = None,
    report_pos: bool = False,
) -> TwoArmTrialTemplate:
    """
    Two-arm trial declaring success when treatment beats control.

    Success at a look means Pr(g(theta_t) - g(theta_c) > threshold) >
    confidence (or ``<`` with ``higher_is_better=False``).

    Parameters
    ----------
    experiment_id : str
        Unique identifier for the trial
    treatment_prior, control_prior : MixtureDistribution
        Analysis priors (e.g. a robust MAP prior for the control arm)
    n_treatment, n_control : float
        Planned total sample sizes
    threshold : float, default=0.0
        Required difference on the link scale
    confidence : float, default=0.975
        Posterior probability required for success
    higher_is_better : bool, default=True
        Direction of a favourable difference
    link : {"identity", "logit", "log"}, default="identity"
        Scale of the difference
    futility : float, optional
        Stop for futility when the interim probability of success drops below
    report_pos : bool, default=False
        Report the interim probability of success at every look

    Returns
    -------
    TwoArmTrialTemplate
        A configured trial ready for `SequentialRunner`
    """
    rule = decision2S(confidence, threshold, lower_diff=not higher_is_better, link=link)
    return TwoArmTrialTemplate(
        experiment_id,
        prior1=treatment_prior,
        prior2=control_prior,
        n1=n_treatment,
        n2=n_control,
        decision=rule,
        futility=futility,
        report_pos=report_pos,
    )


def oc_table(
    prior1: MixtureDistribution,
    prior2: MixtureDistribution,
    n1: float,
    n2: float,
    decision: DecisionRule2S,
    *,
    theta1: Union[float, Sequence[float]],
    theta2: Union[float, Sequence[float]],
    sigma1: Optional[float] = None,
    sigma2: Optional[float] = None,
) -> pl.DataFrame:
    """
    Probability of success of a two-arm design over a grid of true values.

    Parameters
    ----------
    prior1, prior2, n1, n2, decision, sigma1, sigma2
        Design, as for `oc2S`
    theta1, theta2 : float or sequence of float
        True parameters; the table holds their Cartesian product

    Returns
    -------
    pl.DataFrame
        Columns theta1, theta2 and prob_success
    """
    oc = oc2S(prior1, prior2, n1, n2, decision, sigma1, sigma2)
    t1, t2 = np.meshgrid(
        np.atleast_1d(np.asarray(theta1, dtype=float)),
        np.atleast_1d(np.asarray(theta2, dtype=float)),
        indexing="ij",
    )
    t1, t2 = t1.ravel(), t2.ravel()
    return pl.DataFrame(
        {
            "theta1": t1,
            "theta2": t2,
            "prob_success": np.asarray(oc(t1, t2), dtype=float),
        }
    )


def export_table(df: Any, path: PathLike) -> None:
    """Write a polars frame to ``.csv`` or ``.parquet`` (by extension)."""
    sink_for(path).write(df)
