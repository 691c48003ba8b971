"""
mapprior.stats.methods.mixture_fit.core
=======================================

Approximate a sample (typically MCMC draws of a MAP prior) by a finite
mixture of conjugate components.

For a fixed number of components K, `mixfit` runs Expectation-Maximisation:

1. Seed component memberships with k-means (`scipy.cluster.vq.kmeans2`,
   seeded from the injected generator) and start from per-cluster
   weighted maximum-likelihood estimates. `n_init` seedings are each run
   for `init_iter` iterations and only the best of them is iterated on.
   The second seeding groups the draws into shells around the median
   instead of k-means clusters.
2. E-step: responsibilities r_ik = w_k f_k(x_i) / sum_j w_j f_j(x_i),
   computed in log space.
3. M-step: w_k = mean_i r_ik, component parameters by the family's weighted
   maximum-likelihood step.
4. Stop once |LL_t - LL_{t-1}| <= tol * N, i.e. once the mean log-likelihood
   per draw moves by less than `tol`.

Components whose weight drops below `min_weight` are removed; normal
standard deviations are floored at ``min_sd_ratio * sd(sample)``. K = 1 is
solved directly and never fails.

`select_mixture` runs the fit for K = 1..max_components and keeps the K with
the smallest information criterion

    AIC = penalty * df - 2 * LL,   df = 3K - 1

(ties resolved towards fewer components). A fit that fails to converge is
logged and skipped, so the sweep always returns at least the K = 1 fit.

Examples
--------
>>> import numpy as np
>>> from mapprior.stats.methods.mixture_fit.core import automixfit
>>> rng = np.random.default_rng(1)
>>> draws = rng.beta(4, 12, size=2000)
>>> mix = automixfit(draws, "beta", rng=2)
>>> abs(mix.mean() - 0.25) < 0.01
True
"""

from __future__ import annotations
import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
import polars as pl
from scipy.cluster.vq import kmeans2
from scipy.special import logsumexp

from mapprior.core.errors import ConvergenceError, InsufficientDataError
from mapprior.core.names import FamilyTag
from mapprior.stats.common.families import ConjugateFamily, Params, get_family
from mapprior.stats.common.mixture import MixtureDistribution, SeedLike, as_generator

logger = logging.getLogger(__name__)

MIN_SAMPLES = 2


@dataclass(frozen=True)
class FitConfig:
    """
    Settings of the mixture fitting engine.

    Parameters
    ----------
    max_components : int, default=4
        Largest number of components tried by `select_mixture`
    tol : float, default=1e-7
        Tolerance on the change of the mean log-likelihood per draw
    max_iter : int, default=3000
        EM iteration cap of the start iterated to convergence, warm-up included
    n_init : int, default=5
        Number of k-means seedings tried
    init_iter : int, default=20
        EM iterations each seeding gets before the best one is kept
    min_weight : float, default=1e-8
        Components lighter than this are dropped
    min_sd_ratio : float, default=1e-6
        Floor of normal component sds relative to the sample sd
    penalty : float, default=2.0
        Multiplier of the degrees of freedom in the information criterion
    criterion : {"aic", "bic"}, default="aic"
        Information criterion used for selection

    Examples
    --------
    >>> FitConfig(max_components=3).validate()
    """

    max_components: int = 4
    tol: float = 1e-7
    max_iter: int = 3000
    n_init: int = 5
    init_iter: int = 20
    min_weight: float = 1e-8
    min_sd_ratio: float = 1e-6
    penalty: float = 2.0
    criterion: str = "aic"

    def validate(self) -> None:
        if self.max_components < 1:
            raise ValueError(f"max_components must be >= 1, got {self.max_components}")
        if self.tol <= 0:
            raise ValueError(f"tol must be positive, got {self.tol}")
        if self.max_iter < 1:
            raise ValueError(f"max_iter must be >= 1, got {self.max_iter}")
        if self.n_init < 1:
            raise ValueError(f"n_init must be >= 1, got {self.n_init}")
        if self.init_iter < 1:
            raise ValueError(f"init_iter must be >= 1, got {self.init_iter}")
        if not 0 <= self.min_weight < 1:
            raise ValueError(f"min_weight must lie in [0, 1), got {self.min_weight}")
        if self.penalty <= 0:
            raise ValueError(f"penalty must be positive, got {self.penalty}")
        if self.criterion not in ("aic", "bic"):
            raise ValueError(f"criterion must be 'aic' or 'bic', got {self.criterion}")


@dataclass(frozen=True)
class MixtureFit:
    """Result of fitting a K-component mixture."""

    mixture: MixtureDistribution
    n_components: int
    loglik: float
    aic: float
    bic: float
    iterations: int
    converged: bool
    n_samples: int

    def criterion(self, name: str) -> float:
        return self.aic if name == "aic" else self.bic


@dataclass(frozen=True)
class MixtureSelection:
    """
    All candidate fits of `select_mixture` and the selected one.

    Attributes:
        best: Selected fit
        fits: Successful fits, ordered by K
        failures: (K, message) pairs of fits that raised ConvergenceError
        criterion: Criterion used for selection
        warnings: Diagnostics propagated from upstream (e.g. the sampler)
    """

    best: MixtureFit
    fits: Tuple[MixtureFit, ...]
    failures: Tuple[Tuple[int, str], ...] = ()
    criterion: str = "aic"
    warnings: Tuple[str, ...] = ()

    @property
    def mixture(self) -> MixtureDistribution:
        return self.best.mixture

    def table(self) -> pl.DataFrame:
        """One row per candidate K with log-likelihood and criteria."""
        return pl.DataFrame(
            {
                "n_components": [f.n_components for f in self.fits],
                "loglik": [f.loglik for f in self.fits],
                "aic": [f.aic for f in self.fits],
                "bic": [f.bic for f in self.fits],
                "iterations": [f.iterations for f in self.fits],
                "converged": [f.converged for f in self.fits],
                "selected": [f is self.best for f in self.fits],
            }
        )


def clean_sample(sample: Sequence[float], family: Union[FamilyTag, str]) -> np.ndarray:
    """Drop non-finite values and values outside the family support."""
    impl = get_family(family)
    x = np.asarray(sample, dtype=float).ravel()
    x = x[impl.in_support(x)]
    if x.size < MIN_SAMPLES:
        raise InsufficientDataError(
            f"Need at least {MIN_SAMPLES} valid {impl.tag.value} draws, got {x.size}"
        )
    return x


def _loglik_terms(
    x: np.ndarray, impl: ConjugateFamily, weights: np.ndarray, params: List[Params]
) -> np.ndarray:
    """Joint log densities log w_k + log f_k(x_i), shape (K, N)."""
    with np.errstate(divide="ignore"):
        log_w = np.log(weights)[:, None]
    return log_w + np.stack([impl.logpdf(x, p) for p in params])


def _information(loglik: float, k: int, n: int, penalty: float) -> Tuple[float, float]:
    df = 3 * k - 1
    return penalty * df - 2 * loglik, math.log(n) * df - 2 * loglik


def _build(
    family: FamilyTag,
    weights: Sequence[float],
    params: Sequence[Params],
    likelihood: Optional[str],
    sigma: Optional[float],
) -> MixtureDistribution:
    return MixtureDistribution(
        family=family,
        weights=tuple(float(w) for w in weights),
        params=tuple(params),
        sigma=sigma if family is FamilyTag.NORMAL else None,
        likelihood=likelihood or "",
    )


def _floor_params(impl: ConjugateFamily, params: Params, min_sd: float) -> Params:
    if impl.tag is FamilyTag.NORMAL:
        return (params[0], max(params[1], min_sd))
    return params


def _seed_params(
    x: np.ndarray,
    k: int,
    impl: ConjugateFamily,
    rng: np.random.Generator,
    min_sd: float,
    shells: bool = False,
) -> Tuple[np.ndarray, List[Params]]:
    """
    Cluster on a family-appropriate scale and fit each cluster.

    Clusters are k-means groups, or with ``shells`` equal-count shells by
    distance from the median (innermost first), which starts a narrow core
    next to broad tail components.
    """
    if impl.tag is FamilyTag.BETA:
        z = np.log(x) - np.log1p(-x)
    elif impl.tag is FamilyTag.GAMMA:
        z = np.log(x)
    else:
        z = x
    if shells:
        distance = np.abs(z - np.median(z))
        labels = np.argsort(np.argsort(distance, kind="stable")) * k // z.size
    else:
        seed = int(rng.integers(0, 2**31 - 1))
        _, labels = kmeans2(z.reshape(-1, 1), k, minit="++", seed=seed)

    weights: List[float] = []
    params: List[Params] = []
    for j in range(k):
        members = x[labels == j]
        if members.size < 2:
            continue
        w = np.ones(members.size)
        weights.append(members.size / x.size)
        params.append(_floor_params(impl, impl.weighted_mle(members, w), min_sd))

    if not params:
        params = [_floor_params(impl, impl.weighted_mle(x, np.ones(x.size)), min_sd)]
        weights = [1.0]
    w_arr = np.asarray(weights)
    return w_arr / w_arr.sum(), params


@dataclass(frozen=True)
class _EMRun:
    weights: np.ndarray
    params: List[Params]
    loglik: float
    iterations: int
    converged: bool


def _em(
    x: np.ndarray,
    impl: ConjugateFamily,
    weights: np.ndarray,
    params: List[Params],
    cfg: FitConfig,
    min_sd: float,
    max_iter: int,
) -> _EMRun:
    """Iterate EM from the given start for at most ``max_iter`` iterations."""
    limit = cfg.tol * x.size
    loglik = -math.inf
    converged = False
    iteration = 0
    for iteration in range(1, max_iter + 1):
        # E-step
        joint = _loglik_terms(x, impl, weights, params)
        norm = logsumexp(joint, axis=0)
        new_loglik = float(np.sum(norm))
        resp = np.exp(joint - norm)

        if math.isfinite(loglik) and abs(new_loglik - loglik) <= limit:
            loglik = new_loglik
            converged = True
            break
        loglik = new_loglik

        # M-step
        weights = resp.mean(axis=1)
        keep = weights >= cfg.min_weight
        if not keep.all():
            logger.debug(
                "Dropping %d degenerate component(s) at iteration %d",
                int((~keep).sum()),
                iteration,
            )
            resp = resp[keep]
            weights = weights[keep] / weights[keep].sum()
        params = [_floor_params(impl, impl.weighted_mle(x, r), min_sd) for r in resp]
    return _EMRun(weights, params, loglik, iteration, converged)


def mixfit(
    sample: Sequence[float],
    family: Union[FamilyTag, str],
    n_components: int,
    *,
    likelihood: Optional[str] = None,
    sigma: Optional[float] = None,
    config: Optional[FitConfig] = None,
    rng: SeedLike = None,
) -> MixtureFit:
    """
    Fit a mixture with a fixed number of components by EM.

    Args:
        sample: Draws to approximate
        family: Conjugate family of the components
        n_components: Number of components K
        likelihood: Likelihood tag of the resulting mixture (Gamma)
        sigma: Reference scale attached to normal mixtures
        config: Fitting settings
        rng: Seed or generator for the k-means seedings

    Returns:
        MixtureFit with the fitted mixture and its log-likelihood; with
        several seedings, the one with the highest warm-up log-likelihood

    Raises:
        InsufficientDataError: fewer than two valid draws
        ConvergenceError: EM hit the iteration cap
    """
    cfg = config or FitConfig()
    cfg.validate()
    if n_components < 1:
        raise ValueError(f"n_components must be >= 1, got {n_components}")
    impl = get_family(family)
    x = clean_sample(sample, impl.tag)
    gen = as_generator(rng)
    n = x.size
    sd_x = float(np.std(x))
    min_sd = cfg.min_sd_ratio * sd_x if sd_x > 0 else cfg.min_sd_ratio

    if n_components == 1:
        params = _floor_params(impl, impl.weighted_mle(x, np.ones(n)), min_sd)
        loglik = float(np.sum(impl.logpdf(x, params)))
        aic, bic = _information(loglik, 1, n, cfg.penalty)
        mix = _build(impl.tag, [1.0], [params], likelihood, sigma)
        return MixtureFit(mix, 1, loglik, aic, bic, 1, True, n)

    def start(max_iter: int, shells: bool = False) -> _EMRun:
        weights, params = _seed_params(x, n_components, impl, gen, min_sd, shells)
        return _em(x, impl, weights, params, cfg, min_sd, max_iter)

    if cfg.n_init == 1:
        run = start(cfg.max_iter)
    else:
        warm_up = min(cfg.init_iter, cfg.max_iter)
        # the second seeding splits by spread, the others by location
        starts = [start(warm_up, shells=i == 1) for i in range(cfg.n_init)]
        run = max(starts, key=lambda s: s.loglik)
        logger.debug(
            "K=%d: best of %d seedings has loglik=%.4f after %d iterations",
            n_components,
            cfg.n_init,
            run.loglik,
            run.iterations,
        )
        if not run.converged and cfg.max_iter > run.iterations:
            remaining = cfg.max_iter - run.iterations
            rest = _em(x, impl, run.weights, run.params, cfg, min_sd, remaining)
            run = _EMRun(
                rest.weights,
                rest.params,
                rest.loglik,
                run.iterations + rest.iterations,
                rest.converged,
            )

    k = len(run.params)
    mix = _build(impl.tag, run.weights, run.params, likelihood, sigma)
    if not run.converged:
        raise ConvergenceError(
            f"EM for {n_components} {impl.tag.value} components did not converge "
            f"within {cfg.max_iter} iterations",
            n_components=n_components,
            iterations=run.iterations,
            loglik=run.loglik,
            last=mix,
        )

    aic, bic = _information(run.loglik, k, n, cfg.penalty)
    logger.debug(
        "EM fit K=%d (%d kept) converged after %d iterations, loglik=%.4f",
        n_components,
        k,
        run.iterations,
        run.loglik,
    )
    return MixtureFit(mix, k, run.loglik, aic, bic, run.iterations, True, n)


def select_mixture(
    sample: Sequence[float],
    family: Union[FamilyTag, str],
    *,
    likelihood: Optional[str] = None,
    sigma: Optional[float] = None,
    config: Optional[FitConfig] = None,
    rng: SeedLike = None,
    warnings: Sequence[str] = (),
) -> MixtureSelection:
    """
    Fit K = 1..max_components and select by information criterion.

    Args:
        sample: Draws to approximate
        family: Conjugate family of the components
        likelihood: Likelihood tag of the resulting mixture (Gamma)
        sigma: Reference scale attached to normal mixtures
        config: Fitting settings
        rng: Seed or generator (one generator drives all candidate fits)
        warnings: Upstream diagnostics to carry on the result

    Returns:
        MixtureSelection with every candidate and the selected fit
    """
    cfg = config or FitConfig()
    cfg.validate()
    impl = get_family(family)
    x = clean_sample(sample, impl.tag)
    gen = as_generator(rng)

    fits: List[MixtureFit] = []
    failures: List[Tuple[int, str]] = []
    for k in range(1, cfg.max_components + 1):
        if x.size < 2 * k:
            logger.info("Skipping K=%d: only %d draws available", k, x.size)
            break
        try:
            fit = mixfit(
                x,
                impl.tag,
                k,
                likelihood=likelihood,
                sigma=sigma,
                config=cfg,
                rng=gen,
            )
        except ConvergenceError as exc:
            logger.warning("Mixture fit with K=%d skipped: %s", k, exc)
            failures.append((k, str(exc)))
            continue
        fits.append(fit)

    # K = 1 never raises, so fits is never empty here.
    best = fits[0]
    for fit in fits[1:]:
        if fit.criterion(cfg.criterion) < best.criterion(cfg.criterion):
            best = fit
    logger.info(
        "Selected %d-component %s mixture (%s=%.3f)",
        best.n_components,
        impl.tag.value,
        cfg.criterion.upper(),
        best.criterion(cfg.criterion),
    )
    return MixtureSelection(
        best=best,
        fits=tuple(fits),
        failures=tuple(failures),
        criterion=cfg.criterion,
        warnings=tuple(warnings),
    )


def automixfit(
    sample: Sequence[float],
    family: Union[FamilyTag, str],
    *,
    likelihood: Optional[str] = None,
    sigma: Optional[float] = None,
    config: Optional[FitConfig] = None,
    rng: SeedLike = None,
) -> MixtureDistribution:
    """Mixture with the number of components chosen by information criterion."""
    return select_mixture(
        sample, family, likelihood=likelihood, sigma=sigma, config=config, rng=rng
    ).mixture
