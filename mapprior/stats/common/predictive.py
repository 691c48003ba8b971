"""
mapprior.stats.common.predictive
================================

Distributions of future trial data.

`DataModel` ties a conjugate family to the data of one trial arm with `n`
patients (or units of exposure):

- Beta prior: number of responders ``r ~ Binomial(n, theta)``
- Gamma prior (Poisson likelihood): total count ``y ~ Poisson(n * theta)``
- Normal prior: sample mean ``y ~ N(theta, sigma / sqrt(n))``

Conditional on a fixed parameter it gives the *sampling* distribution; mixed
over a mixture it gives the *prior predictive* distribution returned by
`preddist()`:

- Beta mixture: mixture of beta-binomials
- Gamma mixture: mixture of negative binomials ``NB(a, b / (b + n))``
- Normal mixture: mixture of normals ``N(m_k, sqrt(s_k^2 + sigma^2 / n))``

Examples
--------
>>> from mapprior.stats.common.mixture import mixbeta
>>> from mapprior.stats.common.predictive import preddist
>>> pred = preddist(mixbeta((1.0, 1, 1)), n=10)
>>> round(float(pred.pmf(3)), 6)  # uniform prior: every count equally likely
0.090909
"""

from __future__ import annotations
import math
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

import numpy as np
from scipy import stats
from scipy.optimize import brentq

from mapprior.core.errors import DomainError
from mapprior.core.names import FamilyTag
from mapprior.stats.common.families import (
    BinomialData,
    NormalData,
    PoissonData,
    SufficientStatistic,
)
from mapprior.stats.common.mixture import MixtureDistribution, SeedLike, as_generator


@dataclass(frozen=True)
class DataModel:
    """
    Data of one trial arm.

    Attributes:
        family: Family of the prior on the arm parameter
        n: Patients (binomial, normal) or exposure (Poisson)
        sigma: Sampling sd of one observation (normal only)
        likelihood: Likelihood of the prior (Gamma: must be "poisson")
    """

    family: FamilyTag
    n: float
    sigma: Optional[float] = None
    likelihood: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "family", FamilyTag(self.family))
        if self.n <= 0:
            raise ValueError(f"Sample size must be positive, got {self.n}")
        if self.family is FamilyTag.NORMAL:
            if self.sigma is None or self.sigma <= 0:
                raise ValueError("Normal data models need a positive sigma")
        if self.family is FamilyTag.GAMMA and self.likelihood == "exp":
            raise ValueError(
                "Designs with exponential likelihood are not supported; use Poisson counts"
            )
        if self.family is FamilyTag.BETA and int(self.n) != self.n:
            raise ValueError(f"Binomial sample size must be an integer, got {self.n}")

    @classmethod
    def for_prior(
        cls, prior: MixtureDistribution, n: float, sigma: Optional[float] = None
    ) -> "DataModel":
        """Data model matching `prior`, taking sigma from the prior if not given."""
        if prior.family is FamilyTag.NORMAL and sigma is None:
            sigma = prior.sigma
        return cls(family=prior.family, n=n, sigma=sigma, likelihood=prior.likelihood)

    @property
    def discrete(self) -> bool:
        return self.family is not FamilyTag.NORMAL

    @property
    def se(self) -> float:
        """Standard error of the arm mean (normal only)."""
        assert self.sigma is not None
        return self.sigma / math.sqrt(self.n)

    def sampling(self, theta: Any) -> Any:
        """Frozen scipy distribution of the arm data given the true parameter."""
        if self.family is FamilyTag.BETA:
            return stats.binom(int(self.n), theta)
        if self.family is FamilyTag.GAMMA:
            return stats.poisson(np.multiply(self.n, theta))
        return stats.norm(theta, self.se)

    def observe(self, y: float) -> SufficientStatistic:
        """Sufficient statistic of observing `y` in this arm."""
        if self.family is FamilyTag.BETA:
            return BinomialData(n=int(self.n), r=int(y))
        if self.family is FamilyTag.GAMMA:
            return PoissonData(n=self.n, y=float(y))
        return NormalData(m=float(y), se=self.se)

    def upper_count(self, dist: Any, eps: float) -> int:
        """Largest count worth summing over for a discrete distribution."""
        if self.family is FamilyTag.BETA:
            return int(self.n)
        return int(np.max(dist.ppf(1 - eps)))

    def predictive(self, mix: MixtureDistribution) -> "PredictiveMixture":
        return PredictiveMixture(mixture=mix, model=self)


@dataclass(frozen=True)
class PredictiveMixture:
    """
    Prior predictive distribution of the data of one arm.

    Discrete predictives (counts) expose `pmf`; the normal predictive (of a
    sample mean) exposes `pdf`. Both expose `cdf`, `sf`, `ppf`, `mean`,
    `var` and `sample`.
    """

    mixture: MixtureDistribution
    model: DataModel
    _dists: Tuple[Any, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.mixture.family is not self.model.family:
            raise DomainError("Data model and mixture belong to different families")
        dists: List[Any] = []
        n = self.model.n
        for a, b in self.mixture.params:
            if self.model.family is FamilyTag.BETA:
                dists.append(stats.betabinom(int(n), a, b))
            elif self.model.family is FamilyTag.GAMMA:
                dists.append(stats.nbinom(a, b / (b + n)))
            else:
                dists.append(stats.norm(a, math.sqrt(b**2 + self.model.se**2)))
        object.__setattr__(self, "_dists", tuple(dists))

    @property
    def discrete(self) -> bool:
        return self.model.discrete

    def _mix(self, method: str, y: Any) -> Any:
        y_arr = np.asarray(y, dtype=float)
        out = sum(
            w * getattr(d, method)(y_arr) for w, d in zip(self.mixture.weights, self._dists)
        )
        return float(out) if np.ndim(out) == 0 else np.asarray(out)

    def pmf(self, y: Any) -> Any:
        if not self.discrete:
            raise ValueError("Normal predictive distributions have a density, use pdf()")
        return self._mix("pmf", y)

    def pdf(self, y: Any) -> Any:
        if self.discrete:
            raise ValueError("Count predictive distributions have a mass function, use pmf()")
        return self._mix("pdf", y)

    def cdf(self, y: Any) -> Any:
        return self._mix("cdf", y)

    def sf(self, y: Any) -> Any:
        return self._mix("sf", y)

    def ppf(self, q: float) -> float:
        """Smallest y with cdf(y) >= q (counts) or the root of cdf(y) = q."""
        if not 0 < q < 1:
            raise ValueError(f"Quantile level must lie in (0, 1), got {q}")
        candidates = [float(d.ppf(q)) for d in self._dists]
        lo, hi = min(candidates), max(candidates)
        if lo == hi:
            return lo
        if self.discrete:
            ys = np.arange(int(lo), int(hi) + 1)
            cdf = np.asarray(self.cdf(ys))
            return float(ys[np.argmax(cdf >= q)])
        return float(brentq(lambda y: self.cdf(y) - q, lo, hi, xtol=1e-12))

    def mean(self) -> float:
        return float(sum(w * d.mean() for w, d in zip(self.mixture.weights, self._dists)))

    def var(self) -> float:
        mu = self.mean()
        second = sum(
            w * (d.var() + d.mean() ** 2) for w, d in zip(self.mixture.weights, self._dists)
        )
        return float(max(second - mu**2, 0.0))

    def upper_count(self, eps: float) -> int:
        """Largest count worth summing over (discrete only)."""
        if self.model.family is FamilyTag.BETA:
            return int(self.model.n)
        return int(max(d.ppf(1 - eps) for d in self._dists))

    def sample(self, size: int, rng: SeedLike = None) -> np.ndarray:
        gen = as_generator(rng)
        labels = gen.choice(len(self._dists), size=size, p=np.asarray(self.mixture.weights))
        out = np.empty(size, dtype=float)
        for k, d in enumerate(self._dists):
            idx = np.flatnonzero(labels == k)
            if idx.size:
                out[idx] = d.rvs(size=idx.size, random_state=gen)
        return out


def preddist(
    mix: MixtureDistribution, n: float, sigma: Optional[float] = None
) -> PredictiveMixture:
    """
    Prior predictive distribution of the data of a future arm.

    Args:
        mix: Mixture prior (or posterior) of the arm parameter
        n: Patients (binomial, normal) or exposure (Poisson) of the arm
        sigma: Sampling sd for normal data; defaults to the mixture's sigma

    Returns:
        PredictiveMixture over responder counts, total counts or sample means

    Examples:
        >>> from mapprior.stats.common.mixture import mixnorm
        >>> pred = preddist(mixnorm((1.0, 0.0, 1.0), sigma=2.0), n=4)
        >>> round(pred.var(), 6)
        2.0
    """
    return DataModel.for_prior(mix, n, sigma).predictive(mix)
