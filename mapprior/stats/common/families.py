"""
mapprior.stats.common.families
==============================

Conjugate families a mixture prior is built from.

Each family is a concrete subclass of `ConjugateFamily` and is registered
under its `FamilyTag`; callers obtain the singleton with `get_family()`.
A family knows its density, its conjugate update rule together with the
marginal (prior predictive) likelihood of the observed data and the weighted
maximum-likelihood step used by EM.

Mathematical Background
-----------------------

**Beta / binomial** (r successes out of n):
    Beta(a, b) -> Beta(a + r, b + n - r)
    log m(r) = log C(n, r) + log B(a + r, b + n - r) - log B(a, b)

**Normal / normal with known standard error** (mean y, standard error se):
    N(m, s^2) -> N((m/s^2 + y/se^2) / (1/s^2 + 1/se^2), 1 / (1/s^2 + 1/se^2))
    log m(y) = log N(y | m, s^2 + se^2)

**Gamma / Poisson** (total count y over n units of exposure):
    Gamma(a, b) -> Gamma(a + y, b + n)
    log m(y) = a log b - (a + y) log(b + n) + log Gamma(a + y) - log Gamma(a)

**Gamma / exponential** (n event times with sum y):
    Gamma(a, b) -> Gamma(a + n, b + y)
    log m(y) = a log b - (a + n) log(b + y) + log Gamma(a + n) - log Gamma(a)

For the Poisson case the data-only term ``-sum log y_i!`` is the same for all
components and is dropped.

Examples
--------
>>> from mapprior.core.names import FamilyTag
>>> from mapprior.stats.common.families import get_family, BinomialData
>>> beta = get_family(FamilyTag.BETA)
>>> params, _ = beta.update((1.0, 1.0), BinomialData(n=10, r=3))
>>> params
(4.0, 8.0)
"""

from __future__ import annotations
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional, Tuple, Union

import numpy as np
from scipy import stats
from scipy.optimize import brentq, minimize
from scipy.special import betainc, betaln, digamma, gammainc, gammaln, ndtr

from mapprior.core.errors import DomainError
from mapprior.core.names import FamilyTag

Params = Tuple[float, float]
ArrayLike = Union[float, np.ndarray]


# --- Sufficient statistics of observed data ---


@dataclass(frozen=True)
class BinomialData:
    """r responders out of n patients."""

    n: int
    r: int


@dataclass(frozen=True)
class NormalData:
    """Observed mean `m` with standard error `se`."""

    m: float
    se: float


@dataclass(frozen=True)
class PoissonData:
    """Total event count `y` over `n` units of exposure."""

    n: float
    y: float


@dataclass(frozen=True)
class ExponentialData:
    """`n` event times summing to `y`."""

    n: float
    y: float


SufficientStatistic = Union[BinomialData, NormalData, PoissonData, ExponentialData]


class ConjugateFamily(ABC):
    """
    Interface of a single conjugate family.

    Parameters are always passed as a ``(p1, p2)`` pair: ``(a, b)`` for Beta,
    ``(shape, rate)`` for Gamma and ``(mean, sd)`` for Normal.
    """

    tag: FamilyTag
    param_names: Tuple[str, str]
    likelihoods: Tuple[str, ...]

    @property
    def default_likelihood(self) -> str:
        return self.likelihoods[0]

    @property
    @abstractmethod
    def support(self) -> Tuple[float, float]:
        """Open interval the density lives on."""

    @abstractmethod
    def validate(self, params: Params) -> None:
        """Raise `DomainError` for parameters outside the family domain."""

    @abstractmethod
    def dist(self, params: Params) -> stats.rv_continuous:
        """Frozen scipy distribution for one component."""

    def logpdf(self, x: ArrayLike, params: Params) -> ArrayLike:
        return self.dist(params).logpdf(x)

    def pdf(self, x: ArrayLike, params: Params) -> ArrayLike:
        return np.exp(self.logpdf(x, params))

    def cdf(self, x: ArrayLike, params: Params) -> ArrayLike:
        return self.dist(params).cdf(x)

    def ppf(self, q: ArrayLike, params: Params) -> ArrayLike:
        return self.dist(params).ppf(q)

    def rvs(self, params: Params, size: int, rng: np.random.Generator) -> np.ndarray:
        return np.asarray(self.dist(params).rvs(size=size, random_state=rng))

    def mean(self, params: Params) -> float:
        return float(self.dist(params).mean())

    def var(self, params: Params) -> float:
        return float(self.dist(params).var())

    @abstractmethod
    def mode(self, params: Params) -> float:
        """Location of the density maximum (may sit on the support boundary)."""

    @abstractmethod
    def dlogpdf(self, x: ArrayLike, params: Params) -> ArrayLike:
        """First derivative of the log density in x."""

    @abstractmethod
    def d2logpdf(self, x: ArrayLike, params: Params) -> ArrayLike:
        """Second derivative of the log density in x."""

    @abstractmethod
    def from_moments(self, mean: float, var: float) -> Params:
        """Parameters of the component with the given mean and variance."""

    @abstractmethod
    def from_mean_n(
        self,
        mean: float,
        n: float,
        *,
        likelihood: Optional[str] = None,
        sigma: Optional[float] = None,
    ) -> Params:
        """Parameters of the component worth `n` observations with the given mean."""

    def vague(
        self,
        mean: Optional[float] = None,
        n: float = 1.0,
        *,
        likelihood: Optional[str] = None,
        sigma: Optional[float] = None,
    ) -> Params:
        """Weakly informative component worth `n` observations (unit information)."""
        if mean is None:
            raise ValueError(f"A vague {self.tag.value} component needs its mean")
        return self.from_mean_n(mean, n, likelihood=likelihood, sigma=sigma)

    @abstractmethod
    def update(
        self,
        params: Params,
        data: SufficientStatistic,
        likelihood: Optional[str] = None,
    ) -> Tuple[Params, float]:
        """Return (posterior parameters, log marginal likelihood of data)."""

    @abstractmethod
    def weighted_mle(self, x: np.ndarray, w: np.ndarray) -> Params:
        """Weighted maximum-likelihood estimate (EM M-step)."""

    def in_support(self, x: np.ndarray) -> np.ndarray:
        lo, hi = self.support
        return np.isfinite(x) & (x > lo) & (x < hi)

    def check_likelihood(self, likelihood: Optional[str]) -> str:
        lik = likelihood or self.default_likelihood
        if lik not in self.likelihoods:
            raise DomainError(
                f"{self.tag.value} family supports likelihoods {self.likelihoods}, got {lik!r}"
            )
        return lik

    def _expect(self, data: SufficientStatistic, *types: type) -> None:
        if not isinstance(data, types):
            names = ", ".join(t.__name__ for t in types)
            raise DomainError(
                f"{self.tag.value} family expects {names}, got {type(data).__name__}"
            )


# --- Beta ---


class BetaFamily(ConjugateFamily):
    """Beta(a, b) components for response rates (binomial likelihood)."""

    tag = FamilyTag.BETA
    param_names = ("a", "b")
    likelihoods = ("binomial",)

    @property
    def support(self) -> Tuple[float, float]:
        return (0.0, 1.0)

    def validate(self, params: Params) -> None:
        a, b = params
        if not (math.isfinite(a) and math.isfinite(b)) or a <= 0 or b <= 0:
            raise DomainError(f"Beta parameters must be positive, got a={a}, b={b}")

    def dist(self, params: Params) -> stats.rv_continuous:
        return stats.beta(params[0], params[1])

    def logpdf(self, x: ArrayLike, params: Params) -> ArrayLike:
        a, b = params
        x = np.asarray(x, dtype=float)
        inside = (x > 0) & (x < 1)
        xc = np.where(inside, x, 0.5)
        out = (a - 1) * np.log(xc) + (b - 1) * np.log1p(-xc) - betaln(a, b)
        return np.where(inside, out, -np.inf)

    def cdf(self, x: ArrayLike, params: Params) -> ArrayLike:
        return betainc(params[0], params[1], np.clip(x, 0.0, 1.0))

    def mode(self, params: Params) -> float:
        a, b = params
        if a > 1 and b > 1:
            return (a - 1) / (a + b - 2)
        if a <= 1 and b > 1:
            return 0.0
        if a > 1 and b <= 1:
            return 1.0
        # U-shaped or uniform
        return 0.5 if a == b else (0.0 if a < b else 1.0)

    def dlogpdf(self, x: ArrayLike, params: Params) -> ArrayLike:
        a, b = params
        return (a - 1) / x - (b - 1) / (1 - x)

    def d2logpdf(self, x: ArrayLike, params: Params) -> ArrayLike:
        a, b = params
        return -(a - 1) / x**2 - (b - 1) / (1 - x) ** 2

    def from_moments(self, mean: float, var: float) -> Params:
        if not 0 < mean < 1:
            raise DomainError(f"Beta mean must lie in (0, 1), got {mean}")
        if not 0 < var < mean * (1 - mean):
            raise DomainError(
                f"Beta variance must lie in (0, mean*(1-mean)), got {var} for mean {mean}"
            )
        n = mean * (1 - mean) / var - 1
        return (mean * n, (1 - mean) * n)

    def from_mean_n(
        self,
        mean: float,
        n: float,
        *,
        likelihood: Optional[str] = None,
        sigma: Optional[float] = None,
    ) -> Params:
        if not 0 < mean < 1 or n <= 0:
            raise DomainError(f"Beta needs mean in (0, 1) and n > 0, got {mean}, {n}")
        return (mean * n, (1 - mean) * n)

    def vague(
        self,
        mean: Optional[float] = None,
        n: float = 1.0,
        *,
        likelihood: Optional[str] = None,
        sigma: Optional[float] = None,
    ) -> Params:
        return self.from_mean_n(0.5 if mean is None else mean, n)

    def update(
        self,
        params: Params,
        data: SufficientStatistic,
        likelihood: Optional[str] = None,
    ) -> Tuple[Params, float]:
        self._expect(data, BinomialData)
        assert isinstance(data, BinomialData)
        a, b = params
        n, r = data.n, data.r
        if n < 0 or r < 0 or r > n:
            raise ValueError(f"Binomial data needs 0 <= r <= n, got n={n}, r={r}")
        log_choose = gammaln(n + 1) - gammaln(r + 1) - gammaln(n - r + 1)
        log_marginal = log_choose + betaln(a + r, b + n - r) - betaln(a, b)
        return (a + r, b + n - r), float(log_marginal)

    def weighted_mle(self, x: np.ndarray, w: np.ndarray) -> Params:
        eps = 1e-12
        x = np.clip(x, eps, 1 - eps)
        total = w.sum()
        mean_log_x = float(np.dot(w, np.log(x)) / total)
        mean_log_1mx = float(np.dot(w, np.log1p(-x)) / total)

        # Start from weighted moments
        m = float(np.dot(w, x) / total)
        v = float(np.dot(w, (x - m) ** 2) / total)
        m = min(max(m, 1e-6), 1 - 1e-6)
        v = min(max(v, 1e-12), 0.999 * m * (1 - m))
        a0, b0 = self.from_moments(m, v)

        def nll(log_ab: np.ndarray) -> Tuple[float, np.ndarray]:
            a, b = np.exp(log_ab)
            value = -((a - 1) * mean_log_x + (b - 1) * mean_log_1mx - betaln(a, b))
            dig_ab = digamma(a + b)
            grad_a = -(mean_log_x - digamma(a) + dig_ab)
            grad_b = -(mean_log_1mx - digamma(b) + dig_ab)
            return float(value), np.array([grad_a * a, grad_b * b])

        result = minimize(
            nll,
            x0=np.log([a0, b0]),
            jac=True,
            method="L-BFGS-B",
            bounds=[(-20.0, 20.0), (-20.0, 20.0)],
        )
        a, b = np.exp(result.x)
        return (float(a), float(b))



# --- Gamma ---


class GammaFamily(ConjugateFamily):
    """Gamma(shape a, rate b) components for event rates (Poisson) or hazards (exponential)."""

    tag = FamilyTag.GAMMA
    param_names = ("a", "b")
    likelihoods = ("poisson", "exp")

    @property
    def support(self) -> Tuple[float, float]:
        return (0.0, math.inf)

    def validate(self, params: Params) -> None:
        a, b = params
        if not (math.isfinite(a) and math.isfinite(b)) or a <= 0 or b <= 0:
            raise DomainError(
                f"Gamma shape and rate must be positive, got a={a}, b={b}"
            )

    def dist(self, params: Params) -> stats.rv_continuous:
        return stats.gamma(params[0], scale=1.0 / params[1])

    def logpdf(self, x: ArrayLike, params: Params) -> ArrayLike:
        a, b = params
        x = np.asarray(x, dtype=float)
        inside = x > 0
        xc = np.where(inside, x, 1.0)
        out = a * math.log(b) + (a - 1) * np.log(xc) - b * xc - gammaln(a)
        return np.where(inside, out, -np.inf)

    def cdf(self, x: ArrayLike, params: Params) -> ArrayLike:
        return gammainc(params[0], params[1] * np.maximum(x, 0.0))

    def mode(self, params: Params) -> float:
        a, b = params
        return (a - 1) / b if a >= 1 else 0.0

    def dlogpdf(self, x: ArrayLike, params: Params) -> ArrayLike:
        a, b = params
        return (a - 1) / x - b

    def d2logpdf(self, x: ArrayLike, params: Params) -> ArrayLike:
        a, _ = params
        return -(a - 1) / x**2

    def from_moments(self, mean: float, var: float) -> Params:
        if mean <= 0 or var <= 0:
            raise DomainError(f"Gamma needs positive mean and variance, got {mean}, {var}")
        return (mean**2 / var, mean / var)

    def from_mean_n(
        self,
        mean: float,
        n: float,
        *,
        likelihood: Optional[str] = None,
        sigma: Optional[float] = None,
    ) -> Params:
        if mean <= 0 or n <= 0:
            raise DomainError(f"Gamma needs mean > 0 and n > 0, got {mean}, {n}")
        if self.check_likelihood(likelihood) == "poisson":
            return (mean * n, n)
        return (n, n / mean)

    def update(
        self,
        params: Params,
        data: SufficientStatistic,
        likelihood: Optional[str] = None,
    ) -> Tuple[Params, float]:
        lik = self.check_likelihood(likelihood)
        a, b = params
        if lik == "poisson":
            self._expect(data, PoissonData)
            assert isinstance(data, PoissonData)
            n, y = data.n, data.y
            if n < 0 or y < 0:
                raise ValueError(f"Poisson data needs n >= 0 and y >= 0, got {n}, {y}")
            log_marginal = (
                a * math.log(b) - (a + y) * math.log(b + n) + gammaln(a + y) - gammaln(a)
            )
            return (a + y, b + n), float(log_marginal)

        self._expect(data, ExponentialData)
        assert isinstance(data, ExponentialData)
        n, y = data.n, data.y
        if n < 0 or y < 0:
            raise ValueError(f"Exponential data needs n >= 0 and y >= 0, got {n}, {y}")
        log_marginal = (
            a * math.log(b) - (a + n) * math.log(b + y) + gammaln(a + n) - gammaln(a)
        )
        return (a + n, b + y), float(log_marginal)

    def weighted_mle(self, x: np.ndarray, w: np.ndarray) -> Params:
        total = w.sum()
        mean_x = float(np.dot(w, x) / total)
        mean_log_x = float(np.dot(w, np.log(x)) / total)
        s = math.log(mean_x) - mean_log_x
        if s <= 1e-12:
            # Numerically a point mass; keep a very concentrated component.
            a = 1e8
            return (a, a / mean_x)

        # Minka's closed-form start, refined by root finding of
        # log(a) - digamma(a) = s (left side decreases monotonically).
        a0 = (3 - s + math.sqrt((s - 3) ** 2 + 24 * s)) / (12 * s)

        def score(a: float) -> float:
            return math.log(a) - float(digamma(a)) - s

        lo, hi = a0 / 4, a0 * 4
        while score(lo) < 0:
            lo /= 4
        while score(hi) > 0:
            hi *= 4
        a = float(brentq(score, lo, hi, xtol=1e-12, rtol=1e-10))
        return (a, a / mean_x)



# --- Normal ---


class NormalFamily(ConjugateFamily):
    """Normal(mean, sd) components for means with known sampling standard deviation."""

    tag = FamilyTag.NORMAL
    param_names = ("m", "s")
    likelihoods = ("normal",)

    @property
    def support(self) -> Tuple[float, float]:
        return (-math.inf, math.inf)

    def validate(self, params: Params) -> None:
        m, s = params
        if not (math.isfinite(m) and math.isfinite(s)) or s <= 0:
            raise DomainError(f"Normal needs finite mean and sd > 0, got m={m}, s={s}")

    def dist(self, params: Params) -> stats.rv_continuous:
        return stats.norm(params[0], params[1])

    def logpdf(self, x: ArrayLike, params: Params) -> ArrayLike:
        m, s = params
        z = (np.asarray(x, dtype=float) - m) / s
        return -0.5 * z**2 - math.log(s) - 0.5 * math.log(2 * math.pi)

    def cdf(self, x: ArrayLike, params: Params) -> ArrayLike:
        m, s = params
        return ndtr((np.asarray(x, dtype=float) - m) / s)

    def mode(self, params: Params) -> float:
        return params[0]

    def dlogpdf(self, x: ArrayLike, params: Params) -> ArrayLike:
        m, s = params
        return -(x - m) / s**2

    def d2logpdf(self, x: ArrayLike, params: Params) -> ArrayLike:
        _, s = params
        return -np.ones_like(np.asarray(x, dtype=float)) / s**2

    def from_moments(self, mean: float, var: float) -> Params:
        if var <= 0:
            raise DomainError(f"Normal variance must be positive, got {var}")
        return (mean, math.sqrt(var))

    def from_mean_n(
        self,
        mean: float,
        n: float,
        *,
        likelihood: Optional[str] = None,
        sigma: Optional[float] = None,
    ) -> Params:
        if sigma is None:
            raise ValueError("Normal components need the reference scale sigma")
        if n <= 0:
            raise DomainError(f"n must be positive, got {n}")
        return (mean, sigma / math.sqrt(n))

    def update(
        self,
        params: Params,
        data: SufficientStatistic,
        likelihood: Optional[str] = None,
    ) -> Tuple[Params, float]:
        self._expect(data, NormalData)
        assert isinstance(data, NormalData)
        m, s = params
        if data.se <= 0:
            raise ValueError(f"Standard error must be positive, got {data.se}")
        prec = 1.0 / s**2 + 1.0 / data.se**2
        post_m = (m / s**2 + data.m / data.se**2) / prec
        log_marginal = stats.norm.logpdf(data.m, m, math.sqrt(s**2 + data.se**2))
        return (float(post_m), float(math.sqrt(1.0 / prec))), float(log_marginal)

    def weighted_mle(self, x: np.ndarray, w: np.ndarray) -> Params:
        total = w.sum()
        m = float(np.dot(w, x) / total)
        v = float(np.dot(w, (x - m) ** 2) / total)
        return (m, math.sqrt(max(v, 0.0)))



_FAMILIES: Dict[FamilyTag, ConjugateFamily] = {
    FamilyTag.BETA: BetaFamily(),
    FamilyTag.GAMMA: GammaFamily(),
    FamilyTag.NORMAL: NormalFamily(),
}


def get_family(tag: Union[FamilyTag, str]) -> ConjugateFamily:
    """Return the family implementation registered for `tag`."""
    try:
        return _FAMILIES[FamilyTag(tag)]
    except ValueError:
        raise ValueError(f"Unknown family: {tag!r}") from None
