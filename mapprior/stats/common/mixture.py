"""
mapprior.stats.common.mixture
=============================

Finite mixtures of conjugate components.

A `MixtureDistribution` is an immutable, structured record: a family tag, an
ordered tuple of weights and an ordered tuple of ``(p1, p2)`` parameter pairs.
Normal mixtures additionally carry the reference scale `sigma` (the sampling
standard deviation of one observation) and Gamma mixtures the likelihood the
rates refer to (``"poisson"`` or ``"exp"``). All operations return new
instances.

Constructors follow the parametrisations used in trial design practice:

- ``"ab"``: native parameters (Beta a/b, Gamma shape/rate)
- ``"ms"``: mean and standard deviation
- ``"mn"``: mean and number of observations the component is worth

Examples
--------
>>> from mapprior.stats.common.mixture import mixbeta, mixnorm, MixtureDistribution
>>> prior = mixbeta((0.8, 11, 32), (0.2, 1, 1))
>>> prior.n_components
2
>>> round(prior.mean(), 4)
0.3047
>>> record = prior.to_record()
>>> MixtureDistribution.from_record(record) == prior
True
>>> mixnorm((1.0, 0.0, 2.0), sigma=4.0).sigma
4.0
"""

from __future__ import annotations
import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.optimize import brentq, minimize_scalar
from scipy.special import logsumexp

from mapprior.core.errors import DomainError, IncompatibleFamilyError
from mapprior.core.names import FamilyTag
from mapprior.stats.common.families import ConjugateFamily, Params, get_family

WEIGHT_TOLERANCE = 1e-9
_RENORMALISE_TOLERANCE = 1e-6

Component = Tuple[float, float, float]
SeedLike = Union[None, int, np.random.Generator]


def as_generator(rng: SeedLike) -> np.random.Generator:
    """Turn an integer seed, a generator or None into a numpy Generator."""
    if isinstance(rng, np.random.Generator):
        return rng
    return np.random.default_rng(rng)


@dataclass(frozen=True)
class MixtureComponent:
    """One weighted component of a mixture."""

    weight: float
    params: Params


@dataclass(frozen=True)
class MixtureDistribution:
    """
    Finite mixture of components from a single conjugate family.

    Attributes:
        family: Family tag shared by all components
        weights: Component weights (non-negative, summing to one)
        params: Component parameters, one ``(p1, p2)`` pair per component
        sigma: Reference scale of normal mixtures (None otherwise)
        likelihood: Likelihood the parameter refers to
    """

    family: FamilyTag
    weights: Tuple[float, ...]
    params: Tuple[Params, ...]
    sigma: Optional[float] = None
    likelihood: str = ""
    _impl: ConjugateFamily = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        tag = FamilyTag(self.family)
        impl = get_family(tag)
        object.__setattr__(self, "family", tag)
        object.__setattr__(self, "_impl", impl)
        object.__setattr__(self, "likelihood", impl.check_likelihood(self.likelihood or None))

        weights = tuple(float(w) for w in self.weights)
        params = tuple((float(p[0]), float(p[1])) for p in self.params)
        if not weights:
            raise DomainError("A mixture needs at least one component")
        if len(weights) != len(params):
            raise DomainError(
                f"Got {len(weights)} weights for {len(params)} parameter pairs"
            )
        if any(not math.isfinite(w) or w < 0 for w in weights):
            raise DomainError(f"Mixture weights must be non-negative, got {weights}")
        total = sum(weights)
        if abs(total - 1.0) > _RENORMALISE_TOLERANCE:
            raise DomainError(f"Mixture weights must sum to 1, got {total}")
        weights = tuple(w / total for w in weights)
        for p in params:
            impl.validate(p)

        if tag is FamilyTag.NORMAL:
            if self.sigma is not None and (not math.isfinite(self.sigma) or self.sigma <= 0):
                raise DomainError(f"Reference scale sigma must be positive, got {self.sigma}")
        elif self.sigma is not None:
            raise DomainError("Only normal mixtures carry a reference scale sigma")

        object.__setattr__(self, "weights", weights)
        object.__setattr__(self, "params", params)

    # ---- structure ----

    @property
    def impl(self) -> ConjugateFamily:
        """Family implementation of the components."""
        return self._impl

    @property
    def n_components(self) -> int:
        return len(self.weights)

    def __len__(self) -> int:
        return len(self.weights)

    def components(self) -> Iterator[MixtureComponent]:
        for w, p in zip(self.weights, self.params):
            yield MixtureComponent(weight=w, params=p)

    def with_components(
        self, weights: Sequence[float], params: Sequence[Params]
    ) -> "MixtureDistribution":
        """New mixture of the same family, likelihood and sigma."""
        return MixtureDistribution(
            family=self.family,
            weights=tuple(weights),
            params=tuple(params),
            sigma=self.sigma,
            likelihood=self.likelihood,
        )

    def with_sigma(self, sigma: Optional[float]) -> "MixtureDistribution":
        if self.family is not FamilyTag.NORMAL:
            raise DomainError("Only normal mixtures carry a reference scale sigma")
        return MixtureDistribution(
            family=self.family,
            weights=self.weights,
            params=self.params,
            sigma=sigma,
            likelihood=self.likelihood,
        )

    def check_compatible(self, other: "MixtureDistribution") -> None:
        """Raise `IncompatibleFamilyError` unless `other` shares family and likelihood."""
        if other.family is not self.family or other.likelihood != self.likelihood:
            raise IncompatibleFamilyError(
                f"Cannot combine {self.family.value}/{self.likelihood} with "
                f"{other.family.value}/{other.likelihood} mixtures"
            )

    # ---- density evaluation ----

    def _log_weights(self) -> np.ndarray:
        with np.errstate(divide="ignore"):
            return np.log(np.asarray(self.weights))

    def _component_logpdf(self, x: np.ndarray) -> np.ndarray:
        return np.stack([self._impl.logpdf(x, p) for p in self.params])

    def logpdf(self, x: Any) -> Any:
        x_arr = np.asarray(x, dtype=float)
        log_w = self._log_weights()
        log_w = log_w.reshape((-1,) + (1,) * x_arr.ndim)
        with np.errstate(divide="ignore"):
            out = logsumexp(log_w + self._component_logpdf(x_arr), axis=0)
        return float(out) if np.ndim(out) == 0 else out

    def pdf(self, x: Any) -> Any:
        x_arr = np.asarray(x, dtype=float)
        out = sum(w * self._impl.pdf(x_arr, p) for w, p in zip(self.weights, self.params))
        return float(out) if np.ndim(out) == 0 else np.asarray(out)

    def cdf(self, x: Any) -> Any:
        x_arr = np.asarray(x, dtype=float)
        out = sum(w * self._impl.cdf(x_arr, p) for w, p in zip(self.weights, self.params))
        return float(out) if np.ndim(out) == 0 else np.asarray(out)

    def sf(self, x: Any) -> Any:
        x_arr = np.asarray(x, dtype=float)
        out = sum(
            w * self._impl.dist(p).sf(x_arr) for w, p in zip(self.weights, self.params)
        )
        return float(out) if np.ndim(out) == 0 else np.asarray(out)

    def ppf(self, q: Any) -> Any:
        """Quantile function, by root finding on the mixture cdf."""
        q_arr = np.atleast_1d(np.asarray(q, dtype=float))
        out = np.array([self._ppf_scalar(float(v)) for v in q_arr])
        return float(out[0]) if np.ndim(q) == 0 else out.reshape(np.shape(q))

    def _ppf_scalar(self, q: float) -> float:
        if not 0 <= q <= 1:
            raise ValueError(f"Quantile level must lie in [0, 1], got {q}")
        lo_support, hi_support = self._impl.support
        if q == 0:
            return lo_support
        if q == 1:
            return hi_support
        if len(self.weights) == 1:
            return float(self._impl.ppf(q, self.params[0]))
        # Component quantiles bracket the mixture quantile.
        candidates = [float(self._impl.ppf(q, p)) for p in self.params]
        lo, hi = min(candidates), max(candidates)
        if lo == hi:
            return lo
        return float(brentq(lambda x: self.cdf(x) - q, lo, hi, xtol=1e-12, rtol=1e-10))

    def dlogpdf(self, x: Any) -> Any:
        """First derivative of the log mixture density."""
        resp = self.responsibilities(x)
        grads = np.stack([self._impl.dlogpdf(np.asarray(x, dtype=float), p) for p in self.params])
        return np.sum(resp * grads, axis=0)

    def d2logpdf(self, x: Any) -> Any:
        """
        Second derivative of the log mixture density.

        With responsibilities r_k(x) and component scores g_k(x):
            d2 log f = sum_k r_k (g_k' + g_k^2) - (sum_k r_k g_k)^2
        """
        x_arr = np.asarray(x, dtype=float)
        resp = self.responsibilities(x_arr)
        g = np.stack([self._impl.dlogpdf(x_arr, p) for p in self.params])
        dg = np.stack([self._impl.d2logpdf(x_arr, p) for p in self.params])
        first = np.sum(resp * g, axis=0)
        out = np.sum(resp * (dg + g**2), axis=0) - first**2
        return float(out) if np.ndim(out) == 0 else out

    def responsibilities(self, x: Any) -> np.ndarray:
        """Posterior component membership probabilities at x (components on axis 0)."""
        x_arr = np.asarray(x, dtype=float)
        log_w = self._log_weights().reshape((-1,) + (1,) * x_arr.ndim)
        with np.errstate(divide="ignore"):
            joint = log_w + self._component_logpdf(x_arr)
            return np.exp(joint - logsumexp(joint, axis=0, keepdims=True))

    # ---- moments and summaries ----

    def mean(self) -> float:
        return float(
            sum(w * self._impl.mean(p) for w, p in zip(self.weights, self.params))
        )

    def var(self) -> float:
        mu = self.mean()
        second = sum(
            w * (self._impl.var(p) + self._impl.mean(p) ** 2)
            for w, p in zip(self.weights, self.params)
        )
        return float(max(second - mu**2, 0.0))

    def sd(self) -> float:
        return math.sqrt(self.var())

    def mode(self) -> float:
        """Global mode, searched from every component mode."""
        if len(self.weights) == 1:
            return float(self._impl.mode(self.params[0]))
        lo, hi = self._impl.support
        best_x, best_val = math.nan, -math.inf
        for p in self.params:
            start = float(self._impl.mode(p))
            spread = math.sqrt(self._impl.var(p))
            a, b = start - 4 * spread, start + 4 * spread
            if math.isfinite(lo):
                a = max(a, lo + 1e-12)
            if math.isfinite(hi):
                b = min(b, hi - 1e-12)
            if a >= b:
                continue
            res = minimize_scalar(
                lambda x: -self.logpdf(x),
                bounds=(a, b),
                method="bounded",
                options={"xatol": 1e-10},
            )
            x = float(res.x)
            val = self.logpdf(x)
            if val > best_val:
                best_x, best_val = x, val
        return float(best_x)

    def summary(self, probs: Iterable[float] = (0.025, 0.5, 0.975)) -> Dict[str, float]:
        """Mean, sd and the requested quantiles."""
        out: Dict[str, float] = {"mean": self.mean(), "sd": self.sd()}
        for p in probs:
            out[f"q{p * 100:g}"] = float(self.ppf(p))
        return out

    def sample(self, size: int, rng: SeedLike = None) -> np.ndarray:
        """Draw `size` values: component labels first, then component draws."""
        gen = as_generator(rng)
        labels = gen.choice(len(self.weights), size=size, p=np.asarray(self.weights))
        out = np.empty(size, dtype=float)
        for k, p in enumerate(self.params):
            idx = np.flatnonzero(labels == k)
            if idx.size:
                out[idx] = self._impl.rvs(p, idx.size, gen)
        return out

    # ---- serialisation ----

    def to_record(self) -> Dict[str, Any]:
        """Structured record: family tag plus ordered (weight, params) entries."""
        return {
            "family": self.family.value,
            "likelihood": self.likelihood,
            "sigma": self.sigma,
            "components": [
                {"weight": w, "params": [p[0], p[1]]}
                for w, p in zip(self.weights, self.params)
            ],
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "MixtureDistribution":
        try:
            components = record["components"]
            return cls(
                family=FamilyTag(record["family"]),
                weights=tuple(c["weight"] for c in components),
                params=tuple(tuple(c["params"]) for c in components),  # type: ignore[misc]
                sigma=record.get("sigma"),
                likelihood=record.get("likelihood") or "",
            )
        except (KeyError, TypeError) as exc:
            raise ValueError(f"Malformed mixture record: {exc}") from exc

    def to_json(self) -> str:
        return json.dumps(self.to_record(), separators=(",", ":"))

    @classmethod
    def from_json(cls, text: str) -> "MixtureDistribution":
        return cls.from_record(json.loads(text))

    def __str__(self) -> str:
        names = get_family(self.family).param_names
        rows = [
            f"  w={w:.4f} {names[0]}={p[0]:.4g} {names[1]}={p[1]:.4g}"
            for w, p in zip(self.weights, self.params)
        ]
        extra = f", sigma={self.sigma:g}" if self.sigma is not None else ""
        return (
            f"{self.family.value} mixture ({self.likelihood}{extra})\n" + "\n".join(rows)
        )


# --- Constructors ---


def _normalise_components(components: Sequence[Component]) -> Tuple[List[float], List[Tuple[float, float]]]:
    if not components:
        raise DomainError("A mixture needs at least one component")
    weights: List[float] = []
    raw: List[Tuple[float, float]] = []
    for comp in components:
        if len(comp) != 3:
            raise DomainError(f"Components are (weight, p1, p2) triples, got {comp!r}")
        weights.append(float(comp[0]))
        raw.append((float(comp[1]), float(comp[2])))
    return weights, raw


def mixbeta(*components: Component, param: str = "ab") -> MixtureDistribution:
    """
    Beta mixture from (weight, p1, p2) triples.

    Args:
        *components: Triples whose meaning depends on `param`
        param: ``"ab"`` (a, b), ``"ms"`` (mean, sd) or ``"mn"`` (mean, n)

    Returns:
        MixtureDistribution of the Beta family

    Examples:
        >>> mixbeta((1.0, 0.2, 10), param="mn").params
        ((2.0, 8.0),)
    """
    impl = get_family(FamilyTag.BETA)
    weights, raw = _normalise_components(components)
    if param == "ab":
        params = raw
    elif param == "ms":
        params = [impl.from_moments(m, s**2) for m, s in raw]
    elif param == "mn":
        params = [impl.from_mean_n(m, n) for m, n in raw]
    else:
        raise ValueError(f"Unknown Beta parametrisation: {param}")
    return MixtureDistribution(
        family=FamilyTag.BETA, weights=tuple(weights), params=tuple(params)
    )


def mixgamma(
    *components: Component, likelihood: str = "poisson", param: str = "ab"
) -> MixtureDistribution:
    """
    Gamma mixture from (weight, p1, p2) triples.

    Args:
        *components: Triples whose meaning depends on `param`
        likelihood: ``"poisson"`` (event rates) or ``"exp"`` (hazards)
        param: ``"ab"`` (shape, rate), ``"ms"`` (mean, sd) or ``"mn"`` (mean, n)
    """
    impl = get_family(FamilyTag.GAMMA)
    weights, raw = _normalise_components(components)
    if param == "ab":
        params = raw
    elif param == "ms":
        params = [impl.from_moments(m, s**2) for m, s in raw]
    elif param == "mn":
        params = [impl.from_mean_n(m, n, likelihood=likelihood) for m, n in raw]
    else:
        raise ValueError(f"Unknown Gamma parametrisation: {param}")
    return MixtureDistribution(
        family=FamilyTag.GAMMA,
        weights=tuple(weights),
        params=tuple(params),
        likelihood=likelihood,
    )


def mixnorm(
    *components: Component, sigma: Optional[float] = None, param: str = "ms"
) -> MixtureDistribution:
    """
    Normal mixture from (weight, p1, p2) triples.

    Args:
        *components: Triples whose meaning depends on `param`
        sigma: Reference scale (sampling sd of one observation)
        param: ``"ms"`` (mean, sd) or ``"mn"`` (mean, n; needs sigma)
    """
    impl = get_family(FamilyTag.NORMAL)
    weights, raw = _normalise_components(components)
    if param == "ms":
        params = raw
    elif param == "mn":
        params = [impl.from_mean_n(m, n, sigma=sigma) for m, n in raw]
    else:
        raise ValueError(f"Unknown Normal parametrisation: {param}")
    return MixtureDistribution(
        family=FamilyTag.NORMAL,
        weights=tuple(weights),
        params=tuple(params),
        sigma=sigma,
    )


def mixcombine(
    *mixtures: MixtureDistribution, weights: Optional[Sequence[float]] = None
) -> MixtureDistribution:
    """
    Concatenate same-family mixtures, scaling each by its mixing weight.

    Args:
        *mixtures: Mixtures to combine (same family and likelihood)
        weights: Mixing weights, uniform if omitted

    Returns:
        MixtureDistribution with all components

    Examples:
        >>> a = mixbeta((1.0, 2, 2))
        >>> b = mixbeta((0.5, 1, 1), (0.5, 5, 5))
        >>> mixcombine(a, b, weights=[0.5, 0.5]).weights
        (0.5, 0.25, 0.25)
    """
    if not mixtures:
        raise ValueError("Need at least one mixture to combine")
    if weights is None:
        weights = [1.0 / len(mixtures)] * len(mixtures)
    if len(weights) != len(mixtures):
        raise ValueError("weights and mixtures must have same length")
    if abs(sum(weights) - 1.0) > _RENORMALISE_TOLERANCE or any(w < 0 for w in weights):
        raise DomainError("Mixing weights must be non-negative and sum to 1")

    first = mixtures[0]
    for other in mixtures[1:]:
        first.check_compatible(other)

    all_weights: List[float] = []
    all_params: List[Params] = []
    for mix, w in zip(mixtures, weights):
        all_weights.extend(w * cw for cw in mix.weights)
        all_params.extend(mix.params)
    return first.with_components(all_weights, all_params)
