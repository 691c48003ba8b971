"""
mapprior.stats.methods.decision.operating
=========================================

Decision boundaries, operating characteristics and probabilities of success.

All quantities are computed from the decision boundary, never by simulation.
For a one-sample design the decision is a monotone function of the arm data
y, so it is summarised by one critical value y_c:

    success  iff  y <= y_c   (lower_tail=True)
    success  iff  y >  y_c   (lower_tail=False)

For a two-sample design the critical value of arm 1 depends on the data of
arm 2, y_c = B(y2). Then

    Pr(success | theta1, theta2) = E_{y2 | theta2}[ Pr(y1 <= B(y2) | theta1) ]

summed over the sampling pmf of y2 for counts, and integrated with Simpson's
rule over the central ``1 - OC_TAIL`` mass of the sampling density of the
arm-2 mean for normal data. Probabilities of success replace the sampling
distributions by the prior predictive distributions (`preddist`) of the
mixtures passed at call time.

For counts the boundary is tabulated for every y2 the arm-2 prior
predictive gives noticeable mass; for normal means it is tabulated on a grid
and interpolated by a cubic spline. Outside the table it is found directly.

Sampling models: binomial(n, theta) responders for Beta priors, Poisson
(n * theta) counts for Gamma priors and N(theta, sigma / sqrt(n)) means for
normal priors. Designs with exponential likelihood are rejected.

Examples
--------
>>> from mapprior.stats.common.mixture import mixbeta
>>> from mapprior.stats.methods.decision.core import decision1S
>>> from mapprior.stats.methods.decision.operating import decision1S_boundary, oc1S
>>> prior = mixbeta((1.0, 1, 1))
>>> rule = decision1S(0.95, 0.5, lower_tail=False)
>>> decision1S_boundary(prior, 20, rule)
13.0
>>> oc = oc1S(prior, 20, rule)
>>> round(oc(0.5), 4)
0.0577
"""

from __future__ import annotations
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import numpy as np
from scipy.integrate import simpson
from scipy.interpolate import CubicSpline
from scipy.optimize import brentq
from scipy.special import ndtri

from mapprior.core.errors import IncompatibleFamilyError
from mapprior.core.names import FamilyTag
from mapprior.stats.common.mixture import MixtureDistribution
from mapprior.stats.common.predictive import DataModel
from mapprior.stats.methods.decision.core import DecisionRule1S, DecisionRule2S
from mapprior.stats.methods.mixture_algebra.core import update

logger = logging.getLogger(__name__)

OC_TAIL = 1e-10
SIMPSON_NODES = 513
BOUNDARY_GRID = 129
COUNT_EPS = 1e-10
_MAX_COUNT = 2**40
_MAX_EXPANSIONS = 60


# --- Boundary search ---


def _last_true(pred: Callable[[int], bool], lo: int, hi: int) -> int:
    """Last index in [lo, hi] of a predicate that is True on a prefix (lo - 1 if none)."""
    if not pred(lo):
        return lo - 1
    if pred(hi):
        return hi
    while hi - lo > 1:
        mid = (lo + hi) // 2
        if pred(mid):
            lo = mid
        else:
            hi = mid
    return lo


def _critical_count(
    success: Callable[[int], bool], model: DataModel, lower: bool, center: float
) -> float:
    # lower: success on a prefix of counts; upper: failure on a prefix
    def pred(y: int) -> bool:
        return success(y) if lower else not success(y)

    if model.family is FamilyTag.BETA:
        return float(_last_true(pred, 0, int(model.n)))
    hi = max(16, 2 * int(center) + 1)
    while pred(hi):
        if hi > _MAX_COUNT:
            return math.inf
        hi *= 2
    return float(_last_true(pred, 0, hi))


def _critical_mean(
    margin: Callable[[float], float], model: DataModel, lower: bool, center: float
) -> float:
    width = 10 * model.se
    for _ in range(_MAX_EXPANSIONS):
        lo, hi = center - width, center + width
        m_lo, m_hi = margin(lo), margin(hi)
        if (m_lo > 0) != (m_hi > 0):
            return float(brentq(margin, lo, hi, xtol=1e-12 * model.se, rtol=1e-12))
        width *= 2
    all_success = margin(center) > 0
    if lower:
        return math.inf if all_success else -math.inf
    return -math.inf if all_success else math.inf


def _critical_value(
    margin: Callable[[float], float], model: DataModel, lower: bool, center: float
) -> float:
    """Critical data value: success iff y <= crit (lower) or y > crit (upper)."""
    if model.discrete:
        return _critical_count(lambda y: margin(y) > 0, model, lower, center)
    return _critical_mean(margin, model, lower, center)


def _success_prob(dist: Any, crit: Any, lower: bool) -> Any:
    """Pr(y <= crit) or Pr(y > crit) under a distribution with cdf/sf."""
    return dist.cdf(crit) if lower else dist.sf(crit)


def _simpson_nodes(center: float, scale: float) -> np.ndarray:
    z = float(-ndtri(OC_TAIL / 2))
    return np.linspace(center - z * scale, center + z * scale, SIMPSON_NODES)


def _broadcast_apply(fn: Callable[[float, float], float], x1: Any, x2: Any) -> Any:
    a1, a2 = np.broadcast_arrays(np.asarray(x1, dtype=float), np.asarray(x2, dtype=float))
    out = np.empty(a1.shape)
    for idx in np.ndindex(a1.shape):
        out[idx] = fn(float(a1[idx]), float(a2[idx]))
    return float(out) if out.ndim == 0 else out


def _check_family(prior: MixtureDistribution, mix: MixtureDistribution) -> None:
    if mix.family is not prior.family or mix.likelihood != prior.likelihood:
        raise IncompatibleFamilyError(
            f"Design prior is {prior.family.value}/{prior.likelihood}, "
            f"got a {mix.family.value}/{mix.likelihood} mixture"
        )


# --- One-sample designs ---


@dataclass(frozen=True)
class Design1S:
    """Analysis prior, arm data model and decision rule of a one-sample trial."""

    prior: MixtureDistribution
    model: DataModel
    rule: DecisionRule1S

    @classmethod
    def build(
        cls,
        prior: MixtureDistribution,
        n: float,
        decision: DecisionRule1S,
        sigma: Optional[float] = None,
    ) -> "Design1S":
        return cls(prior=prior, model=DataModel.for_prior(prior, n, sigma), rule=decision)

    def margin(self, y: float) -> float:
        return self.rule.margin(update(self.prior, self.model.observe(y)))

    def critical_value(self) -> float:
        center = self.prior.mean() * (self.model.n if self.model.discrete else 1.0)
        return _critical_value(self.margin, self.model, self.rule.lower_tail, center)


def decision1S_boundary(
    prior: MixtureDistribution,
    n: float,
    decision: DecisionRule1S,
    sigma: Optional[float] = None,
) -> float:
    """
    Critical value of the arm data at which a one-sample decision flips.

    Args:
        prior: Analysis prior
        n: Sample size (Poisson: exposure)
        decision: One-sample rule
        sigma: Sampling sd for normal data (defaults to the prior's sigma)

    Returns:
        Count (binomial, Poisson) or mean (normal) y_c; success iff
        y <= y_c for lower-tail rules and y > y_c otherwise
    """
    return Design1S.build(prior, n, decision, sigma).critical_value()


@dataclass(frozen=True)
class OC1S:
    """Pr(success | theta) of a one-sample design."""

    design: Design1S
    crit: float

    def _single(self, theta: float) -> float:
        dist = self.design.model.sampling(theta)
        return float(_success_prob(dist, self.crit, self.design.rule.lower_tail))

    def __call__(self, theta: Any) -> Any:
        return _broadcast_apply(lambda t, _: self._single(t), theta, 0.0)


@dataclass(frozen=True)
class PoS1S:
    """Predictive probability of success of a one-sample design."""

    design: Design1S
    crit: float

    def __call__(self, mix: MixtureDistribution) -> float:
        _check_family(self.design.prior, mix)
        pred = self.design.model.predictive(mix)
        return float(_success_prob(pred, self.crit, self.design.rule.lower_tail))


def oc1S(
    prior: MixtureDistribution,
    n: float,
    decision: DecisionRule1S,
    sigma: Optional[float] = None,
) -> OC1S:
    """Operating characteristics theta -> Pr(success) of a one-sample design."""
    design = Design1S.build(prior, n, decision, sigma)
    return OC1S(design=design, crit=design.critical_value())


def pos1S(
    prior: MixtureDistribution,
    n: float,
    decision: DecisionRule1S,
    sigma: Optional[float] = None,
) -> PoS1S:
    """Probability of success mix -> Pr(success) under the prior predictive of mix."""
    design = Design1S.build(prior, n, decision, sigma)
    return PoS1S(design=design, crit=design.critical_value())


# --- Two-sample designs ---


@dataclass(frozen=True)
class Design2S:
    """Analysis priors, arm data models and decision rule of a two-sample trial."""

    prior1: MixtureDistribution
    prior2: MixtureDistribution
    model1: DataModel
    model2: DataModel
    rule: DecisionRule2S

    def __post_init__(self) -> None:
        self.prior1.check_compatible(self.prior2)

    @classmethod
    def build(
        cls,
        prior1: MixtureDistribution,
        prior2: MixtureDistribution,
        n1: float,
        n2: float,
        decision: DecisionRule2S,
        sigma1: Optional[float] = None,
        sigma2: Optional[float] = None,
    ) -> "Design2S":
        return cls(
            prior1=prior1,
            prior2=prior2,
            model1=DataModel.for_prior(prior1, n1, sigma1),
            model2=DataModel.for_prior(prior2, n2, sigma2),
            rule=decision,
        )

    @property
    def discrete(self) -> bool:
        return self.model1.discrete

    def critical_value(self, y2: float) -> float:
        """Arm-1 critical value given arm-2 data y2."""
        post2 = update(self.prior2, self.model2.observe(y2))

        def margin(y1: float) -> float:
            return self.rule.margin(update(self.prior1, self.model1.observe(y1)), post2)

        if self.discrete:
            center = y2 * self.model1.n / self.model2.n
        else:
            center = y2
        return _critical_value(margin, self.model1, self.rule.lower_diff, center)


@dataclass(frozen=True)
class Boundary2S:
    """
    Arm-1 critical value as a function of the arm-2 data.

    Attributes:
        design: The two-sample design
        grid: Arm-2 data values the boundary is tabulated at
        crit: Critical values at `grid`
    """

    design: Design2S
    grid: np.ndarray
    crit: np.ndarray
    _spline: Optional[CubicSpline] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        spline = None
        if not self.design.discrete and np.all(np.isfinite(self.crit)):
            spline = CubicSpline(self.grid, self.crit)
        object.__setattr__(self, "_spline", spline)

    def _at(self, y2: float) -> float:
        if self.design.discrete:
            k = int(round(y2))
            if 0 <= k < self.crit.size:
                return float(self.crit[k])
            return self.design.critical_value(k)
        if self._spline is not None and self.grid[0] <= y2 <= self.grid[-1]:
            return float(self._spline(y2))
        return self.design.critical_value(y2)

    def __call__(self, y2: Any) -> Any:
        y = np.asarray(y2, dtype=float)
        out = np.array([self._at(float(v)) for v in y.ravel()])
        return float(out[0]) if y.ndim == 0 else out.reshape(y.shape)


def _tabulate(design: Design2S) -> Boundary2S:
    pred2 = design.model2.predictive(design.prior2)
    if design.discrete:
        grid = np.arange(0, pred2.upper_count(COUNT_EPS) + 1, dtype=float)
    else:
        lo, hi = pred2.ppf(OC_TAIL / 2), pred2.ppf(1 - OC_TAIL / 2)
        grid = np.linspace(lo, hi, BOUNDARY_GRID)
    crit = np.array([design.critical_value(float(y)) for y in grid])
    logger.debug("Tabulated two-sample boundary at %d arm-2 values", grid.size)
    return Boundary2S(design=design, grid=grid, crit=crit)


def decision2S_boundary(
    prior1: MixtureDistribution,
    prior2: MixtureDistribution,
    n1: float,
    n2: float,
    decision: DecisionRule2S,
    sigma1: Optional[float] = None,
    sigma2: Optional[float] = None,
) -> Boundary2S:
    """
    Decision boundary of a two-sample design.

    Args:
        prior1, prior2: Analysis priors of arms 1 and 2
        n1, n2: Sample sizes (Poisson: exposures)
        decision: Two-sample rule
        sigma1, sigma2: Sampling sds for normal data (default: prior sigmas)

    Returns:
        Boundary2S mapping arm-2 data y2 to the arm-1 critical value; success
        iff y1 <= B(y2) for lower-diff rules and y1 > B(y2) otherwise
    """
    design = Design2S.build(prior1, prior2, n1, n2, decision, sigma1, sigma2)
    return _tabulate(design)


def _expect_over_arm2(
    boundary: Boundary2S,
    dist1: Any,
    dist2: Any,
    lower: bool,
    upper_count: Callable[[], int],
    nodes: Callable[[], np.ndarray],
) -> float:
    """E over arm-2 data of the arm-1 success probability beyond the boundary."""
    if boundary.design.discrete:
        y2 = np.arange(0, upper_count() + 1, dtype=float)
        weight = np.asarray(dist2.pmf(y2), dtype=float)
        p1 = np.asarray(_success_prob(dist1, boundary(y2), lower), dtype=float)
        return float(np.clip(np.sum(weight * p1), 0.0, 1.0))
    y2 = nodes()
    density = np.asarray(dist2.pdf(y2), dtype=float)
    p1 = np.asarray(_success_prob(dist1, boundary(y2), lower), dtype=float)
    return float(np.clip(simpson(density * p1, x=y2), 0.0, 1.0))


@dataclass(frozen=True)
class OC2S:
    """Pr(success | theta1, theta2) of a two-sample design."""

    boundary: Boundary2S

    def _single(self, theta1: float, theta2: float) -> float:
        design = self.boundary.design
        dist1 = design.model1.sampling(theta1)
        dist2 = design.model2.sampling(theta2)
        return _expect_over_arm2(
            self.boundary,
            dist1,
            dist2,
            design.rule.lower_diff,
            lambda: design.model2.upper_count(dist2, COUNT_EPS),
            lambda: _simpson_nodes(theta2, design.model2.se),
        )

    def __call__(self, theta1: Any, theta2: Any) -> Any:
        return _broadcast_apply(self._single, theta1, theta2)


@dataclass(frozen=True)
class PoS2S:
    """Predictive probability of success of a two-sample design."""

    boundary: Boundary2S

    def __call__(self, mix1: MixtureDistribution, mix2: MixtureDistribution) -> float:
        design = self.boundary.design
        _check_family(design.prior1, mix1)
        _check_family(design.prior2, mix2)
        pred1 = design.model1.predictive(mix1)
        pred2 = design.model2.predictive(mix2)
        return _expect_over_arm2(
            self.boundary,
            pred1,
            pred2,
            design.rule.lower_diff,
            lambda: pred2.upper_count(COUNT_EPS),
            lambda: np.linspace(
                pred2.ppf(OC_TAIL / 2), pred2.ppf(1 - OC_TAIL / 2), SIMPSON_NODES
            ),
        )


def oc2S(
    prior1: MixtureDistribution,
    prior2: MixtureDistribution,
    n1: float,
    n2: float,
    decision: DecisionRule2S,
    sigma1: Optional[float] = None,
    sigma2: Optional[float] = None,
) -> OC2S:
    """
    Operating characteristics (theta1, theta2) -> Pr(success) of a two-sample design.

    The returned object broadcasts over arrays of true parameters.

    Examples:
        >>> from mapprior.stats.common.mixture import mixnorm
        >>> from mapprior.stats.methods.decision.core import decision2S
        >>> flat = mixnorm((1.0, 0.0, 100.0), sigma=1.0)
        >>> oc = oc2S(flat, flat, 50, 50, decision2S(0.975, 0.0, lower_diff=False))
        >>> abs(oc(0.0, 0.0) - 0.025) < 0.002
        True
    """
    return OC2S(
        boundary=decision2S_boundary(prior1, prior2, n1, n2, decision, sigma1, sigma2)
    )


def pos2S(
    prior1: MixtureDistribution,
    prior2: MixtureDistribution,
    n1: float,
    n2: float,
    decision: DecisionRule2S,
    sigma1: Optional[float] = None,
    sigma2: Optional[float] = None,
) -> PoS2S:
    """Probability of success (mix1, mix2) -> Pr(success) under their prior predictives."""
    return PoS2S(
        boundary=decision2S_boundary(prior1, prior2, n1, n2, decision, sigma1, sigma2)
    )
