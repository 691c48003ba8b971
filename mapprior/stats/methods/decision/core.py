"""
mapprior.stats.methods.decision.core
====================================

Decision rules on posterior mixtures.

A rule is a conjunction of criteria ``(p_i, q_i)``. The one-sample rule
succeeds iff for every i

    Pr(theta <= q_i) > p_i          (lower_tail=True)
    Pr(theta >  q_i) > p_i          (lower_tail=False)

and the two-sample rule iff for every i

    Pr(g(theta1) - g(theta2) <= q_i) > p_i      (lower_diff=True)
    Pr(g(theta1) - g(theta2) >  q_i) > p_i      (lower_diff=False)

with g the identity, logit or log link. `margin()` returns the smallest
signed excess ``Pr(...) - p_i`` over the criteria; the rule holds iff the
margin is positive. Boundary searches in `operating` rely on it.

Examples
--------
>>> from mapprior.stats.common.mixture import mixbeta
>>> from mapprior.stats.methods.decision.core import decision1S, decision2S
>>> rule = decision1S(0.9, 0.4, lower_tail=True)
>>> rule(mixbeta((1.0, 3, 17)))
True
>>> same = mixbeta((1.0, 5, 5))
>>> decision2S(0.95, 0.0, lower_diff=True)(same, same)
False
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Sequence, Tuple, Union

import numpy as np

from mapprior.stats.common.mixture import MixtureDistribution
from mapprior.stats.methods.mixture_algebra.core import get_link, pmixlink

Number = Union[float, int]


@dataclass(frozen=True)
class Criterion:
    """Require probability above `prob` at threshold `quantile`."""

    prob: float
    quantile: float

    def __post_init__(self) -> None:
        if not 0 < self.prob < 1:
            raise ValueError(f"Criterion probability must lie in (0, 1), got {self.prob}")


def make_criteria(
    pc: Union[Number, Sequence[Number]], qc: Union[Number, Sequence[Number]]
) -> Tuple[Criterion, ...]:
    """Pair up probabilities and thresholds; scalars are broadcast."""
    p = np.atleast_1d(np.asarray(pc, dtype=float))
    q = np.atleast_1d(np.asarray(qc, dtype=float))
    if p.ndim != 1 or q.ndim != 1:
        raise ValueError("pc and qc must be scalars or flat sequences")
    if p.size == 1 and q.size > 1:
        p = np.repeat(p, q.size)
    elif q.size == 1 and p.size > 1:
        q = np.repeat(q, p.size)
    if p.size != q.size:
        raise ValueError(f"pc and qc must have equal length, got {p.size} and {q.size}")
    if p.size == 0:
        raise ValueError("A decision rule needs at least one criterion")
    return tuple(Criterion(float(pi), float(qi)) for pi, qi in zip(p, q))


@dataclass(frozen=True)
class DecisionRule1S:
    """One-sample decision rule on a single posterior."""

    criteria: Tuple[Criterion, ...]
    lower_tail: bool = True

    @property
    def probs(self) -> np.ndarray:
        return np.array([c.prob for c in self.criteria])

    @property
    def quantiles(self) -> np.ndarray:
        return np.array([c.quantile for c in self.criteria])

    def probabilities(self, mix: MixtureDistribution) -> np.ndarray:
        """Tail probabilities at every criterion threshold."""
        q = self.quantiles
        return np.asarray(mix.cdf(q) if self.lower_tail else mix.sf(q), dtype=float)

    def margin(self, mix: MixtureDistribution) -> float:
        return float(np.min(self.probabilities(mix) - self.probs))

    def __call__(self, mix: MixtureDistribution) -> bool:
        return self.margin(mix) > 0

    def __str__(self) -> str:
        op = "<=" if self.lower_tail else ">"
        terms = " and ".join(
            f"Pr(theta {op} {c.quantile:g}) > {c.prob:g}" for c in self.criteria
        )
        return f"1 sample decision: {terms}"


@dataclass(frozen=True)
class DecisionRule2S:
    """Two-sample decision rule on the difference of two posteriors."""

    criteria: Tuple[Criterion, ...]
    lower_diff: bool = True
    link: str = "identity"

    def __post_init__(self) -> None:
        get_link(self.link)

    @property
    def probs(self) -> np.ndarray:
        return np.array([c.prob for c in self.criteria])

    @property
    def quantiles(self) -> np.ndarray:
        return np.array([c.quantile for c in self.criteria])

    def probabilities(
        self, mix1: MixtureDistribution, mix2: MixtureDistribution
    ) -> np.ndarray:
        return np.asarray(
            pmixlink(mix1, mix2, self.quantiles, link=self.link, lower_tail=self.lower_diff),
            dtype=float,
        )

    def margin(self, mix1: MixtureDistribution, mix2: MixtureDistribution) -> float:
        return float(np.min(self.probabilities(mix1, mix2) - self.probs))

    def __call__(self, mix1: MixtureDistribution, mix2: MixtureDistribution) -> bool:
        return self.margin(mix1, mix2) > 0

    def __str__(self) -> str:
        op = "<=" if self.lower_diff else ">"
        diff = (
            "theta1 - theta2"
            if self.link == "identity"
            else f"{self.link}(theta1) - {self.link}(theta2)"
        )
        terms = " and ".join(
            f"Pr({diff} {op} {c.quantile:g}) > {c.prob:g}" for c in self.criteria
        )
        return f"2 sample decision: {terms}"


def decision1S(
    pc: Union[Number, Sequence[Number]],
    qc: Union[Number, Sequence[Number]],
    lower_tail: bool = True,
) -> DecisionRule1S:
    """
    One-sample decision rule.

    Args:
        pc: Probability cutoff(s)
        qc: Threshold(s) on the parameter scale
        lower_tail: Use Pr(theta <= q) if True, Pr(theta > q) otherwise

    Returns:
        Callable rule mapping a posterior mixture to success (bool)
    """
    return DecisionRule1S(criteria=make_criteria(pc, qc), lower_tail=lower_tail)


def decision2S(
    pc: Union[Number, Sequence[Number]],
    qc: Union[Number, Sequence[Number]],
    lower_diff: bool = True,
    link: str = "identity",
) -> DecisionRule2S:
    """
    Two-sample decision rule on g(theta1) - g(theta2).

    Args:
        pc: Probability cutoff(s)
        qc: Threshold(s) on the link scale
        lower_diff: Use Pr(diff <= q) if True, Pr(diff > q) otherwise
        link: ``"identity"``, ``"logit"`` or ``"log"``

    Returns:
        Callable rule mapping two posterior mixtures to success (bool)
    """
    return DecisionRule2S(criteria=make_criteria(pc, qc), lower_diff=lower_diff, link=link)
