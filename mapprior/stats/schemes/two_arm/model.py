"""
mapprior.stats.schemes.two_arm.model
====================================

Data structures and payload types of the two-arm trial.

Arm 1 is the treatment arm and arm 2 the control arm, matching the order of
`decision2S` (the rule is stated on theta1 - theta2). Every arm is summarised
by the number of units `n` and the total `y` of their outcomes:

- binomial: patients and responders
- normal: patients and the sum of the observed values
- poisson: exposure and the number of events
- exp: events and the total time to event

Examples
--------
>>> batch = ArmBatch()
>>> batch.add_arm(1, n=20, y=7)
>>> batch.add_values(2, [0, 1, 1, 0])
>>> batch.validate("binomial")
True
>>> batch.to_payload()
{'n1': 20.0, 'y1': 7.0, 'n2': 4.0, 'y2': 2.0}
"""

from __future__ import annotations
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, TypedDict, Union

import numpy as np

from mapprior.core.ledger import PayloadType, PayloadTypeRegistry
from mapprior.core.names import FamilyTag
from mapprior.stats.common.mixture import MixtureDistribution
from mapprior.stats.methods.decision.core import DecisionRule2S

ARMS = (1, 2)
ARM_LABELS = {1: "treatment", 2: "control"}
_ARM_ALIASES = {
    "1": 1,
    "treatment": 1,
    "active": 1,
    "2": 2,
    "control": 2,
    "placebo": 2,
}


def arm_index(arm: Union[int, str]) -> int:
    """Normalise an arm given by number or label to 1 or 2."""
    key = str(arm).lower()
    if key not in _ARM_ALIASES:
        raise ValueError(f"Unknown arm {arm!r}; use 1/'treatment' or 2/'control'")
    return _ARM_ALIASES[key]


# --- Type Definitions ---


class ArmBatchPayload(TypedDict):
    """Payload structure for one observation batch of both arms."""

    n1: float
    y1: float
    n2: float
    y2: float


class DecisionRulePayload(TypedDict):
    """Payload structure for the registered decision rule."""

    rule: str
    probs: List[float]
    quantiles: List[float]
    lower_diff: bool
    link: str
    futility: Optional[float]


class DecisionPayload(TypedDict):
    """Payload structure for an emitted trial decision."""

    decision: str
    margin: float
    probabilities: List[float]
    prob_success: Optional[float]
    n1: float
    n2: float


# --- Data Classes ---


@dataclass(frozen=True)
class ArmPosterior:
    """Posterior mixture of one arm after its cumulative data."""

    arm: int
    n: float
    y: float
    mixture: MixtureDistribution


@dataclass(frozen=True)
class TwoArmDesign:
    """
    Design of a two-arm trial.

    Attributes:
        prior1: Prior of the treatment arm
        prior2: Prior of the control arm
        n1: Planned total sample size of arm 1
        n2: Planned total sample size of arm 2
        decision: Success rule on theta1 - theta2
        futility: Stop for futility when the interim predictive probability
            of success at the planned sample sizes falls below this value
    """

    prior1: MixtureDistribution
    prior2: MixtureDistribution
    n1: float
    n2: float
    decision: DecisionRule2S
    futility: Optional[float] = None

    def __post_init__(self) -> None:
        self.prior1.check_compatible(self.prior2)
        if self.n1 <= 0 or self.n2 <= 0:
            raise ValueError(f"Planned sample sizes must be positive, got {self.n1}, {self.n2}")
        if self.futility is not None and not 0 < self.futility < 1:
            raise ValueError(f"Futility threshold must lie in (0, 1), got {self.futility}")
        if self.futility is not None and not self.has_interim_pos:
            raise ValueError("Interim futility needs count data; exponential outcomes are not supported")
        sigmas = (self.prior1.sigma, self.prior2.sigma)
        if self.prior1.family is FamilyTag.NORMAL and None in sigmas:
            raise ValueError("Normal priors need the sampling standard deviation sigma")

    @property
    def outcome(self) -> str:
        return self.prior1.likelihood

    @property
    def has_interim_pos(self) -> bool:
        """Whether a predictive probability of success can be computed at interim looks."""
        return self.outcome != "exp"

    def prior(self, arm: int) -> MixtureDistribution:
        return self.prior1 if arm == 1 else self.prior2

    def planned(self, arm: int) -> float:
        return self.n1 if arm == 1 else self.n2

    def rule_payload(self) -> DecisionRulePayload:
        return DecisionRulePayload(
            rule=str(self.decision),
            probs=[float(p) for p in self.decision.probs],
            quantiles=[float(q) for q in self.decision.quantiles],
            lower_diff=self.decision.lower_diff,
            link=self.decision.link,
            futility=self.futility,
        )

    def to_record(self) -> Dict[str, Any]:
        """Sample sizes and rule; the priors are registered as separate events."""
        record: Dict[str, Any] = {
            "outcome": self.outcome,
            "n1": float(self.n1),
            "n2": float(self.n2),
        }
        record.update(self.rule_payload())
        return record


@dataclass
class ArmBatch:
    """
    A batch of observations of both arms.

    Accumulates per-arm summaries before registration in the ledger; raw
    outcomes are reduced to (n, y) as they are added.
    """

    n: Dict[int, float] = field(default_factory=lambda: {1: 0.0, 2: 0.0})
    y: Dict[int, float] = field(default_factory=lambda: {1: 0.0, 2: 0.0})

    # Optional metadata
    timestamp: Optional[datetime] = None
    validation_errors: List[str] = field(default_factory=list)

    def add_arm(self, arm: Union[int, str], n: float, y: float) -> None:
        """Add summary data (units and outcome total) for one arm."""
        idx = arm_index(arm)
        if n < 0:
            self.validation_errors.append(f"Arm {idx}: n cannot be negative")
        self.n[idx] += float(n)
        self.y[idx] += float(y)

    def add_values(self, arm: Union[int, str], values: Sequence[float]) -> None:
        """Add raw per-unit outcomes for one arm."""
        x = np.asarray(values, dtype=float).ravel()
        self.add_arm(arm, n=float(x.size), y=float(x.sum()))

    def validate(self, outcome: str) -> bool:
        """Validate the accumulated totals for the outcome type."""
        self.validation_errors = [e for e in self.validation_errors if "cannot" in e]
        for arm in ARMS:
            n, y = self.n[arm], self.y[arm]
            if not (math.isfinite(n) and math.isfinite(y)):
                self.validation_errors.append(f"Arm {arm}: totals must be finite")
            elif outcome == "binomial":
                if n != int(n) or y != int(y):
                    self.validation_errors.append(f"Arm {arm}: binomial counts must be integers")
                elif not 0 <= y <= n:
                    self.validation_errors.append(
                        f"Arm {arm}: responders must lie between 0 and n"
                    )
            elif outcome == "poisson":
                if y < 0 or y != int(y):
                    self.validation_errors.append(f"Arm {arm}: event counts must be non-negative integers")
            elif outcome == "exp" and y < 0:
                self.validation_errors.append(f"Arm {arm}: total time must be non-negative")
        return len(self.validation_errors) == 0

    def is_empty(self) -> bool:
        return self.n[1] == 0 and self.n[2] == 0

    def to_payload(self) -> ArmBatchPayload:
        return ArmBatchPayload(n1=self.n[1], y1=self.y[1], n2=self.n[2], y2=self.y[2])

    def reset(self) -> None:
        self.n = {1: 0.0, 2: 0.0}
        self.y = {1: 0.0, 2: 0.0}
        self.validation_errors.clear()


# --- Payload Type Handlers ---


class MixturePayloadType(PayloadType):
    """Stores a `MixtureDistribution` as its JSON record."""

    def wrap(self, data: MixtureDistribution) -> str:
        return data.to_json()

    def unwrap(self, json_str: str) -> MixtureDistribution:
        return MixtureDistribution.from_json(json_str)


class ArmPosteriorPayloadType(PayloadType):
    """Stores an `ArmPosterior` with its mixture record inline."""

    def wrap(self, data: ArmPosterior) -> str:
        return PayloadTypeRegistry._default_handler.wrap(
            {
                "arm": data.arm,
                "n": data.n,
                "y": data.y,
                "mixture": data.mixture.to_record(),
            }
        )

    def unwrap(self, json_str: str) -> ArmPosterior:
        payload = PayloadTypeRegistry._default_handler.unwrap(json_str)
        return ArmPosterior(
            arm=int(payload["arm"]),
            n=float(payload["n"]),
            y=float(payload["y"]),
            mixture=MixtureDistribution.from_record(payload["mixture"]),
        )


def _register_two_arm_payloads() -> None:
    PayloadTypeRegistry.register("Mixture", MixturePayloadType())
    PayloadTypeRegistry.register("ArmPosterior", ArmPosteriorPayloadType())


# Auto-register payload types
_register_two_arm_payloads()
