"""
mapprior.stats.schemes.two_arm.components
=========================================

Ledger components of the two-arm trial.

At every look the components run in order:

1. `ArmObservation` registers validated arm batches (observations namespace).
2. `PosteriorUpdate` reduces all batches so far and writes one posterior
   mixture per arm (statistics namespace).
3. `DecisionCriteria` writes the decision rule in force (criteria namespace).
4. `DecisionSignaler` evaluates the rule on the posteriors and emits
   ``success``, ``futility`` or ``continue`` (signals namespace). With a
   futility threshold it also computes the predictive probability of
   success at the planned sample sizes, using the current posteriors as
   priors for the remaining patients.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from mapprior.core.components import Criteria, Observer, Signaler, Statistic
from mapprior.core.ledger import Ledger
from mapprior.core.names import (
    ARMS_TAG,
    DECISION_RULE_TAG,
    DECISION_SIGNAL_TAG,
    POSTERIOR_TAG,
    Namespace,
)
from mapprior.stats.common.mixture import MixtureDistribution
from mapprior.stats.methods.decision.operating import pos2S
from mapprior.stats.methods.mixture_algebra.core import postmix
from mapprior.stats.schemes.two_arm.model import (
    ARMS,
    ArmBatch,
    ArmPosterior,
    DecisionPayload,
    TwoArmDesign,
)

logger = logging.getLogger(__name__)

DECISIONS = ("success", "futility", "continue")


# --- Aggregation Functions ---


def reduce_arm_totals(
    ledger: Ledger, experiment_id: str
) -> Dict[int, Tuple[float, float]]:
    """
    Aggregate arm batches from the ledger.

    Args:
        ledger: Ledger instance to query
        experiment_id: Experiment identifier

    Returns:
        Mapping arm -> (n, y) summed over all registered batches
    """
    totals = {arm: (0.0, 0.0) for arm in ARMS}
    batches = ledger.events(
        namespace=Namespace.OBS, experiment_id=experiment_id, payload_type="ArmBatch"
    )
    for record in batches:
        payload = record["payload"]
        for arm in ARMS:
            n, y = totals[arm]
            totals[arm] = (n + payload[f"n{arm}"], y + payload[f"y{arm}"])
    return totals


def arm_posterior(prior: MixtureDistribution, n: float, y: float) -> MixtureDistribution:
    """Posterior of one arm from its totals; the prior itself when n is 0."""
    if n == 0:
        return prior
    if prior.likelihood == "binomial":
        return postmix(prior, n=n, r=y)
    return postmix(prior, n=n, m=y / n)


def step_posteriors(
    ledger: Ledger, experiment_id: str, step_key: str
) -> Dict[int, ArmPosterior]:
    """Arm posteriors written at one look (latest per arm)."""
    out: Dict[int, ArmPosterior] = {}
    records = ledger.events(
        namespace=Namespace.STATS,
        experiment_id=experiment_id,
        step_key=step_key,
        payload_type="ArmPosterior",
    )
    for record in records:
        posterior: ArmPosterior = record["payload"]
        out[posterior.arm] = posterior
    return out


# --- Components ---


@dataclass(kw_only=True)
class ArmObservation(Observer):
    """
    Observation component for two-arm trials.

    Parameters
    ----------
    outcome : str
        Likelihood of the arm data ("binomial", "normal", "poisson", "exp")
    auto_validate : bool, default=True
        Whether to validate batches before registration
    tag : str, default="obs:arms"
        Tag to use for observation events
    """

    outcome: str
    auto_validate: bool = True
    tag: str = ARMS_TAG

    current_batch: Optional[ArmBatch] = field(default=None, init=False)

    def create_batch(self, timestamp: Optional[datetime] = None) -> ArmBatch:
        return ArmBatch(timestamp=timestamp)

    def register_batch(
        self,
        ledger: Ledger,
        experiment_id: str,
        step_key: str,
        time_index: str,
        batch: ArmBatch,
        force: bool = False,
    ) -> bool:
        """
        Register an arm batch to the ledger.

        Returns
        -------
        bool
            True if registration succeeded, False if the batch was invalid
            or empty (the reasons are left in ``batch.validation_errors``)
        """
        if not force and self.auto_validate and not batch.validate(self.outcome):
            logger.warning("Rejected batch for %s: %s", experiment_id, batch.validation_errors)
            return False
        if not force and batch.is_empty():
            batch.validation_errors.append("Batch holds no observations")
            return False

        self.emit(
            ledger,
            experiment_id,
            step_key,
            time_index,
            kind="observation",
            payload_type="ArmBatch",
            payload=batch.to_payload(),
            ts=batch.timestamp or datetime.now(timezone.utc),
        )
        return True

    def step(
        self, ledger: Ledger, experiment_id: str, step_key: str, time_index: str
    ) -> None:
        """Register `current_batch` if one is pending."""
        if self.current_batch is not None:
            if not self.register_batch(
                ledger, experiment_id, step_key, time_index, self.current_batch
            ):
                raise ValueError(
                    f"Failed to register observations: {self.current_batch.validation_errors}"
                )
            self.current_batch = None


@dataclass(kw_only=True)
class PosteriorUpdate(Statistic):
    """Posterior mixtures of both arms given all observations so far."""

    design: TwoArmDesign
    tag: str = POSTERIOR_TAG

    def step(
        self, ledger: Ledger, experiment_id: str, step_key: str, time_index: str
    ) -> None:
        totals = reduce_arm_totals(ledger, experiment_id)
        for arm in ARMS:
            n, y = totals[arm]
            mixture = arm_posterior(self.design.prior(arm), n, y)
            self.emit(
                ledger,
                experiment_id,
                step_key,
                time_index,
                kind="posterior",
                payload_type="ArmPosterior",
                payload=ArmPosterior(arm=arm, n=n, y=y, mixture=mixture),
            )


@dataclass(kw_only=True)
class DecisionCriteria(Criteria):
    """Registers the decision rule (and futility threshold) at every look."""

    design: TwoArmDesign
    tag: str = DECISION_RULE_TAG

    def step(
        self, ledger: Ledger, experiment_id: str, step_key: str, time_index: str
    ) -> None:
        self.emit(
            ledger,
            experiment_id,
            step_key,
            time_index,
            kind="rule",
            payload_type="DecisionRule",
            payload=self.design.rule_payload(),
        )


@dataclass(kw_only=True)
class DecisionSignaler(Signaler):
    """
    Emits the trial decision of a look.

    ``success`` when the rule holds on the current posteriors, ``futility``
    at the final look (both arms at their planned size) without success or
    when the interim predictive probability of success is below the design's
    futility threshold, ``continue`` otherwise.

    Parameters
    ----------
    design : TwoArmDesign
        Trial design with the rule and planned sample sizes
    report_pos : bool, default=False
        Compute the interim probability of success even without a futility
        threshold
    """

    design: TwoArmDesign
    report_pos: bool = False
    tag: str = DECISION_SIGNAL_TAG

    def interim_pos(self, post1: ArmPosterior, post2: ArmPosterior) -> Optional[float]:
        """
        Predictive probability of success at the planned sample sizes.

        None once an arm has reached its planned size, and for exponential
        outcomes.
        """
        if not self.design.has_interim_pos:
            return None
        remaining1 = self.design.planned(post1.arm) - post1.n
        remaining2 = self.design.planned(post2.arm) - post2.n
        if remaining1 <= 0 or remaining2 <= 0:
            return None
        pos = pos2S(
            post1.mixture, post2.mixture, remaining1, remaining2, self.design.decision
        )
        return float(pos(post1.mixture, post2.mixture))

    def step(
        self, ledger: Ledger, experiment_id: str, step_key: str, time_index: str
    ) -> None:
        posteriors = step_posteriors(ledger, experiment_id, step_key)
        if set(posteriors) != set(ARMS):
            raise RuntimeError(
                f"No arm posteriors for {experiment_id} at {step_key}; run PosteriorUpdate first"
            )
        post1, post2 = posteriors[1], posteriors[2]
        rule = self.design.decision

        probabilities = rule.probabilities(post1.mixture, post2.mixture)
        margin = float((probabilities - rule.probs).min())
        final = post1.n >= self.design.n1 and post2.n >= self.design.n2

        prob_success: Optional[float] = None
        if not final and (self.design.futility is not None or self.report_pos):
            prob_success = self.interim_pos(post1, post2)

        if margin > 0:
            decision = "success"
        elif final:
            decision = "futility"
        elif (
            self.design.futility is not None
            and prob_success is not None
            and prob_success < self.design.futility
        ):
            decision = "futility"
        else:
            decision = "continue"

        logger.debug(
            "%s %s: margin=%.4f pos=%s -> %s",
            experiment_id,
            step_key,
            margin,
            prob_success,
            decision,
        )
        self.emit(
            ledger,
            experiment_id,
            step_key,
            time_index,
            kind=decision,
            payload_type="TrialDecision",
            payload=DecisionPayload(
                decision=decision,
                margin=margin,
                probabilities=[float(p) for p in probabilities],
                prob_success=prob_success,
                n1=post1.n,
                n2=post2.n,
            ),
        )
