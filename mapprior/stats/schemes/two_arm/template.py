"""
mapprior.stats.schemes.two_arm.template
=======================================

Trial template for two-arm designs analysed with mixture priors.

`TwoArmTrialTemplate` registers the design (priors as ``Mixture`` events,
sample sizes and rule as a ``TwoArmDesign`` event) and wires the components
of `mapprior.stats.schemes.two_arm.components` into the look-by-look
pipeline of `ExperimentTemplate`.

Examples
--------
>>> from mapprior.core.ledger import Ledger, create_test_connection
>>> from mapprior.stats.common.mixture import mixbeta
>>> from mapprior.stats.methods.decision.core import decision2S
>>> from mapprior.stats.schemes.two_arm.template import TwoArmTrialTemplate
>>>
>>> trial = TwoArmTrialTemplate(
...     "trial-1",
...     prior1=mixbeta((1.0, 1, 1)),
...     prior2=mixbeta((0.8, 11, 29), (0.2, 1, 1)),
...     n1=60, n2=30,
...     decision=decision2S(0.95, 0.0, lower_diff=False),
...     futility=0.05,
... )
>>> trial.setup(Ledger(create_test_connection(), "demo"))
>>> trial.add_observations(n1=30, y1=14, n2=15, y2=4)
>>> result = trial.analyze()
>>> result.decision in ("success", "futility", "continue")
True
>>> result.n1, result.n2
(30.0, 15.0)
"""

from __future__ import annotations
import logging
from typing import Any, Dict, Optional

from mapprior.core.ledger import Ledger
from mapprior.core.names import DECISION_RULE_TAG, DECISION_SIGNAL_TAG, DESIGN_TAG, Namespace
from mapprior.runtime.experiment_template import AnalysisResult, ExperimentTemplate, look_keys
from mapprior.stats.common.mixture import MixtureDistribution
from mapprior.stats.methods.decision.core import DecisionRule2S
from mapprior.stats.schemes.two_arm.components import (
    ArmObservation,
    DecisionCriteria,
    DecisionSignaler,
    PosteriorUpdate,
    step_posteriors,
)
from mapprior.stats.schemes.two_arm.model import ArmBatch, TwoArmDesign

logger = logging.getLogger(__name__)

DESIGN_STEP = "design"


class TwoArmTrialTemplate(ExperimentTemplate):
    """
    Two-arm trial with conjugate mixture priors and a two-sample rule.

    Attributes:
        experiment_id: Unique identifier for the trial
        design: Priors, planned sample sizes, rule and futility threshold
        report_pos: Report the interim probability of success at every look
    """

    def __init__(
        self,
        experiment_id: str,
        *,
        prior1: MixtureDistribution,
        prior2: MixtureDistribution,
        n1: float,
        n2: float,
        decision: DecisionRule2S,
        futility: Optional[float] = None,
        report_pos: bool = False,
    ):
        super().__init__(experiment_id)
        self.design = TwoArmDesign(
            prior1=prior1,
            prior2=prior2,
            n1=n1,
            n2=n2,
            decision=decision,
            futility=futility,
        )
        self.report_pos = report_pos

    def configure_components(self) -> Dict[str, Any]:
        return {
            "ingestor": ArmObservation(outcome=self.design.outcome),
            "statistic": PosteriorUpdate(design=self.design),
            "criteria": DecisionCriteria(design=self.design),
            "signaler": DecisionSignaler(design=self.design, report_pos=self.report_pos),
        }

    def register_design(self, ledger: Ledger) -> None:
        """Write the priors and the design record under the ``design`` step."""
        for arm in (1, 2):
            ledger.write_event(
                time_index="t0",
                namespace=Namespace.DESIGN,
                kind="prior",
                experiment_id=self.experiment_id,
                step_key=DESIGN_STEP,
                payload_type="Mixture",
                payload=self.design.prior(arm),
                tag=f"prior:{arm}",
            )
        ledger.write_event(
            time_index="t0",
            namespace=Namespace.DESIGN,
            kind="design",
            experiment_id=self.experiment_id,
            step_key=DESIGN_STEP,
            payload_type="TwoArmDesign",
            payload=self.design.to_record(),
            tag=DESIGN_TAG,
        )

    def _populate_batch(self, batch: ArmBatch, **kwargs: Any) -> None:
        """
        Fill a batch from keyword data.

        Accepted forms (either or both arms per call):
        - ``n1=..., y1=..., n2=..., y2=...``: arm totals
        - ``values1=[...], values2=[...]``: raw per-unit outcomes
        """
        used = False
        for arm in (1, 2):
            if f"values{arm}" in kwargs:
                batch.add_values(arm, kwargs[f"values{arm}"])
                used = True
            elif f"n{arm}" in kwargs:
                if f"y{arm}" not in kwargs:
                    raise ValueError(f"n{arm} given without y{arm}")
                batch.add_arm(arm, kwargs[f"n{arm}"], kwargs[f"y{arm}"])
                used = True
        if not used:
            raise ValueError(
                "Unsupported observation format; pass n1/y1/n2/y2 or values1/values2"
            )

    def extract_results(self, ledger: Ledger) -> AnalysisResult:
        _, step_key = look_keys(self.current_look)
        signal = ledger.latest(
            namespace=Namespace.SIGNALS, experiment_id=self.experiment_id, tag=DECISION_SIGNAL_TAG
        )
        criteria = ledger.latest(
            namespace=Namespace.CRITERIA, experiment_id=self.experiment_id, tag=DECISION_RULE_TAG
        )
        if signal is None:
            raise RuntimeError(f"No decision was signalled for {self.experiment_id}")
        payload = signal["payload"]
        posteriors = step_posteriors(ledger, self.experiment_id, step_key)

        return AnalysisResult(
            should_stop=payload["decision"] != "continue",
            statistic_value=payload["margin"],
            threshold_value=self.design.futility,
            look_number=self.current_look,
            decision=payload["decision"],
            prob_success=payload["prob_success"],
            n1=payload["n1"],
            n2=payload["n2"],
            posterior_mean1=posteriors[1].mixture.mean(),
            posterior_mean2=posteriors[2].mixture.mean(),
            additional_metrics={"probabilities": payload["probabilities"]},
            statistic_event={arm: post.mixture for arm, post in posteriors.items()},
            criteria_event=criteria,
            signal_event=signal,
        )

    def get_summary(self) -> Dict[str, Any]:
        summary = super().get_summary()
        summary.update(
            {
                "experiment_type": "two_arm",
                "outcome": self.design.outcome,
                "rule": str(self.design.decision),
                "planned_n1": self.design.n1,
                "planned_n2": self.design.n2,
            }
        )
        return summary
