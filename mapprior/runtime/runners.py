"""
mapprior.runtime.runners
========================

Drivers that feed looks into trial templates.

A template knows how to analyse one look; a runner owns the sequence of
looks. `SequentialRunner` plays one trial until it stops (or replays a list
of batches with `run`), `BatchRunner` feeds identical batches to several
trials, which is how two designs are compared on the same patients.

Examples
--------
>>> from mapprior.core.ledger import Ledger, create_test_connection
>>> from mapprior.stats.common.mixture import mixbeta
>>> from mapprior.stats.methods.decision.core import decision2S
>>> from mapprior.stats.schemes.two_arm.template import TwoArmTrialTemplate
>>> from mapprior.runtime.runners import SequentialRunner
>>>
>>> template = TwoArmTrialTemplate(
...     "trial", prior1=mixbeta((1.0, 1, 1)), prior2=mixbeta((1.0, 1, 1)),
...     n1=40, n2=40, decision=decision2S(0.95, 0.0, lower_diff=False))
>>> runner = SequentialRunner(template, Ledger(create_test_connection(), "demo"))
>>> looks = [dict(n1=20, y1=15, n2=20, y2=5), dict(n1=20, y1=15, n2=20, y2=5)]
>>> [r.decision for r in runner.run(looks)]
['success']
"""

from __future__ import annotations
import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from mapprior.core.ledger import Ledger
from mapprior.runtime.experiment_template import AnalysisResult, ExperimentTemplate

logger = logging.getLogger(__name__)


class SequentialRunner:
    """
    Plays one trial look by look.

    Parameters
    ----------
    template : ExperimentTemplate
        Trial to run
    ledger : Ledger, optional
        Ledger to set the template up on; may be given later via `setup`
    """

    def __init__(self, template: ExperimentTemplate, ledger: Optional[Ledger] = None):
        self.template = template
        self._ledger: Optional[Ledger] = None
        self._looks: List[AnalysisResult] = []
        if ledger is not None:
            self.setup(ledger)

    @property
    def ledger(self) -> Optional[Ledger]:
        return self._ledger

    @property
    def last_result(self) -> Optional[AnalysisResult]:
        return self._looks[-1] if self._looks else None

    @property
    def is_stopped(self) -> bool:
        last = self.last_result
        return last is not None and last.should_stop

    def setup(self, ledger: Ledger) -> None:
        self._ledger = ledger
        self.template.setup(ledger)

    def _check_ready(self) -> None:
        if self._ledger is None:
            raise RuntimeError(
                f"No ledger for trial {self.template.experiment_id}; "
                "pass one to the runner or call setup(ledger)"
            )

    def add_observations(self, **kwargs: Any) -> None:
        """Register the next batch; refused once the trial has stopped."""
        self._check_ready()
        last = self.last_result
        if last is not None and last.should_stop:
            raise RuntimeError(
                f"Trial {self.template.experiment_id} stopped at look "
                f"{last.look_number} ({last.decision})"
            )
        self.template.add_observations(**kwargs)

    def analyze(self) -> AnalysisResult:
        """Analyse the current look and append it to the history."""
        self._check_ready()
        result = self.template.analyze()
        self._looks.append(result)
        if result.should_stop:
            logger.info(
                "Trial %s stopped at look %d: %s",
                self.template.experiment_id,
                result.look_number,
                result.decision,
            )
        return result

    def step(self, **kwargs: Any) -> AnalysisResult:
        self.add_observations(**kwargs)
        return self.analyze()

    def run(self, batches: Iterable[Mapping[str, Any]]) -> List[AnalysisResult]:
        """
        Replay batches until the trial stops or the batches run out.

        Parameters
        ----------
        batches : iterable of mappings
            Keyword arguments of `add_observations`, one mapping per look

        Returns
        -------
        List[AnalysisResult]
            Results of the looks analysed by this call
        """
        played: List[AnalysisResult] = []
        for batch in batches:
            if self.is_stopped:
                break
            played.append(self.step(**batch))
        return played

    def get_results_history(self) -> List[AnalysisResult]:
        return list(self._looks)

    def get_summary(self) -> Dict[str, Any]:
        """Template summary plus the number of looks and the latest decision."""
        last = self.last_result
        summary = self.template.get_summary()
        summary["runner_type"] = "sequential"
        summary["total_looks"] = len(self._looks)
        summary["is_stopped"] = self.is_stopped
        summary["decision"] = None if last is None else last.decision
        return summary

    def reset(self) -> None:
        """Forget the looks played so far; ledger events are kept."""
        self.template.reset()
        self._looks = []


class BatchRunner:
    """
    Several trials fed with the same observations, each on its own ledger.

    Parameters
    ----------
    templates : list of ExperimentTemplate
        Trials to compare
    ledger_factory : callable
        Returns a fresh ledger for each trial
    """

    def __init__(
        self,
        templates: List[ExperimentTemplate],
        ledger_factory: Callable[[], Ledger],
    ):
        self.templates = templates
        self.ledger_factory = ledger_factory
        self.runners: List[SequentialRunner] = []

    def setup(self) -> None:
        self.runners = [SequentialRunner(t, self.ledger_factory()) for t in self.templates]

    def add_observations_all(self, **kwargs: Any) -> None:
        """Register the batch with every trial that has not stopped."""
        for runner in self.runners:
            if not runner.is_stopped:
                runner.add_observations(**kwargs)

    def analyze_all(self) -> List[Optional[AnalysisResult]]:
        """Results of the current look; None for trials stopped earlier."""
        return [None if r.is_stopped else r.analyze() for r in self.runners]

    def get_comparison_summary(self) -> Dict[str, Any]:
        summaries = [runner.get_summary() for runner in self.runners]
        return {
            "total_templates": len(self.templates),
            "templates": summaries,
            "stopped_count": sum(bool(s["is_stopped"]) for s in summaries),
            "decisions": {s["experiment_id"]: s["decision"] for s in summaries},
        }
