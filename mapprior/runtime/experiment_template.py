"""
mapprior.runtime.experiment_template
====================================

Base class of trial templates and the result of one look.

A template owns the design of one trial and the components run at each
look. Its life cycle is ``setup(ledger)`` (components are built and the
design is written), then any number of ``add_observations(...)`` /
``analyze()`` pairs. Looks are numbered from 1; the events of look k use
time index ``t<k>`` and step key ``look-<k>``.

Examples
--------
>>> from mapprior.core.ledger import Ledger, create_test_connection
>>> from mapprior.core.components import Observer
>>> from mapprior.runtime.experiment_template import ExperimentTemplate, AnalysisResult
>>>
>>> class NullIngestor(Observer):
...     def create_batch(self, timestamp=None): return {}
...     def register_batch(self, ledger, experiment_id, step_key, time_index, batch): return True
...     def step(self, ledger, experiment_id, step_key, time_index): pass
>>>
>>> class MyTemplate(ExperimentTemplate):
...     def configure_components(self): return {"ingestor": NullIngestor()}
...     def register_design(self, ledger): pass
...     def extract_results(self, ledger):
...         return AnalysisResult(should_stop=False, statistic_value=0.0,
...                               threshold_value=None, look_number=self.current_look)
...     def _populate_batch(self, batch, **kwargs): pass
>>>
>>> template = MyTemplate("trial")
>>> template.setup(Ledger(create_test_connection(), "test"))
>>> template.add_observations()
>>> template.analyze().look_number
1
"""

from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from mapprior.core.ledger import Ledger

logger = logging.getLogger(__name__)


def look_keys(look: int) -> Tuple[str, str]:
    """Time index and step key of a look."""
    return f"t{look}", f"look-{look}"


@dataclass
class AnalysisResult:
    """
    Outcome of one look.

    ``statistic_value`` is the margin of the decision rule (positive when it
    is met); the ``*_event`` fields carry the decoded ledger payloads the
    result was built from.
    """

    should_stop: bool
    statistic_value: float
    threshold_value: Optional[float]
    look_number: int
    decision: str = "continue"

    prob_success: Optional[float] = None
    n1: Optional[float] = None
    n2: Optional[float] = None
    posterior_mean1: Optional[float] = None
    posterior_mean2: Optional[float] = None
    additional_metrics: Dict[str, Any] = field(default_factory=dict)

    statistic_event: Optional[Any] = None
    criteria_event: Optional[Any] = None
    signal_event: Optional[Any] = None

    @property
    def total_sample_size(self) -> Optional[float]:
        if self.n1 is None or self.n2 is None:
            return None
        return self.n1 + self.n2


class ExperimentTemplate(ABC):
    """
    One trial: its design, its components and how results are read back.

    Subclasses build the components (``ingestor`` first, then statistic,
    criteria and signaler, run in that order), write the design, fill
    observation batches from keyword arguments and turn the events of a
    look into an `AnalysisResult`.
    """

    def __init__(self, experiment_id: str):
        self.experiment_id = experiment_id
        self.ledger: Optional[Ledger] = None
        self.components: Dict[str, Any] = {}
        self._current_look = 0

    @property
    def current_look(self) -> int:
        return self._current_look

    @property
    def is_setup(self) -> bool:
        return self.ledger is not None and bool(self.components)

    @abstractmethod
    def configure_components(self) -> Dict[str, Any]:
        """Components by name; must contain ``ingestor``."""

    @abstractmethod
    def register_design(self, ledger: Ledger) -> None:
        ...

    @abstractmethod
    def extract_results(self, ledger: Ledger) -> AnalysisResult:
        """Read the events of the current look back into a result."""

    @abstractmethod
    def _populate_batch(self, batch: Any, **kwargs: Any) -> None:
        """Fill ``batch`` from the keyword arguments of `add_observations`."""

    def setup(self, ledger: Ledger) -> None:
        self.components = self.configure_components()
        self.ledger = ledger
        self.register_design(ledger)
        logger.debug("Trial %s set up on ledger %s", self.experiment_id, ledger.ledger_name)

    def _ledger_or_raise(self) -> Ledger:
        if self.ledger is None or not self.components:
            raise RuntimeError(f"Trial {self.experiment_id} is not set up; call setup(ledger)")
        return self.ledger

    def add_observations(self, **kwargs: Any) -> None:
        """
        Register one batch of observations as the next look.

        Raises
        ------
        RuntimeError
            If the template is not set up
        ValueError
            If the batch cannot be built or is rejected; the look counter
            is left unchanged
        """
        ledger = self._ledger_or_raise()
        ingestor = self.components["ingestor"]
        batch = ingestor.create_batch()
        self._populate_batch(batch, **kwargs)

        look = self._current_look + 1
        time_index, step_key = look_keys(look)
        if not ingestor.register_batch(ledger, self.experiment_id, step_key, time_index, batch):
            errors = getattr(batch, "validation_errors", [])
            raise ValueError(f"Observations for look {look} rejected: {errors}")
        self._current_look = look

    def analyze(self) -> AnalysisResult:
        """Run every component on the current look and read the result back."""
        ledger = self._ledger_or_raise()
        if self._current_look == 0:
            raise ValueError("Nothing to analyse; call add_observations() first")

        time_index, step_key = look_keys(self._current_look)
        for name, component in self.components.items():
            logger.debug("%s look %d: %s", self.experiment_id, self._current_look, name)
            component.step(ledger, self.experiment_id, step_key, time_index)

        result = self.extract_results(ledger)
        logger.info(
            "%s look %d: %s (margin %.4f)",
            self.experiment_id,
            result.look_number,
            result.decision,
            result.statistic_value,
        )
        return result

    def get_summary(self) -> Dict[str, Any]:
        summary: Dict[str, Any] = {
            "experiment_id": str(self.experiment_id),
            "status": "ready" if self.is_setup else "not_setup",
            "current_look": self._current_look,
        }
        if self.is_setup:
            summary["components"] = list(self.components)
        return summary

    def reset(self) -> None:
        """Start counting looks from zero again; the ledger keeps its events."""
        self._current_look = 0
