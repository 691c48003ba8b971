"""
mapprior.core.components
========================

Base classes for the components a trial analysis is made of.

A look of a trial is one pass of its components over the ledger. Every
component owns a namespace and a tag; it reads earlier events with ibis
expressions on ``ledger.table`` and writes its own through `emit`, so the
events of one component can always be found by namespace and tag.

Component Types:
- `Observer`: validate raw observations and register them as batches
- `Statistic`: derive values from the observations (e.g. posterior mixtures)
- `Criteria`: register the decision rule in force
- `Signaler`: turn statistics and criteria into success/futility/continue

Examples
--------
>>> from mapprior.core.ledger import Ledger, create_test_connection
>>>
>>> ledger = Ledger(create_test_connection("duckdb"), "test")
>>>
>>> class CountObs(Statistic):
...     def step(self, ledger, experiment_id, step_key, time_index):
...         t = ledger.table
...         n_obs = int(t.filter(t.namespace == "obs").count().execute())
...         self.emit(ledger, experiment_id, step_key, time_index,
...                   kind="updated", payload_type="ObsCount", payload={"n_obs": n_obs})
...
>>> CountObs(tag="stat:count").step(ledger, "exp1", "step1", "t1")
>>> event = ledger.latest(namespace="stats", experiment_id="exp1")
>>> event["tag"], event["payload"]
('stat:count', {'n_obs': 0})
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Union, TYPE_CHECKING

from mapprior.core.names import Namespace, ExperimentId, StepKey, TimeIndex

NamespaceLike = Union[Namespace, str]

if TYPE_CHECKING:
    from mapprior.core.ledger import Ledger


@dataclass(kw_only=True)
class ComponentBase(ABC):
    """
    A ledger component bound to one namespace.

    Attributes:
        namespace: Namespace of the events the component writes
        tag: Tag attached to those events
    """

    namespace: NamespaceLike
    tag: str = ""

    @abstractmethod
    def step(
        self,
        ledger: "Ledger",
        experiment_id: Union[ExperimentId, str],
        step_key: Union[StepKey, str],
        time_index: Union[TimeIndex, str],
    ) -> None:
        """Run the component for one look of one trial."""

    def emit(
        self,
        ledger: "Ledger",
        experiment_id: Union[ExperimentId, str],
        step_key: Union[StepKey, str],
        time_index: Union[TimeIndex, str],
        *,
        kind: str,
        payload_type: str,
        payload: Any,
        ts: Optional[datetime] = None,
    ) -> None:
        """Write one event in the component's namespace under its tag."""
        ledger.write_event(
            time_index=str(time_index),
            namespace=self.namespace,
            kind=kind,
            experiment_id=str(experiment_id),
            step_key=str(step_key),
            payload_type=payload_type,
            payload=payload,
            tag=self.tag or None,
            ts=ts,
        )


@dataclass(kw_only=True)
class Observer(ComponentBase):
    """
    Validates observations and registers them as batches.

    Templates call `create_batch`, fill the batch and hand it to
    `register_batch`; `step` registers a batch left pending on the component.
    """

    namespace: NamespaceLike = Namespace.OBS
    tag: str = "obs:generic"

    @abstractmethod
    def create_batch(self, timestamp: Optional[datetime] = None) -> Any:
        """Return an empty batch."""

    @abstractmethod
    def register_batch(
        self,
        ledger: "Ledger",
        experiment_id: str,
        step_key: str,
        time_index: str,
        batch: Any,
    ) -> bool:
        """Write a batch to the ledger; False if it was rejected."""


@dataclass(kw_only=True)
class Statistic(ComponentBase):
    """Derives values from all observations so far."""

    namespace: NamespaceLike = Namespace.STATS
    tag: str = "stat:generic"


@dataclass(kw_only=True)
class Criteria(ComponentBase):
    """Registers the decision rule and thresholds of the design."""

    namespace: NamespaceLike = Namespace.CRITERIA
    tag: str = "crit:generic"


@dataclass(kw_only=True)
class Signaler(ComponentBase):
    """Compares statistics with criteria and emits a decision."""

    namespace: NamespaceLike = Namespace.SIGNALS
    tag: str = "signal:generic"
