"""
mapprior.reporting.trial
========================

Reporters over a trial ledger.

`LedgerReporter` is scheme-agnostic: it lists entities, namespaces and kinds
and counts events per namespace x kind. `TrialReporter` understands the
payloads of two-arm trials and builds a per-look progress table.

Examples
--------
>>> from mapprior.core.ledger import Ledger, create_test_connection
>>> from mapprior.stats.common.mixture import mixbeta
>>> from mapprior.stats.methods.decision.core import decision2S
>>> from mapprior.stats.schemes.two_arm.template import TwoArmTrialTemplate
>>> from mapprior.reporting.trial import TrialReporter
>>> ledger = Ledger(create_test_connection(), "demo")
>>> trial = TwoArmTrialTemplate("t1", prior1=mixbeta((1.0, 1, 1)), prior2=mixbeta((1.0, 1, 1)),
...                             n1=40, n2=40, decision=decision2S(0.95, 0.0, lower_diff=False))
>>> trial.setup(ledger)
>>> trial.add_observations(n1=20, y1=10, n2=20, y2=9)
>>> _ = trial.analyze()
>>> rep = TrialReporter(ledger, "t1")
>>> rep.progress().select("look", "n1", "n2", "decision").row(0)
(1, 20.0, 20.0, 'continue')
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List

import ibis
import polars as pl

from mapprior.core.names import DECISION_SIGNAL_TAG, Namespace

if TYPE_CHECKING:
    from mapprior.core.ledger import Ledger

_PROGRESS_SCHEMA = {
    "look": pl.Int64,
    "time_index": pl.Utf8,
    "n1": pl.Float64,
    "y1": pl.Float64,
    "n2": pl.Float64,
    "y2": pl.Float64,
    "mean1": pl.Float64,
    "mean2": pl.Float64,
    "margin": pl.Float64,
    "prob_success": pl.Float64,
    "decision": pl.Utf8,
}


@dataclass
class LedgerReporter:
    """A generic, scheme-agnostic reporter for any trial ledger."""

    ledger: "Ledger"

    def ledger_table(self) -> Any:
        """Return the underlying ledger table as ibis expression."""
        return self.ledger.table

    def _distinct(self, column: str) -> List[str]:
        table = self.ledger.table
        values = table.select(table[column]).distinct().to_polars()[column]
        return sorted(v for v in values.to_list() if v is not None)

    def unique_entities(self) -> List[str]:
        return self._distinct("entity")

    def unique_namespaces(self) -> List[str]:
        return self._distinct("namespace")

    def unique_kinds(self) -> List[str]:
        return self._distinct("kind")

    def namespace_kind_counts(self) -> pl.DataFrame:
        """
        Counts of events grouped by namespace and kind.

        Returns
        -------
        pl.DataFrame
            Columns namespace, kind and count
        """
        table = self.ledger.table
        counts = (
            table.group_by([table.namespace, table.kind])
            .aggregate(count=ibis._.count())
            .order_by(["namespace", "kind"])
        )
        return counts.to_polars()


@dataclass
class TrialReporter(LedgerReporter):
    """Progress view of one two-arm trial."""

    experiment_id: str = ""

    def _events(self, namespace: Namespace, payload_type: str) -> List[Dict[str, Any]]:
        return self.ledger.events(
            namespace=namespace, experiment_id=self.experiment_id, payload_type=payload_type
        )

    def progress(self) -> pl.DataFrame:
        """
        One row per analysed look.

        Returns
        -------
        pl.DataFrame
            Cumulative arm totals, posterior means, rule margin, interim
            probability of success and decision per look
        """
        rows: Dict[str, Dict[str, Any]] = {}
        for record in self._events(Namespace.STATS, "ArmPosterior"):
            post = record["payload"]
            row = rows.setdefault(record["snapshot_id"], {"time_index": record["time_index"]})
            row[f"n{post.arm}"] = post.n
            row[f"y{post.arm}"] = post.y
            row[f"mean{post.arm}"] = post.mixture.mean()
        for record in self._events(Namespace.SIGNALS, "TrialDecision"):
            payload = record["payload"]
            row = rows.setdefault(record["snapshot_id"], {"time_index": record["time_index"]})
            row["margin"] = payload["margin"]
            row["prob_success"] = payload["prob_success"]
            row["decision"] = payload["decision"]

        out = []
        for step_key, row in rows.items():
            look = int(step_key.rsplit("-", 1)[-1])
            out.append({col: row.get(col) for col in _PROGRESS_SCHEMA} | {"look": look})
        return pl.DataFrame(out, schema=_PROGRESS_SCHEMA).sort("look")

    def final_decision(self) -> str:
        """Decision of the latest look, or ``"not analysed"``."""
        signal = self.ledger.latest(
            namespace=Namespace.SIGNALS, experiment_id=self.experiment_id, tag=DECISION_SIGNAL_TAG
        )
        return "not analysed" if signal is None else signal["payload"]["decision"]
