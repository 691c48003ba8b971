"""
mapprior.core.ledger
====================

Append-only event ledger of trial analyses, stored through ibis-framework.

Every analysis step is recorded as one row: where it belongs (ledger name,
experiment and look), what it is (namespace, kind, tag) and a typed payload
kept as JSON text. Payload types with a registered handler (mixtures, arm
posteriors) are restored to their Python objects on read; all others are
plain JSON. Each row carries a ledger-wide sequence number giving the write
order and the mapprior version that wrote it.

Examples:
---------
>>> from mapprior.core.ledger import Ledger, create_test_connection
>>> from mapprior.core.names import Namespace
>>>
>>> ledger = Ledger(create_test_connection("duckdb"))
>>> ledger.write_event(
...     time_index="t1", namespace=Namespace.OBS, kind="observation",
...     experiment_id="exp1", step_key="look-1", payload_type="ArmBatch",
...     payload={"n1": 20, "y1": 7, "n2": 20, "y2": 5}
... )
>>>
>>> # ibis expressions on the raw rows (payload is JSON text)
>>> t = ledger.table
>>> int(t.filter(t.payload_type == "ArmBatch").count().execute())
1
>>>
>>> # decoded events
>>> ledger.events(namespace=Namespace.OBS, experiment_id="exp1")[0]["payload"]["y1"]
7
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union
import json
import uuid as uuid_module

import ibis
import pandas as pd
import polars as pl
from ibis import BaseBackend
from ibis.expr.types import Table

from mapprior.core.names import Namespace, ExperimentId, StepKey, TimeIndex
from mapprior.__version__ import __version__

NamespaceLike = Union[Namespace, str]

LEDGER_COLUMNS = (
    ("uuid", "string"),
    ("seq", "int64"),
    ("ledger_name", "string"),
    ("time_index", "string"),
    ("ts", "timestamp"),
    ("namespace", "string"),
    ("kind", "string"),
    ("entity", "string"),
    ("snapshot_id", "string"),
    ("tag", "string"),
    ("payload_type", "string"),
    ("payload", "string"),
    ("mapprior_version", "string"),
)


def get_ledger_schema() -> ibis.Schema:
    return ibis.schema(list(LEDGER_COLUMNS))


def entity_key(experiment_id: Union[ExperimentId, str], step_key: Union[StepKey, str]) -> str:
    """Entity column value of one look of one experiment."""
    return f"{experiment_id}#{step_key}"


# --- Payload handlers ---


class PayloadType(ABC):
    """Converts one payload type to and from its stored JSON text."""

    @abstractmethod
    def wrap(self, data: Any) -> str:
        ...

    @abstractmethod
    def unwrap(self, json_str: str) -> Any:
        ...


class JSONPayloadType(PayloadType):
    """Plain JSON; used for every payload type without a handler."""

    def wrap(self, data: Any) -> str:
        return json.dumps(data, separators=(",", ":"))

    def unwrap(self, json_str: str) -> Any:
        return json.loads(json_str)


class PayloadTypeRegistry:
    """Process-wide mapping of payload type names to handlers."""

    _handlers: Dict[str, PayloadType] = {}
    _default_handler = JSONPayloadType()

    @classmethod
    def register(cls, payload_type: str, handler: PayloadType) -> None:
        cls._handlers[payload_type] = handler

    @classmethod
    def get_handler(cls, payload_type: str) -> PayloadType:
        return cls._handlers.get(payload_type, cls._default_handler)

    @classmethod
    def wrap(cls, payload_type: str, data: Any) -> str:
        return cls.get_handler(payload_type).wrap(data)

    @classmethod
    def unwrap(cls, payload_type: str, json_str: str) -> Any:
        return cls.get_handler(payload_type).unwrap(json_str)


# --- Ledger ---


class Ledger:
    """
    One named ledger inside a backend table.

    Several ledgers may share a table (and a connection); `table` only shows
    the rows of this one, `raw_table` shows all of them. Queries are built
    by callers as ibis expressions; `events` and `latest` cover the common
    filters and return decoded rows.

    Parameters
    ----------
    connection : BaseBackend
        Ibis backend connection
    ledger_name : str, default="default"
        Name of this ledger within the table
    table_name : str, default="ledger"
        Backend table holding the events
    """

    def __init__(
        self,
        connection: BaseBackend,
        ledger_name: str = "default",
        table_name: str = "ledger",
    ):
        self.connection = connection
        self.ledger_name = ledger_name
        self.table_name = table_name
        if table_name not in connection.list_tables():
            connection.create_table(table_name, schema=get_ledger_schema())

    @property
    def table(self) -> Table:
        """
        Rows of this ledger as an ibis table expression.

        Examples
        --------
        >>> ledger = Ledger(create_test_connection("duckdb"), "test_ledger")
        >>> t = ledger.table
        >>> int(t.filter(t.namespace == "obs").count().execute())
        0
        """
        table = self.connection.table(self.table_name)
        return table.filter(table.ledger_name == self.ledger_name)

    @property
    def raw_table(self) -> Table:
        """Rows of every ledger sharing the table."""
        return self.connection.table(self.table_name)

    def _next_seq(self) -> int:
        return int(self.raw_table.count().execute())

    def write_event(
        self,
        *,
        time_index: Union[TimeIndex, str],
        namespace: NamespaceLike,
        kind: str,
        experiment_id: Union[ExperimentId, str],
        step_key: Union[StepKey, str],
        payload_type: str,
        payload: Any,
        tag: Optional[str] = None,
        ts: Optional[datetime] = None,
    ) -> None:
        """
        Append one event.

        Parameters
        ----------
        time_index : str
            Analysis time of the event (``t0`` for the design, ``t<look>``)
        namespace : Namespace or str
            Event namespace
        kind : str
            Event kind within the namespace (e.g. ``posterior``, ``success``)
        experiment_id, step_key : str
            Trial and look the event belongs to
        payload_type : str
            Name under which the payload handler is registered
        payload : Any
            Event data
        tag : str, optional
            Free-form label used by components to find their own events
        ts : datetime, optional
            Wall-clock time; defaults to now, stored as naive UTC
        """
        if ts is None:
            ts = datetime.now(timezone.utc)
        elif ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)

        row = {
            "uuid": str(uuid_module.uuid4()),
            "seq": self._next_seq(),
            "ledger_name": self.ledger_name,
            "time_index": str(time_index),
            "ts": ts.astimezone(timezone.utc).replace(tzinfo=None),
            "namespace": str(namespace),
            "kind": kind,
            "entity": entity_key(experiment_id, step_key),
            "snapshot_id": str(step_key),
            "tag": tag or "",
            "payload_type": payload_type,
            "payload": PayloadTypeRegistry.wrap(payload_type, payload),
            "mapprior_version": __version__,
        }
        self.connection.insert(self.table_name, pd.DataFrame([row]))

    def unwrap_payload(self, payload_type: str, payload_json: str) -> Any:
        return PayloadTypeRegistry.unwrap(payload_type, payload_json)

    def unwrap_results(self, df: Any) -> List[Dict[str, Any]]:
        """
        Rows of a query result with their payloads decoded.

        Parameters
        ----------
        df : pandas.DataFrame or polars.DataFrame
            Query result holding ``payload`` and ``payload_type`` columns

        Returns
        -------
        List[Dict[str, Any]]
            One dict per row
        """
        records: List[Dict[str, Any]] = (
            df.to_dicts() if isinstance(df, pl.DataFrame) else df.to_dict("records")
        )
        for record in records:
            if "payload" in record and "payload_type" in record:
                record["payload"] = self.unwrap_payload(record["payload_type"], record["payload"])
        return records

    def frame(self) -> pl.DataFrame:
        """All rows of this ledger in write order."""
        return self.table.order_by("seq").to_polars()

    def _select(
        self,
        namespace: NamespaceLike,
        experiment_id: Union[ExperimentId, str],
        step_key: Optional[Union[StepKey, str]] = None,
        kind: Optional[str] = None,
        tag: Optional[str] = None,
        payload_type: Optional[str] = None,
    ) -> Table:
        t = self.table
        expr = t.filter(t.namespace == str(namespace))
        if step_key is None:
            expr = expr.filter(expr.entity.startswith(f"{experiment_id}#"))
        else:
            expr = expr.filter(expr.entity == entity_key(experiment_id, step_key))
        for column, value in (("kind", kind), ("tag", tag), ("payload_type", payload_type)):
            if value is not None:
                expr = expr.filter(expr[column] == value)
        return expr

    def events(
        self,
        *,
        namespace: NamespaceLike,
        experiment_id: Union[ExperimentId, str],
        step_key: Optional[Union[StepKey, str]] = None,
        kind: Optional[str] = None,
        tag: Optional[str] = None,
        payload_type: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Decoded events of one experiment (optionally one look) in write order."""
        expr = self._select(namespace, experiment_id, step_key, kind, tag, payload_type)
        return self.unwrap_results(expr.order_by("seq").to_polars())

    def latest(
        self,
        *,
        namespace: NamespaceLike,
        experiment_id: Union[ExperimentId, str],
        kind: Optional[str] = None,
        tag: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Most recent matching event of one experiment, or None."""
        expr = self._select(namespace, experiment_id, kind=kind, tag=tag)
        rows = expr.order_by(ibis.desc("seq")).limit(1).to_polars()
        return self.unwrap_results(rows)[0] if rows.height else None


def create_test_connection(backend: str = "duckdb") -> BaseBackend:
    """
    In-memory backend for tests, examples and throwaway simulations.

    Examples
    --------
    >>> ledger = Ledger(create_test_connection(), "test")
    >>> ledger.write_event(
    ...     time_index="t1", namespace=Namespace.OBS, kind="test",
    ...     experiment_id="exp1", step_key="s1", payload_type="TestData",
    ...     payload={"value": 42}
    ... )
    >>> ledger.unwrap_results(ledger.frame())[0]["payload"]["value"]
    42
    """
    if backend == "duckdb":
        return ibis.duckdb.connect(":memory:")
    raise ValueError(f"Unsupported backend: {backend}. Use 'duckdb'.")
