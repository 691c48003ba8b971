"""Event ledger on an in-memory ibis backend."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import polars as pl
import pytest

from mapprior.__version__ import __version__
from mapprior.core.ledger import (
    Ledger,
    PayloadType,
    PayloadTypeRegistry,
    create_test_connection,
)
from mapprior.core.names import Namespace
from mapprior.stats.common.mixture import MixtureDistribution
from mapprior.stats.schemes.two_arm.model import ArmPosterior


def _write(ledger, kind="observation", step="look-1", payload=None, **kwargs):
    ledger.write_event(
        time_index="t1",
        namespace=kwargs.pop("namespace", Namespace.OBS),
        kind=kind,
        experiment_id=kwargs.pop("experiment_id", "exp"),
        step_key=step,
        payload_type=kwargs.pop("payload_type", "Plain"),
        payload=payload if payload is not None else {"value": 1},
        **kwargs,
    )


class TestWrite:
    def test_columns_are_filled(self, ledger):
        _write(ledger, tag="obs:arms")
        row = ledger.frame().row(0, named=True)
        assert row["entity"] == "exp#look-1"
        assert row["snapshot_id"] == "look-1"
        assert row["namespace"] == "obs"
        assert row["tag"] == "obs:arms"
        assert row["ledger_name"] == "test"
        assert row["mapprior_version"] == __version__
        assert json.loads(row["payload"]) == {"value": 1}

    def test_sequence_numbers_follow_write_order(self, ledger):
        for i in range(3):
            _write(ledger, step=f"look-{i}", payload={"value": i})
        frame = ledger.frame()
        assert frame["seq"].to_list() == [0, 1, 2]
        assert frame["snapshot_id"].to_list() == ["look-0", "look-1", "look-2"]

    def test_timestamps_stored_as_naive_utc(self, ledger):
        ts = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        _write(ledger, ts=ts)
        stored = ledger.frame()["ts"][0]
        assert stored.replace(tzinfo=None) == datetime(2024, 5, 1, 12, 0)

    def test_ledgers_share_a_table_but_not_rows(self):
        conn = create_test_connection()
        a, b = Ledger(conn, "a"), Ledger(conn, "b")
        _write(a)
        _write(b)
        _write(b)
        assert a.frame().height == 1
        assert b.frame().height == 2
        assert int(a.raw_table.count().execute()) == 3

    def test_unsupported_backend(self):
        with pytest.raises(ValueError):
            create_test_connection("sqlite")


class TestRead:
    def test_latest_filters_and_orders(self, ledger):
        _write(ledger, kind="continue", namespace=Namespace.SIGNALS, payload={"look": 1})
        _write(ledger, kind="success", namespace=Namespace.SIGNALS, payload={"look": 2})
        _write(ledger, kind="continue", namespace=Namespace.SIGNALS, experiment_id="other")
        assert ledger.latest(namespace=Namespace.SIGNALS, experiment_id="exp")["payload"] == {
            "look": 2
        }
        latest = ledger.latest(namespace=Namespace.SIGNALS, experiment_id="exp", kind="continue")
        assert latest["payload"] == {"look": 1}
        assert ledger.latest(namespace=Namespace.STATS, experiment_id="exp") is None

    def test_events_by_experiment_and_look(self, ledger):
        _write(ledger, step="look-1", payload={"look": 1})
        _write(ledger, step="look-2", payload={"look": 2})
        _write(ledger, step="look-2", payload_type="Other", payload={"look": 2})
        _write(ledger, step="look-1", experiment_id="exp2")

        events = ledger.events(namespace=Namespace.OBS, experiment_id="exp", payload_type="Plain")
        assert [e["payload"]["look"] for e in events] == [1, 2]
        at_look_2 = ledger.events(namespace=Namespace.OBS, experiment_id="exp", step_key="look-2")
        assert [e["payload_type"] for e in at_look_2] == ["Plain", "Other"]
        assert ledger.events(namespace=Namespace.STATS, experiment_id="exp") == []

    def test_unwrap_pandas_and_polars(self, ledger):
        _write(ledger, payload={"n1": 20, "y1": 7})
        pandas_rows = ledger.unwrap_results(ledger.table.execute())
        polars_rows = ledger.unwrap_results(ledger.frame())
        assert pandas_rows[0]["payload"] == polars_rows[0]["payload"] == {"n1": 20, "y1": 7}

    def test_ibis_expressions(self, ledger):
        _write(ledger)
        _write(ledger, namespace=Namespace.STATS, kind="posterior")
        t = ledger.table
        assert int(t.filter(t.namespace == "stats").count().execute()) == 1


class UpperCasePayload(PayloadType):
    def wrap(self, data):
        return json.dumps(data.upper())

    def unwrap(self, json_str):
        return json.loads(json_str).lower()


class TestPayloadTypes:
    def test_custom_handler(self, ledger):
        PayloadTypeRegistry.register("Shout", UpperCasePayload())
        _write(ledger, payload_type="Shout", payload="quiet")
        assert json.loads(ledger.frame()["payload"][0]) == "QUIET"
        assert ledger.unwrap_results(ledger.frame())[0]["payload"] == "quiet"

    def test_mixture_payloads(self, ledger, map_beta):
        _write(ledger, payload_type="Mixture", payload=map_beta)
        restored = ledger.unwrap_results(ledger.frame())[0]["payload"]
        assert isinstance(restored, MixtureDistribution)
        assert restored == map_beta

    def test_arm_posterior_payloads(self, ledger, map_beta):
        posterior = ArmPosterior(arm=2, n=20.0, y=5.0, mixture=map_beta)
        _write(ledger, payload_type="ArmPosterior", payload=posterior)
        assert ledger.unwrap_results(ledger.frame())[0]["payload"] == posterior

    def test_unknown_types_fall_back_to_json(self):
        assert PayloadTypeRegistry.wrap("Unregistered", {"a": [1, 2]}) == '{"a":[1,2]}'

    def test_frame_is_polars(self, ledger):
        _write(ledger)
        assert isinstance(ledger.frame(), pl.DataFrame)
