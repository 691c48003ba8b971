"""Two-arm trials run look by look on a ledger."""

from __future__ import annotations

import pytest

from mapprior.core.ledger import Ledger, create_test_connection
from mapprior.core.names import Namespace
from mapprior.reporting.trial import LedgerReporter, TrialReporter
from mapprior.runtime.runners import BatchRunner, SequentialRunner
from mapprior.stats.common.mixture import mixbeta, mixgamma, mixnorm
from mapprior.stats.methods.decision.core import decision2S
from mapprior.stats.schemes.two_arm.components import arm_posterior, reduce_arm_totals
from mapprior.stats.schemes.two_arm.model import ArmBatch, TwoArmDesign, arm_index
from mapprior.stats.schemes.two_arm.template import TwoArmTrialTemplate

SUPERIORITY = decision2S(0.95, 0.0, lower_diff=False)


def _trial(experiment_id="trial", n1=40, n2=40, decision=SUPERIORITY, **kwargs):
    uniform = mixbeta((1.0, 1, 1))
    return TwoArmTrialTemplate(
        experiment_id,
        prior1=kwargs.pop("prior1", uniform),
        prior2=kwargs.pop("prior2", uniform),
        n1=n1,
        n2=n2,
        decision=decision,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Batches and design
# ---------------------------------------------------------------------------


class TestArmBatch:
    def test_arm_labels(self):
        assert arm_index("Treatment") == 1
        assert arm_index("placebo") == 2
        assert arm_index(2) == 2
        with pytest.raises(ValueError):
            arm_index(3)

    def test_raw_values_are_reduced(self):
        batch = ArmBatch()
        batch.add_values("control", [1, 0, 0, 1, 1])
        batch.add_arm(1, n=10, y=4)
        batch.add_arm(1, n=10, y=3)
        assert batch.to_payload() == {"n1": 20.0, "y1": 7.0, "n2": 5.0, "y2": 3.0}

    @pytest.mark.parametrize(
        "outcome, n, y",
        [
            ("binomial", 10, 11),
            ("binomial", 10, 2.5),
            ("poisson", 4.0, -1),
            ("exp", 3, -0.5),
        ],
    )
    def test_invalid_totals(self, outcome, n, y):
        batch = ArmBatch()
        batch.add_arm(1, n=n, y=y)
        assert not batch.validate(outcome)
        assert batch.validation_errors

    def test_negative_n_is_reported(self):
        batch = ArmBatch()
        batch.add_arm(2, n=-1, y=0)
        assert not batch.validate("normal")

    def test_normal_totals_are_free(self):
        batch = ArmBatch()
        batch.add_values(1, [-1.5, 0.2, 3.1])
        assert batch.validate("normal")


class TestDesign:
    def test_priors_must_match(self, map_beta, flat_normal):
        with pytest.raises(ValueError):
            TwoArmDesign(prior1=map_beta, prior2=flat_normal, n1=20, n2=20, decision=SUPERIORITY)

    def test_futility_in_unit_interval(self, map_beta):
        with pytest.raises(ValueError):
            TwoArmDesign(
                prior1=map_beta, prior2=map_beta, n1=20, n2=20, decision=SUPERIORITY, futility=1.5
            )

    def test_exponential_futility_rejected(self):
        prior = mixgamma((1.0, 2, 2), likelihood="exp")
        with pytest.raises(ValueError):
            TwoArmDesign(
                prior1=prior, prior2=prior, n1=20, n2=20, decision=SUPERIORITY, futility=0.1
            )

    def test_normal_priors_need_sigma(self):
        prior = mixnorm((1.0, 0.0, 10.0))
        with pytest.raises(ValueError, match="sigma"):
            TwoArmDesign(prior1=prior, prior2=prior, n1=20, n2=20, decision=SUPERIORITY)

    def test_interim_pos_availability(self, map_beta):
        rate = mixgamma((1.0, 2, 2), likelihood="exp")
        assert not TwoArmDesign(
            prior1=rate, prior2=rate, n1=20, n2=20, decision=SUPERIORITY
        ).has_interim_pos
        assert TwoArmDesign(
            prior1=map_beta, prior2=map_beta, n1=20, n2=20, decision=SUPERIORITY
        ).has_interim_pos

    def test_record(self, map_beta):
        design = TwoArmDesign(prior1=map_beta, prior2=map_beta, n1=30, n2=15, decision=SUPERIORITY)
        record = design.to_record()
        assert record["outcome"] == "binomial"
        assert record["n2"] == 15.0
        assert record["probs"] == [0.95]
        assert record["lower_diff"] is False

    def test_arm_posterior_of_empty_arm_is_prior(self, map_beta):
        assert arm_posterior(map_beta, 0.0, 0.0) is map_beta


# ---------------------------------------------------------------------------
# Template and decisions
# ---------------------------------------------------------------------------


class TestTemplate:
    def test_design_events(self, ledger, map_beta):
        trial = _trial(prior2=map_beta)
        trial.setup(ledger)
        t = ledger.table
        design = ledger.unwrap_results(
            t.filter(t.namespace == str(Namespace.DESIGN)).order_by("seq").to_polars()
        )
        assert [r["tag"] for r in design] == ["prior:1", "prior:2", "design:two_arm"]
        assert design[1]["payload"] == map_beta
        assert design[2]["payload"]["n1"] == 40.0

    def test_success(self, ledger):
        trial = _trial()
        trial.setup(ledger)
        trial.add_observations(n1=20, y1=15, n2=20, y2=5)
        result = trial.analyze()
        assert result.decision == "success"
        assert result.should_stop
        assert result.statistic_value > 0
        assert result.total_sample_size == 40.0
        assert result.posterior_mean1 == pytest.approx(16 / 22)
        assert result.statistic_event[2].params == ((6.0, 16.0),)

    def test_continue_accumulates_looks(self, ledger):
        trial = _trial()
        trial.setup(ledger)
        trial.add_observations(n1=10, y1=5, n2=10, y2=5)
        first = trial.analyze()
        trial.add_observations(n1=10, y1=5, n2=10, y2=4)
        second = trial.analyze()
        assert first.decision == second.decision == "continue"
        assert second.look_number == 2
        assert (second.n1, second.n2) == (20.0, 20.0)
        assert reduce_arm_totals(ledger, "trial") == {1: (20.0, 10.0), 2: (20.0, 9.0)}

    def test_final_look_without_success_is_futility(self, ledger):
        trial = _trial(n1=20, n2=20)
        trial.setup(ledger)
        trial.add_observations(n1=20, y1=10, n2=20, y2=9)
        result = trial.analyze()
        assert result.decision == "futility"
        assert result.prob_success is None

    def test_interim_futility(self, ledger):
        trial = _trial(n1=100, n2=100, futility=0.2)
        trial.setup(ledger)
        trial.add_observations(n1=20, y1=4, n2=20, y2=14)
        result = trial.analyze()
        assert result.decision == "futility"
        assert result.prob_success < 0.2

    def test_reported_pos_without_futility(self, ledger):
        trial = _trial(n1=60, n2=60, report_pos=True)
        trial.setup(ledger)
        trial.add_observations(n1=20, y1=11, n2=20, y2=9)
        result = trial.analyze()
        assert result.decision == "continue"
        assert 0.0 < result.prob_success < 1.0

    def test_exponential_outcome_reports_no_pos(self, ledger):
        prior = mixgamma((1.0, 1, 1), likelihood="exp")
        trial = _trial(n1=40, n2=40, prior1=prior, prior2=prior, report_pos=True)
        trial.setup(ledger)
        trial.add_observations(n1=10, y1=5.0, n2=10, y2=10.0)
        result = trial.analyze()
        assert result.prob_success is None
        assert result.decision in ("continue", "success")

    def test_interim_pos_uses_each_arm_plan(self, ledger):
        trial = _trial(n1=60, n2=20, report_pos=True)
        trial.setup(ledger)
        trial.add_observations(n1=20, y1=11, n2=20, y2=9)
        result = trial.analyze()
        assert result.decision == "continue"
        assert result.prob_success is None

    def test_raw_values(self, ledger):
        trial = _trial()
        trial.setup(ledger)
        trial.add_observations(values1=[1] * 15 + [0] * 5, values2=[1] * 5 + [0] * 15)
        assert trial.analyze().decision == "success"

    def test_normal_outcome(self, ledger):
        prior = mixnorm((1.0, 0.0, 10.0), sigma=1.0)
        trial = _trial(prior1=prior, prior2=prior, decision=decision2S(0.975, 0.0, lower_diff=False))
        trial.setup(ledger)
        trial.add_observations(values1=[1.2, 0.8, 1.1, 0.9] * 5, values2=[0.2, -0.2, 0.1, -0.1] * 5)
        result = trial.analyze()
        assert result.posterior_mean1 == pytest.approx(1.0, abs=0.01)
        assert result.decision == "success"

    def test_poisson_outcome(self, ledger):
        prior = mixgamma((1.0, 1, 1), likelihood="poisson")
        trial = _trial(prior1=prior, prior2=prior, decision=decision2S(0.975, 0.0, lower_diff=False))
        trial.setup(ledger)
        trial.add_observations(n1=10, y1=30, n2=10, y2=10)
        result = trial.analyze()
        assert result.posterior_mean1 == pytest.approx(31 / 11)
        assert result.decision == "success"

    def test_invalid_batch_keeps_look(self, ledger):
        trial = _trial()
        trial.setup(ledger)
        with pytest.raises(ValueError):
            trial.add_observations(n1=10, y1=12, n2=10, y2=2)
        assert trial.current_look == 0
        assert ledger.frame().filter(ledger.frame()["namespace"] == "obs").height == 0

    @pytest.mark.parametrize("kwargs", [{}, {"n1": 10}, {"y1": 3}])
    def test_unsupported_input(self, ledger, kwargs):
        trial = _trial()
        trial.setup(ledger)
        with pytest.raises(ValueError):
            trial.add_observations(**kwargs)
        assert trial.current_look == 0

    def test_requires_setup_and_data(self, ledger):
        trial = _trial()
        with pytest.raises(RuntimeError):
            trial.add_observations(n1=1, y1=1, n2=1, y2=0)
        trial.setup(ledger)
        with pytest.raises(ValueError):
            trial.analyze()

    def test_summary(self, ledger):
        trial = _trial()
        assert trial.get_summary()["status"] == "not_setup"
        trial.setup(ledger)
        summary = trial.get_summary()
        assert summary["experiment_type"] == "two_arm"
        assert summary["rule"] == str(SUPERIORITY)
        assert summary["components"] == ["ingestor", "statistic", "criteria", "signaler"]


# ---------------------------------------------------------------------------
# Runners and reporting
# ---------------------------------------------------------------------------


class TestRunners:
    def test_sequential_runner_stops(self, ledger):
        runner = SequentialRunner(_trial(), ledger)
        assert runner.step(n1=10, y1=5, n2=10, y2=5).decision == "continue"
        assert runner.step(n1=10, y1=10, n2=10, y2=0).decision == "success"
        assert runner.is_stopped
        with pytest.raises(RuntimeError):
            runner.add_observations(n1=5, y1=1, n2=5, y2=1)
        assert [r.look_number for r in runner.get_results_history()] == [1, 2]
        assert runner.get_summary()["decision"] == "success"

    def test_run_replays_until_stop(self, ledger):
        runner = SequentialRunner(_trial(n1=60, n2=60), ledger)
        looks = [
            dict(n1=20, y1=10, n2=20, y2=10),
            dict(n1=20, y1=18, n2=20, y2=2),
            dict(n1=20, y1=10, n2=20, y2=10),
        ]
        played = runner.run(looks)
        assert [r.decision for r in played] == ["continue", "success"]
        assert runner.template.current_look == 2
        assert runner.get_summary()["total_looks"] == 2

    def test_runner_needs_ledger(self):
        runner = SequentialRunner(_trial())
        with pytest.raises(RuntimeError):
            runner.analyze()

    def test_reset(self, ledger):
        runner = SequentialRunner(_trial(), ledger)
        runner.step(n1=10, y1=5, n2=10, y2=5)
        runner.reset()
        assert runner.get_results_history() == []
        assert runner.template.current_look == 0

    def test_batch_runner_compares_rules(self):
        loose = _trial("loose", decision=decision2S(0.8, 0.0, lower_diff=False))
        strict = _trial("strict", decision=decision2S(0.999, 0.0, lower_diff=False))
        batch = BatchRunner([loose, strict], lambda: Ledger(create_test_connection(), "cmp"))
        batch.setup()
        batch.add_observations_all(n1=20, y1=13, n2=20, y2=8)
        first = batch.analyze_all()
        assert [r.decision for r in first] == ["success", "continue"]
        batch.add_observations_all(n1=20, y1=14, n2=20, y2=7)
        second = batch.analyze_all()
        assert second[0] is None
        assert second[1].look_number == 2
        assert batch.get_comparison_summary()["stopped_count"] >= 1


class TestReporting:
    def test_progress_table(self, ledger):
        runner = SequentialRunner(_trial("rep"), ledger)
        runner.step(n1=10, y1=5, n2=10, y2=5)
        runner.step(n1=10, y1=6, n2=10, y2=4)
        progress = TrialReporter(ledger, "rep").progress()
        assert progress["look"].to_list() == [1, 2]
        assert progress["n1"].to_list() == [10.0, 20.0]
        assert progress["y2"].to_list() == [5.0, 9.0]
        assert progress["mean1"][1] == pytest.approx(12 / 22)
        assert TrialReporter(ledger, "rep").final_decision() == "continue"

    def test_not_analysed(self, ledger):
        assert TrialReporter(ledger, "nothing").final_decision() == "not analysed"

    def test_ledger_overview(self, ledger):
        runner = SequentialRunner(_trial("ov"), ledger)
        runner.step(n1=10, y1=5, n2=10, y2=5)
        reporter = LedgerReporter(ledger)
        assert reporter.unique_namespaces() == ["criteria", "design", "obs", "signals", "stats"]
        assert "ov#look-1" in reporter.unique_entities()
        counts = reporter.namespace_kind_counts()
        posterior = counts.filter(counts["kind"] == "posterior")
        assert posterior["count"].to_list() == [2]
