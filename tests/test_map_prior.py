"""Historical data, the MAP model and its sampler boundary."""

from __future__ import annotations

import math

import numpy as np
import polars as pl
import pytest

from mapprior.core.errors import SamplerConvergenceWarning
from mapprior.core.names import FamilyTag
from mapprior.stats.schemes.map_prior.core import gMAP, reference_scale
from mapprior.stats.schemes.map_prior.data import GroupedDataSet
from mapprior.stats.schemes.map_prior.model import MAPModel, SamplerConfig, TauPrior
from mapprior.stats.schemes.map_prior.sampler import SamplerDiagnostics, SamplerResult

SMALL = SamplerConfig(draws=500, chains=2, seed=11)


def _binomial_model():
    return MAPModel("binomial", beta_prior=(0.0, 2.0), tau_prior=TauPrior("halfnormal", 1.0))


class TestGroupedData:
    def test_missing_column_is_named(self):
        with pytest.raises(ValueError, match="'r'"):
            GroupedDataSet.from_records([{"study": "A", "n": 10}], outcome="binomial")

    def test_responders_above_n(self):
        with pytest.raises(ValueError, match="'r'"):
            GroupedDataSet.from_records([{"study": "A", "n": 10, "r": 11}], outcome="binomial")

    def test_non_positive_standard_error(self):
        with pytest.raises(ValueError, match="'y_se'"):
            GroupedDataSet.from_records(
                [{"study": "A", "y": 1.0, "y_se": 0.0}], outcome="gaussian"
            )

    def test_fractional_event_count(self):
        with pytest.raises(ValueError, match="'y'"):
            GroupedDataSet.from_records([{"study": "A", "n": 5.0, "y": 2.5}], outcome="poisson")

    def test_missing_values(self):
        with pytest.raises(ValueError, match="'n'"):
            GroupedDataSet.from_records(
                [{"study": "A", "n": 10, "r": 2}, {"study": "B", "n": None, "r": 3}],
                outcome="binomial",
            )

    def test_no_studies(self):
        frame = pl.DataFrame(
            {"study": [], "n": [], "r": []},
            schema={"study": pl.Utf8, "n": pl.Int64, "r": pl.Int64},
        )
        with pytest.raises(ValueError):
            GroupedDataSet(frame=frame, outcome="binomial")

    def test_unknown_outcome(self):
        with pytest.raises(ValueError):
            GroupedDataSet.from_records([{"study": "A", "n": 10, "r": 2}], outcome="ordinal")

    def test_raw_estimates(self, binomial_history):
        np.testing.assert_allclose(
            binomial_history.raw_estimates(), [23 / 107, 12 / 44, 19 / 51, 9 / 39]
        )
        assert binomial_history.studies[0] == "Study 1"

    @pytest.mark.parametrize("suffix", [".csv", ".parquet"])
    def test_read_from_file(self, tmp_path, suffix):
        frame = pl.DataFrame({"study": ["A", "B"], "n": [5.0, 8.0], "y": [3, 1]})
        path = tmp_path / f"history{suffix}"
        if suffix == ".csv":
            frame.write_csv(path)
        else:
            frame.write_parquet(path)
        data = GroupedDataSet.read(path, "poisson")
        assert data.n_studies == 2
        assert data.frame["y"].dtype == pl.Int64

    def test_unsupported_file_type(self, tmp_path):
        with pytest.raises(ValueError):
            GroupedDataSet.read(tmp_path / "history.xlsx", "binomial")


class TestModel:
    def test_links_and_families(self):
        assert MAPModel("poisson", (0.0, 1.0)).link == "log"
        assert MAPModel("gaussian", (0.0, 1.0)).family_tag is FamilyTag.NORMAL

    @pytest.mark.parametrize(
        "model",
        [
            MAPModel("ordinal", (0.0, 1.0)),
            MAPModel("binomial", (0.0, 0.0)),
            MAPModel("binomial", (0.0, 1.0), tau_prior=TauPrior("uniform", 1.0)),
            MAPModel("binomial", (0.0, 1.0), sigma=1.0),
        ],
    )
    def test_invalid_models(self, model):
        with pytest.raises(ValueError):
            model.validate()

    def test_invalid_sampler_config(self):
        with pytest.raises(ValueError):
            SamplerConfig(rhat_threshold=1.0).validate()

    def test_sampler_result_needs_all_draws(self):
        diagnostics = SamplerDiagnostics.from_values(1.0, 500.0, 0, 1.1)
        with pytest.raises(ValueError):
            SamplerResult(draws={"mu": np.zeros(3)}, diagnostics=diagnostics)


class TestGMAP:
    def test_predictive_draws_on_natural_scale(self, binomial_history, fixed_sampler):
        result = gMAP(binomial_history, _binomial_model(), sampler=fixed_sampler, config=SMALL)
        assert fixed_sampler.calls == 1
        assert result.theta_pred.size == 1000
        assert np.all((result.theta_pred > 0) & (result.theta_pred < 1))
        assert result.theta_pred.mean() == pytest.approx(0.25, abs=0.02)
        assert result.diagnostics.converged
        assert result.warnings == ()

    def test_summaries(self, binomial_history, fixed_sampler):
        result = gMAP(binomial_history, _binomial_model(), sampler=fixed_sampler, config=SMALL)
        table = result.study_summary()
        assert table.columns == ["study", "observed", "mean", "sd", "q2.5", "q50", "q97.5"]
        assert table.height == 4
        assert result.summary()["tau_median"] == pytest.approx(0.3, abs=0.01)

    def test_mixture_fit_of_predictive(self, binomial_history, fixed_sampler):
        result = gMAP(binomial_history, _binomial_model(), sampler=fixed_sampler, config=SMALL)
        selection = result.fit_mixture(rng=1)
        assert selection.mixture.family is FamilyTag.BETA
        assert selection.mixture.mean() == pytest.approx(result.theta_pred.mean(), abs=0.01)

    def test_convergence_problems_are_carried(self, binomial_history, make_sampler):
        sampler = make_sampler(mu=-1.0986, tau=0.3, rhat=1.3, divergences=2)
        with pytest.warns(SamplerConvergenceWarning):
            result = gMAP(binomial_history, _binomial_model(), sampler=sampler, config=SMALL)
        assert not result.diagnostics.converged
        assert len(result.warnings) == 2
        with pytest.warns(SamplerConvergenceWarning, match="R-hat"):
            selection = result.fit_mixture(rng=1)
        assert selection.warnings == result.warnings

    def test_family_must_match_data(self, binomial_history, fixed_sampler):
        with pytest.raises(ValueError):
            gMAP(binomial_history, MAPModel("poisson", (0.0, 1.0)), sampler=fixed_sampler)

    def test_gaussian_reference_scale_from_data(self, make_sampler):
        data = GroupedDataSet.from_records(
            [
                {"study": "A", "y": 1.0, "y_se": 2 / math.sqrt(10), "n": 10},
                {"study": "B", "y": 1.4, "y_se": 2 / math.sqrt(40), "n": 40},
            ],
            outcome="gaussian",
        )
        assert reference_scale(data) == pytest.approx(2.0)
        sampler = make_sampler(mu=1.2, tau=0.1)
        result = gMAP(data, MAPModel("gaussian", (0.0, 10.0)), sampler=sampler, config=SMALL)
        assert result.sigma == pytest.approx(2.0)
        assert result.theta_pred.mean() == pytest.approx(1.2, abs=0.02)

    def test_reference_scale_needs_n(self):
        data = GroupedDataSet.from_records(
            [{"study": "A", "y": 1.0, "y_se": 0.5}], outcome="gaussian"
        )
        with pytest.raises(ValueError, match="'n'"):
            reference_scale(data)


def test_pymc_sampler(binomial_history):
    pytest.importorskip("pymc")
    from mapprior.stats.schemes.map_prior.sampler import PyMCSampler

    config = SamplerConfig(draws=300, tune=300, chains=2, seed=3)
    result = gMAP(binomial_history, _binomial_model(), sampler=PyMCSampler(), config=config)
    assert result.draws["theta"].shape == (600, 4)
    assert 0.15 < float(np.median(result.theta_pred)) < 0.4
