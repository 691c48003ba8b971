"""Prior predictive distributions of future arm data."""

from __future__ import annotations

import numpy as np
import pytest

from mapprior.core.errors import DomainError
from mapprior.core.names import FamilyTag
from mapprior.stats.common.mixture import mixgamma, mixnorm
from mapprior.stats.common.predictive import DataModel, PredictiveMixture, preddist


class TestCounts:
    def test_beta_binomial_pmf_sums_to_one(self, map_beta):
        pred = preddist(map_beta, n=30)
        assert pred.pmf(np.arange(31)).sum() == pytest.approx(1.0)

    def test_beta_binomial_mean(self, map_beta):
        assert preddist(map_beta, n=30).mean() == pytest.approx(30 * map_beta.mean())

    def test_negative_binomial_mean(self, gamma_prior):
        # n times the prior mean 0.6 * 8/4 + 0.4 * 2/2
        assert preddist(gamma_prior, n=5).mean() == pytest.approx(8.0)

    def test_count_ppf(self, map_beta):
        pred = preddist(map_beta, n=30)
        for q in (0.05, 0.5, 0.95):
            y = pred.ppf(q)
            assert pred.cdf(y) >= q
            assert y == 0 or pred.cdf(y - 1) < q

    def test_counts_have_no_density(self, map_beta):
        with pytest.raises(ValueError):
            preddist(map_beta, n=10).pdf(3)

    def test_upper_count(self, gamma_prior):
        pred = preddist(gamma_prior, n=5)
        assert pred.cdf(pred.upper_count(1e-10)) > 1 - 1e-9


class TestNormal:
    def test_variance_adds_sampling_error(self):
        pred = preddist(mixnorm((1.0, 0.5, 0.3), sigma=2.0), n=16)
        assert pred.mean() == pytest.approx(0.5)
        assert pred.var() == pytest.approx(0.09 + 0.25)

    def test_explicit_sigma(self):
        pred = preddist(mixnorm((1.0, 0.0, 1.0)), n=4, sigma=2.0)
        assert pred.var() == pytest.approx(2.0)

    def test_means_have_no_mass_function(self, flat_normal):
        with pytest.raises(ValueError):
            preddist(flat_normal, n=10).pmf(0.0)

    def test_ppf_inverts_cdf(self):
        pred = preddist(mixnorm((0.5, -1.0, 0.5), (0.5, 1.0, 0.5), sigma=1.0), n=4)
        assert pred.cdf(pred.ppf(0.3)) == pytest.approx(0.3, abs=1e-9)


class TestDataModel:
    def test_normal_needs_sigma(self):
        with pytest.raises(ValueError):
            preddist(mixnorm((1.0, 0.0, 1.0)), n=10)

    def test_positive_sample_size(self, map_beta):
        with pytest.raises(ValueError):
            preddist(map_beta, n=0)

    def test_binomial_sample_size_is_integer(self, map_beta):
        with pytest.raises(ValueError):
            preddist(map_beta, n=10.5)

    def test_exponential_likelihood_rejected(self):
        with pytest.raises(ValueError):
            preddist(mixgamma((1.0, 2, 2), likelihood="exp"), n=10)

    def test_family_mismatch(self, map_beta):
        model = DataModel(family=FamilyTag.NORMAL, n=10, sigma=1.0)
        with pytest.raises(DomainError):
            PredictiveMixture(mixture=map_beta, model=model)

    def test_sampling_distribution(self):
        model = DataModel(family=FamilyTag.GAMMA, n=4.0, likelihood="poisson")
        assert model.sampling(2.5).mean() == pytest.approx(10.0)
        assert model.observe(7).y == 7.0

    def test_sample_reproducible(self, map_beta):
        pred = preddist(map_beta, n=20)
        a, b = pred.sample(50, rng=1), pred.sample(50, rng=1)
        np.testing.assert_array_equal(a, b)
        assert np.all((a >= 0) & (a <= 20))
