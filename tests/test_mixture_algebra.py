"""Posterior updating, robustification and tail probabilities of differences."""

from __future__ import annotations

import math

import numpy as np
import pytest
from scipy import stats

from mapprior.core.errors import DomainError, IncompatibleFamilyError
from mapprior.stats.common.mixture import mixbeta, mixgamma, mixnorm
from mapprior.stats.methods.decision.core import decision2S
from mapprior.stats.methods.mixture_algebra.core import (
    get_link,
    pmixdiff,
    pmixlink,
    postmix,
    robustify,
)


class TestPostmix:
    def test_single_beta_is_textbook_posterior(self):
        assert postmix(mixbeta((1.0, 2, 3)), n=20, r=7).params == ((9.0, 16.0),)

    def test_single_normal_is_textbook_posterior(self):
        post = postmix(mixnorm((1.0, 0.0, 2.0), sigma=1.0), m=1.0, se=1.0)
        (m, s), = post.params
        assert m == pytest.approx(0.8)
        assert s == pytest.approx(math.sqrt(0.8))

    def test_normal_se_from_sigma_and_n(self):
        a = postmix(mixnorm((1.0, 0.0, 10.0), sigma=2.0), n=4, m=1.0)
        b = postmix(mixnorm((1.0, 0.0, 10.0), sigma=2.0), m=1.0, se=1.0)
        assert a == b

    def test_weights_move_towards_compatible_component(self):
        prior = mixbeta((0.5, 20, 80), (0.5, 80, 20))
        post = postmix(prior, n=10, r=9)
        assert post.weights[1] > 0.9
        assert sum(post.weights) == pytest.approx(1.0)

    def test_posterior_weights_follow_marginal_likelihoods(self):
        prior = mixbeta((0.3, 2, 8), (0.7, 8, 2))
        post = postmix(prior, n=12, r=5)
        m1 = stats.betabinom(12, 2, 8).pmf(5)
        m2 = stats.betabinom(12, 8, 2).pmf(5)
        expected = 0.3 * m1 / (0.3 * m1 + 0.7 * m2)
        assert post.weights[0] == pytest.approx(expected, rel=1e-9)

    def test_raw_binary_data(self):
        post = postmix(mixbeta((1.0, 1, 1)), data=[1, 0, 1, 1])
        assert post.params == ((4.0, 2.0),)

    def test_poisson_summary(self, gamma_prior):
        post = postmix(gamma_prior, n=10, m=1.5)
        assert post.params[0] == (23.0, 14.0)

    def test_missing_arguments(self):
        with pytest.raises(ValueError):
            postmix(mixbeta((1.0, 1, 1)), n=10)
        with pytest.raises(ValueError):
            postmix(mixnorm((1.0, 0.0, 1.0)), n=10, m=0.5)


class TestRobustify:
    def test_weights_sum_to_one(self, map_beta):
        robust = robustify(map_beta, 0.25)
        assert sum(robust.weights) == pytest.approx(1.0)
        assert robust.weights[-1] == pytest.approx(0.25)
        assert robust.params[-1] == (0.5, 0.5)

    def test_zero_weight_returns_prior(self, map_beta):
        assert robustify(map_beta, 0.0) == map_beta

    def test_unit_weight_is_the_vague_component(self, map_beta):
        robust = robustify(map_beta, 1.0)
        assert robust.n_components == 1
        assert robust.params == ((0.5, 0.5),)

    def test_weight_out_of_range(self, map_beta):
        with pytest.raises(DomainError):
            robustify(map_beta, 1.5)

    def test_normal_unit_information(self):
        prior = mixnorm((1.0, 0.2, 0.1), sigma=2.0)
        robust = robustify(prior, 0.2, mean=0.0)
        assert robust.params[-1] == (0.0, 2.0)

    def test_defaulted_mean_warns(self, gamma_prior):
        with pytest.warns(UserWarning):
            robust = robustify(gamma_prior, 0.1)
        assert robust.n_components == 3

    def test_normal_needs_sigma(self):
        with pytest.raises(ValueError):
            robustify(mixnorm((1.0, 0.0, 1.0)), 0.2, mean=0.0)


class TestDifferences:
    def test_normal_difference_is_exact(self):
        a = mixnorm((1.0, 1.0, 1.0), sigma=1.0)
        b = mixnorm((1.0, 0.0, 1.0), sigma=1.0)
        assert pmixdiff(a, b, 0.0) == pytest.approx(stats.norm.cdf(-1 / math.sqrt(2)))

    def test_antisymmetry(self, map_beta, uniform_beta):
        for q in (-0.2, 0.0, 0.15):
            total = pmixdiff(map_beta, uniform_beta, q) + pmixdiff(uniform_beta, map_beta, -q)
            assert total == pytest.approx(1.0, abs=1e-6)

    def test_identical_mixtures_split_evenly(self, map_beta):
        assert pmixdiff(map_beta, map_beta, 0.0) == pytest.approx(0.5, abs=1e-6)
        rule = decision2S(0.95, 0.0, lower_diff=True)
        assert not rule(map_beta, map_beta)

    def test_vectorised_thresholds(self, map_beta, uniform_beta):
        q = np.array([-0.1, 0.0, 0.1])
        out = pmixdiff(map_beta, uniform_beta, q)
        assert out.shape == (3,)
        assert np.all(np.diff(out) > 0)

    def test_matches_monte_carlo(self, map_beta, uniform_beta, rng):
        x1 = map_beta.sample(200_000, rng)
        x2 = uniform_beta.sample(200_000, rng)
        assert pmixdiff(map_beta, uniform_beta, -0.1) == pytest.approx(
            np.mean(x1 - x2 <= -0.1), abs=0.005
        )

    def test_logit_link_on_rates(self):
        a, b = mixbeta((1.0, 30, 70)), mixbeta((1.0, 20, 80))
        p = pmixlink(a, b, 0.0, link="logit", lower_tail=False)
        assert p == pytest.approx(pmixdiff(a, b, 0.0, lower_tail=False), abs=1e-6)

    def test_log_link_on_rates(self, gamma_prior):
        other = mixgamma((1.0, 6, 4), likelihood="poisson")
        p = pmixlink(gamma_prior, other, 0.0, link="log")
        assert p == pytest.approx(pmixdiff(gamma_prior, other, 0.0), abs=1e-6)

    def test_logit_link_undefined_for_normal(self):
        a = mixnorm((1.0, 0.0, 1.0), sigma=1.0)
        with pytest.raises(DomainError):
            pmixlink(a, a, 0.0, link="logit")

    def test_incompatible_families(self, map_beta, flat_normal):
        with pytest.raises(IncompatibleFamilyError):
            pmixdiff(map_beta, flat_normal, 0.0)

    def test_unknown_link(self):
        with pytest.raises(ValueError):
            get_link("probit")
