"""Decision rules, decision boundaries, operating characteristics and PoS."""

from __future__ import annotations

import numpy as np
import pytest
from scipy import stats

from mapprior.core.errors import IncompatibleFamilyError
from mapprior.stats.common.mixture import mixbeta, mixgamma, mixnorm
from mapprior.stats.methods.decision.core import (
    Criterion,
    decision1S,
    decision2S,
    make_criteria,
)
from mapprior.stats.methods.decision.operating import (
    decision1S_boundary,
    decision2S_boundary,
    oc1S,
    oc2S,
    pos1S,
    pos2S,
)


class TestRules:
    def test_scalars_broadcast(self):
        criteria = make_criteria([0.9, 0.5], 0.3)
        assert criteria == (Criterion(0.9, 0.3), Criterion(0.5, 0.3))

    def test_length_mismatch(self):
        with pytest.raises(ValueError):
            make_criteria([0.9, 0.5], [0.1, 0.2, 0.3])

    def test_probability_must_be_open_interval(self):
        with pytest.raises(ValueError):
            decision1S(1.0, 0.3)

    def test_unknown_link(self):
        with pytest.raises(ValueError):
            decision2S(0.95, 0.0, link="probit")

    def test_rule_text(self):
        assert str(decision1S(0.9, 0.4)) == "1 sample decision: Pr(theta <= 0.4) > 0.9"
        assert (
            str(decision2S(0.975, 0.0, lower_diff=False))
            == "2 sample decision: Pr(theta1 - theta2 > 0) > 0.975"
        )
        assert "logit(theta1)" in str(decision2S(0.9, 0.0, link="logit"))

    def test_one_sample_rule(self):
        rule = decision1S(0.9, 0.4, lower_tail=True)
        assert rule(mixbeta((1.0, 3, 17)))
        assert not rule(mixbeta((1.0, 10, 10)))

    def test_all_criteria_must_hold(self):
        posterior = mixbeta((1.0, 30, 70))
        # Pr(theta > 0.2) ~ 0.99 but Pr(theta > 0.3) ~ 0.5
        assert decision1S(0.9, 0.2, lower_tail=False)(posterior)
        assert not decision1S([0.9, 0.9], [0.2, 0.3], lower_tail=False)(posterior)

    def test_margin_sign_matches_decision(self, map_beta):
        rule = decision2S(0.8, 0.0, lower_diff=False)
        better = mixbeta((1.0, 40, 40))
        assert rule.margin(better, map_beta) > 0
        assert rule.margin(map_beta, better) < 0


class TestOneSample:
    def test_boundary_of_uniform_prior(self, uniform_beta):
        rule = decision1S(0.95, 0.5, lower_tail=False)
        assert decision1S_boundary(uniform_beta, 20, rule) == 13.0

    def test_oc_is_binomial_tail(self, uniform_beta):
        oc = oc1S(uniform_beta, 20, decision1S(0.95, 0.5, lower_tail=False))
        assert oc(0.5) == pytest.approx(stats.binom(20, 0.5).sf(13))
        np.testing.assert_allclose(oc(np.array([0.5, 0.7])), stats.binom(20, [0.5, 0.7]).sf(13))

    def test_lower_tail_oc_decreases(self, map_beta):
        oc = oc1S(map_beta, 40, decision1S(0.9, 0.4, lower_tail=True))
        values = oc(np.linspace(0.1, 0.6, 6))
        assert np.all(np.diff(values) <= 0)
        assert values[0] > 0.9

    def test_pos_under_uniform_predictive(self, uniform_beta):
        pos = pos1S(uniform_beta, 20, decision1S(0.95, 0.5, lower_tail=False))
        # the predictive of a uniform prior is uniform over 0..20
        assert pos(uniform_beta) == pytest.approx(7 / 21)

    def test_normal_boundary_is_a_mean(self):
        prior = mixnorm((1.0, 0.0, 100.0), sigma=1.0)
        crit = decision1S_boundary(prior, 25, decision1S(0.975, 0.0, lower_tail=False))
        assert crit == pytest.approx(1.96 / 5, abs=1e-3)

    def test_poisson_boundary_is_a_count(self, gamma_prior):
        crit = decision1S_boundary(gamma_prior, 10, decision1S(0.9, 2.0, lower_tail=True))
        assert crit == int(crit)

    def test_pos_checks_family(self, uniform_beta, gamma_prior):
        pos = pos1S(uniform_beta, 20, decision1S(0.95, 0.5, lower_tail=False))
        with pytest.raises(IncompatibleFamilyError):
            pos(gamma_prior)

    def test_exponential_designs_rejected(self):
        prior = mixgamma((1.0, 2, 2), likelihood="exp")
        with pytest.raises(ValueError):
            oc1S(prior, 20, decision1S(0.9, 1.0))


class TestTwoSample:
    def test_flat_normal_type_one_error(self, flat_normal):
        oc = oc2S(flat_normal, flat_normal, 50, 50, decision2S(0.975, 0.0, lower_diff=False))
        assert oc(0.0, 0.0) == pytest.approx(0.025, abs=0.002)

    def test_binomial_size_and_power(self, uniform_beta):
        oc = oc2S(uniform_beta, uniform_beta, 20, 20, decision2S(0.95, 0.0, lower_diff=False))
        assert oc(0.3, 0.3) < 0.07
        assert oc(0.7, 0.2) > 0.9

    def test_oc_broadcasts(self, uniform_beta, map_beta):
        oc = oc2S(uniform_beta, map_beta, 30, 15, decision2S(0.9, 0.0, lower_diff=False))
        out = oc(np.array([0.3, 0.4, 0.5]), 0.3)
        assert out.shape == (3,)
        assert np.all(np.diff(out) > 0)

    def test_boundary_is_monotone(self, uniform_beta):
        boundary = decision2S_boundary(
            uniform_beta, uniform_beta, 20, 20, decision2S(0.95, 0.0, lower_diff=False)
        )
        crit = boundary(np.arange(21))
        assert np.all(np.diff(crit) >= 0)
        assert boundary(5) == crit[5]

    def test_normal_boundary_uses_spline(self, flat_normal):
        boundary = decision2S_boundary(
            flat_normal, flat_normal, 50, 50, decision2S(0.975, 0.0, lower_diff=False)
        )
        y2 = np.array([-0.2, 0.0, 0.3])
        # flat priors: success iff y1 - y2 > 1.96 * sqrt(2 / 50)
        np.testing.assert_allclose(boundary(y2), y2 + 1.96 * np.sqrt(2 / 50), atol=2e-3)

    def test_pos_with_concentrated_priors_matches_oc(self, uniform_beta):
        rule = decision2S(0.95, 0.0, lower_diff=False)
        oc = oc2S(uniform_beta, uniform_beta, 20, 20, rule)
        pos = pos2S(uniform_beta, uniform_beta, 20, 20, rule)
        sharp1 = mixbeta((1.0, 70_000, 30_000))
        sharp2 = mixbeta((1.0, 20_000, 80_000))
        assert pos(sharp1, sharp2) == pytest.approx(oc(0.7, 0.2), abs=0.01)

    def test_pos_checks_family(self, uniform_beta, gamma_prior):
        pos = pos2S(uniform_beta, uniform_beta, 20, 20, decision2S(0.95, 0.0))
        with pytest.raises(IncompatibleFamilyError):
            pos(uniform_beta, gamma_prior)

    def test_mixed_families_rejected(self, uniform_beta, flat_normal):
        with pytest.raises(IncompatibleFamilyError):
            oc2S(uniform_beta, flat_normal, 20, 20, decision2S(0.95, 0.0))

    def test_poisson_design(self, gamma_prior):
        rule = decision2S(0.9, 0.0, lower_diff=True)
        oc = oc2S(gamma_prior, gamma_prior, 20, 20, rule)
        assert oc(1.0, 2.0) > oc(1.5, 1.5)
