"""EM mixture fitting and information-criterion selection."""

from __future__ import annotations

import numpy as np
import pytest

from mapprior.core.errors import ConvergenceError, InsufficientDataError
from mapprior.core.names import FamilyTag
from mapprior.stats.common.mixture import mixbeta
from mapprior.stats.methods.mixture_fit.core import (
    FitConfig,
    automixfit,
    clean_sample,
    mixfit,
    select_mixture,
)


def _two_normal_sample(rng, n=10_000):
    k = rng.random(n) < 0.3
    return np.where(k, rng.normal(-2.0, 0.5, n), rng.normal(1.0, 0.7, n))


ROBUST_BETA = mixbeta((0.8, 11, 32), (0.2, 0.5, 0.5))


def _robust_beta_sample(rng, n=5000):
    informative = rng.random(n) < 0.8
    x = np.where(informative, rng.beta(11, 32, n), rng.beta(0.5, 0.5, n))
    return clean_sample(x, FamilyTag.BETA)


class TestMixfit:
    def test_single_component_is_direct(self, rng):
        x = rng.beta(4, 12, 5000)
        fit = mixfit(x, FamilyTag.BETA, 1)
        assert fit.iterations == 1
        assert fit.mixture.mean() == pytest.approx(0.25, abs=0.01)

    def test_recovers_two_normal_components(self, rng):
        x = _two_normal_sample(rng)
        fit = mixfit(x, FamilyTag.NORMAL, 2, sigma=1.0, rng=1)
        order = np.argsort([p[0] for p in fit.mixture.params])
        weights = np.asarray(fit.mixture.weights)[order]
        means = np.asarray([p[0] for p in fit.mixture.params])[order]
        assert fit.converged
        np.testing.assert_allclose(means, [-2.0, 1.0], atol=0.2)
        np.testing.assert_allclose(weights, [0.3, 0.7], atol=0.05)
        assert sum(fit.mixture.weights) == pytest.approx(1.0)
        assert fit.mixture.sigma == 1.0

    def test_gamma_fit_keeps_likelihood(self, rng):
        x = rng.gamma(5.0, 0.2, 4000)
        fit = mixfit(x, FamilyTag.GAMMA, 1, likelihood="exp")
        assert fit.mixture.likelihood == "exp"

    def test_iteration_cap_raises_with_last_iterate(self, rng):
        x = _two_normal_sample(rng, 2000)
        with pytest.raises(ConvergenceError) as info:
            mixfit(x, FamilyTag.NORMAL, 3, config=FitConfig(max_iter=2, tol=1e-14), rng=0)
        assert info.value.iterations == 2
        assert info.value.last is not None

    def test_reproducible_given_seed(self, rng):
        x = _two_normal_sample(rng, 3000)
        a = mixfit(x, FamilyTag.NORMAL, 2, rng=7)
        b = mixfit(x, FamilyTag.NORMAL, 2, rng=7)
        assert a.mixture == b.mixture


class TestCleanSample:
    def test_drops_out_of_support(self):
        x = clean_sample([0.2, 1.5, np.nan, 0.4, -0.1], FamilyTag.BETA)
        assert x.tolist() == [0.2, 0.4]

    def test_too_few_draws(self):
        with pytest.raises(InsufficientDataError):
            clean_sample([0.5], FamilyTag.BETA)


class TestSelection:
    def test_bimodal_sample_selects_more_than_one(self, rng):
        x = _two_normal_sample(rng, 5000)
        selection = select_mixture(x, FamilyTag.NORMAL, sigma=1.0, rng=3)
        assert selection.best.n_components >= 2
        table = selection.table()
        assert table.height == len(selection.fits)
        assert table["selected"].sum() == 1

    def test_unimodal_sample_prefers_one_component_with_bic(self, rng):
        x = rng.normal(0.0, 1.0, 5000)
        selection = select_mixture(
            x, FamilyTag.NORMAL, config=FitConfig(criterion="bic", max_components=3), rng=4
        )
        assert selection.best.n_components == 1

    def test_small_samples_skip_large_k(self):
        selection = select_mixture([0.2, 0.3, 0.5], FamilyTag.BETA, rng=0)
        assert [f.n_components for f in selection.fits] == [1]

    def test_warnings_are_carried(self, rng):
        x = rng.beta(2, 5, 500)
        selection = select_mixture(x, FamilyTag.BETA, rng=0, warnings=("max R-hat 1.2",))
        assert selection.warnings == ("max R-hat 1.2",)

    def test_automixfit_returns_mixture(self, rng):
        x = rng.gamma(3.0, 1.0, 2000)
        mix = automixfit(x, FamilyTag.GAMMA, rng=5)
        assert mix.family is FamilyTag.GAMMA
        assert mix.mean() == pytest.approx(3.0, rel=0.05)

    def test_invalid_config(self):
        with pytest.raises(ValueError):
            FitConfig(criterion="dic").validate()


class TestHardSamples:
    def test_well_separated_normals(self, rng):
        n = 10_000
        left = rng.random(n) < 0.5
        x = np.where(left, rng.normal(0.0, 1.0, n), rng.normal(5.0, 1.0, n))
        fit = mixfit(x, FamilyTag.NORMAL, 2, sigma=1.0, rng=11)
        order = np.argsort([p[0] for p in fit.mixture.params])
        means = np.asarray([p[0] for p in fit.mixture.params])[order]
        weights = np.asarray(fit.mixture.weights)[order]
        np.testing.assert_allclose(means, [0.0, 5.0], atol=0.2)
        np.testing.assert_allclose(weights, [0.5, 0.5], atol=0.05)

    def test_heavy_tailed_beta_reaches_true_likelihood(self, rng):
        x = _robust_beta_sample(rng)
        true_loglik = float(np.sum(ROBUST_BETA.logpdf(x)))
        fit = mixfit(x, FamilyTag.BETA, 2, rng=2)
        assert fit.loglik >= true_loglik - 3.0

    def test_automixfit_on_heavy_tailed_beta(self, rng):
        x = _robust_beta_sample(rng)
        true_loglik = float(np.sum(ROBUST_BETA.logpdf(x)))
        selection = select_mixture(x, FamilyTag.BETA, config=FitConfig(max_components=3), rng=2)
        assert selection.best.n_components >= 2
        assert selection.best.loglik >= true_loglik - 3.0
        assert selection.mixture.mean() == pytest.approx(ROBUST_BETA.mean(), abs=0.01)

    @pytest.mark.parametrize("field", ["n_init", "init_iter"])
    def test_restart_settings_are_validated(self, field):
        with pytest.raises(ValueError):
            FitConfig(**{field: 0}).validate()
