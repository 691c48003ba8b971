"""
Shared pytest fixtures.

Priors are chosen so that the expected values in the tests can be worked
out by hand from conjugate formulas.
"""

from __future__ import annotations

import numpy as np
import pytest

from mapprior.core.ledger import Ledger, create_test_connection
from mapprior.stats.common.mixture import mixbeta, mixgamma, mixnorm
from mapprior.stats.schemes.map_prior.data import GroupedDataSet
from mapprior.stats.schemes.map_prior.sampler import SamplerDiagnostics, SamplerResult


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(20240611)


@pytest.fixture
def ledger() -> Ledger:
    return Ledger(create_test_connection("duckdb"), "test")


# ---------------------------------------------------------------------------
# Priors
# ---------------------------------------------------------------------------


@pytest.fixture
def uniform_beta():
    return mixbeta((1.0, 1, 1))


@pytest.fixture
def map_beta():
    """Informative control-arm prior with a heavy vague tail."""
    return mixbeta((0.8, 11, 29), (0.2, 1, 1))


@pytest.fixture
def flat_normal():
    return mixnorm((1.0, 0.0, 100.0), sigma=1.0)


@pytest.fixture
def gamma_prior():
    return mixgamma((0.6, 8, 4), (0.4, 2, 2), likelihood="poisson")


# ---------------------------------------------------------------------------
# Historical data and a deterministic stand-in sampler
# ---------------------------------------------------------------------------


@pytest.fixture
def binomial_history() -> GroupedDataSet:
    return GroupedDataSet.from_records(
        [
            {"study": "Study 1", "n": 107, "r": 23},
            {"study": "Study 2", "n": 44, "r": 12},
            {"study": "Study 3", "n": 51, "r": 19},
            {"study": "Study 4", "n": 39, "r": 9},
        ],
        outcome="binomial",
    )


class FixedDrawsSampler:
    """Returns normal draws on the link scale around fixed values."""

    def __init__(self, mu: float, tau: float, rhat: float = 1.0, divergences: int = 0):
        self.mu = mu
        self.tau = tau
        self.rhat = rhat
        self.divergences = divergences
        self.calls = 0

    def sample(self, model, data, config):
        self.calls += 1
        gen = np.random.default_rng(config.seed if config.seed is not None else 1)
        size = config.draws * config.chains
        mu = gen.normal(self.mu, 0.05, size)
        tau = np.abs(gen.normal(self.tau, 0.02, size))
        theta = mu[:, None] + tau[:, None] * gen.normal(size=(size, data.n_studies))
        theta_pred = mu + tau * gen.normal(size=size)
        return SamplerResult(
            draws={"mu": mu, "tau": tau, "theta": theta, "theta_pred": theta_pred},
            diagnostics=SamplerDiagnostics.from_values(
                self.rhat, 800.0, self.divergences, config.rhat_threshold
            ),
        )


@pytest.fixture
def fixed_sampler():
    # logit(0.25) = -1.0986
    return FixedDrawsSampler(mu=-1.0986, tau=0.3)


@pytest.fixture
def make_sampler():
    return FixedDrawsSampler
