"""
Meta-Analytic-Predictive (MAP) priors from historical trials.

**Module Organization:**

- `data`: validated per-study summaries (`GroupedDataSet`)
- `model`: random-effects model and sampler configuration
- `sampler`: `PosteriorSampler` protocol and the PyMC implementation
- `core`: `gMAP` and `MAPResult` (predictive draws -> mixture prior)

Example Usage
-------------
>>> from mapprior.stats.schemes.map_prior.model import MAPModel, TauPrior
>>> model = MAPModel("gaussian", beta_prior=(0.0, 10.0), tau_prior=TauPrior("halfnormal", 5.0))
>>> model.link
'identity'
"""
