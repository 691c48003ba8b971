"""
mapprior.api - User-Friendly Facade
===================================

Entry points organised by what a trial statistician wants to do, in the
vocabulary of historical borrowing and Bayesian trial design. In terms of
the design patterns, this is the facade pattern.

Examples
--------
>>> from mapprior.api.trial_design import two_arm_trial
>>> from mapprior.stats.common.mixture import mixbeta
>>> trial = two_arm_trial("ph2", treatment_prior=mixbeta((1.0, 1, 1)),
...                       control_prior=mixbeta((1.0, 1, 1)), n_treatment=30, n_control=30)
>>> trial.design.n1
30

Unified Interface
-----------------
All facade functions live in `mapprior.api.trial_design`:
- `map_prior()`: (robust) MAP prior from historical studies
- `prior_summary()`: moments and effective sample sizes of a prior
- `two_arm_trial()`: look-by-look two-arm trial template
- `oc_table()`: operating characteristics over a grid of true values
- `export_table()`: persist result frames as CSV or Parquet

Architecture
------------
This facade delegates to the underlying framework components:
- mapprior.core: ledger, components and errors
- mapprior.stats: mixtures, methods and schemes
- mapprior.runtime: trial templates and runners
- mapprior.backends: tabular I/O
"""
