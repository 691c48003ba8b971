"""
mapprior.stats.common
=====================

Distributional foundations shared by all methods.

- `families`: Beta, Gamma and Normal conjugate families
- `mixture`: `MixtureDistribution` and the `mixbeta`/`mixgamma`/`mixnorm` constructors
- `predictive`: prior/posterior predictive distributions of trial data
"""
