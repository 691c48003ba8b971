"""
Statistical building blocks for mixture priors and trial decisions.

1. **Common** (mapprior.stats.common):
   Conjugate families, the `MixtureDistribution` type and predictive
   distributions. Independent of any particular trial layout.

2. **Methods** (mapprior.stats.methods):
   Algorithms on mixtures: EM fitting, posterior updating and robustification,
   effective sample size, decision rules and operating characteristics.

3. **Schemes** (mapprior.stats.schemes):
   Problem-specific compositions: MAP priors from historical studies and
   two-arm trials run on a ledger.

Example:
--------
>>> from mapprior.stats.common.mixture import mixbeta
>>> from mapprior.stats.methods.ess.core import ess
>>> round(ess(mixbeta((1.0, 4, 16)), "moment"), 6)
20.0
"""
