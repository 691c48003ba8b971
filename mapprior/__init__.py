"""
mapprior: meta-analytic-predictive priors and Bayesian trial design.

Historical control data are summarised by a random-effects meta-analysis
whose predictive distribution for a new study is approximated by a mixture
of conjugate components. The resulting prior can be made robust with a vague
component, updated with trial data in closed form, sized by its effective
sample size and plugged into decision rules whose operating characteristics
and probabilities of success are computed exactly or by one-dimensional
integration.

Running trials are recorded on an append-only, typed ledger: observations,
posterior mixtures, the rule in force and every success/futility/continue
decision are written as events, so each analysis can be replayed and
audited.

Example
-------
>>> import mapprior
>>> mapprior.__version__
'0.1.0'
"""

from mapprior.__version__ import __version__
