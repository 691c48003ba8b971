"""
Problem-specific compositions of the statistical methods.

Available schemes:
- `map_prior`: Meta-Analytic-Predictive priors from historical studies
- `two_arm`: two-arm trials with mixture priors, analysed look by look on a ledger
"""
