"""
Effective sample size of mixture priors.

Moment matching, the Morita-Thall-Mueller curvature method and the
expected local-information-ratio (ELIR) method. See the `core` module.
"""
