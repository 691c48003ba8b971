"""
Closed-form operations on conjugate mixtures.

Posterior updating, robustification with a vague component and probabilities
of differences between two independent mixtures. See the `core` module.
"""
