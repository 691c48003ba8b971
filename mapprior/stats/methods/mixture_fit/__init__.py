"""
Mixture fitting by Expectation-Maximisation.

Turns samples (usually MCMC draws of a predictive distribution) into
parametric mixtures of conjugate components, with the number of components
chosen by an information criterion. See the `core` module.
"""
