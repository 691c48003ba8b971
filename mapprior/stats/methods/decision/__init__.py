"""
Decision rules and their operating characteristics.

The `core` module defines one- and two-sample rules on posterior mixtures;
`operating` derives decision boundaries, frequentist operating
characteristics and predictive probabilities of success from them.
"""
