"""
Algorithms on mixtures of conjugate distributions.

Available methods:
- `mixture_fit`: EM approximation of samples with information-criterion selection
- `mixture_algebra`: posterior updating, robustification, tail probabilities of differences
- `ess`: effective sample size (moment, Morita, ELIR)
- `decision`: decision rules, boundaries, operating characteristics, probability of success
"""
