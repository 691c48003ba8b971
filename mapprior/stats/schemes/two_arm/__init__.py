"""
Two-arm trials analysed with conjugate mixture priors.

**Module Organization:**

- `model`: arm batches, design, payload types (``Mixture``, ``ArmPosterior``)
- `components`: observation, posterior, criteria and decision components
- `template`: `TwoArmTrialTemplate`, the look-by-look trial definition

Example Usage
-------------
>>> from mapprior.core.ledger import Ledger, create_test_connection
>>> from mapprior.stats.common.mixture import mixnorm
>>> from mapprior.stats.methods.decision.core import decision2S
>>> from mapprior.stats.schemes.two_arm.template import TwoArmTrialTemplate
>>> flat = mixnorm((1.0, 0.0, 100.0), sigma=1.0)
>>> trial = TwoArmTrialTemplate("normal-trial", prior1=flat, prior2=flat, n1=50, n2=50,
...                             decision=decision2S(0.975, 0.0, lower_diff=False))
>>> trial.setup(Ledger(create_test_connection(), "demo"))
>>> trial.add_observations(n1=50, y1=25.0, n2=50, y2=0.0)
>>> trial.analyze().decision
'success'
"""
