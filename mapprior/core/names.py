"""
mapprior.core.names
===================

Typed names shared across the package.

- `Namespace`: an Enum for well-known ledger namespaces.
- `ExperimentId`, `StepKey`, `TimeIndex`: NewType wrappers for clarity.
- `FamilyTag`: the conjugate families a mixture prior can be built from.
- Tags of the two-arm trial events.

Examples
--------
>>> from mapprior.core.names import Namespace, ExperimentId, FamilyTag
>>> Namespace.OBS.value
'obs'
>>> FamilyTag("beta") is FamilyTag.BETA
True
>>> eid = ExperimentId("trial#1"); isinstance(eid, str)
True
"""

from __future__ import annotations
from enum import Enum
from typing import NewType


class Namespace(str, Enum):
    """Well-known ledger namespaces.

    - DESIGN: registered priors, sample sizes and decision rules
    - OBS: raw observations
    - STATS: statistics (derived, e.g. posterior mixtures)
    - CRITERIA: decision rules / thresholds
    - SIGNALS: emitted signals / decisions
    """

    DESIGN = "design"
    OBS = "obs"
    STATS = "stats"
    CRITERIA = "criteria"
    SIGNALS = "signals"

    def __str__(self) -> str:
        return self.value


class FamilyTag(str, Enum):
    """Conjugate families supported by mixture priors."""

    BETA = "beta"
    GAMMA = "gamma"
    NORMAL = "normal"

    def __str__(self) -> str:
        return self.value


# Logical identifiers (thin wrappers over str).
ExperimentId = NewType("ExperimentId", str)
StepKey = NewType("StepKey", str)
TimeIndex = NewType("TimeIndex", str)

# Tags of the two-arm trial events.
ARMS_TAG = "obs:arms"
POSTERIOR_TAG = "stat:posterior"
DECISION_RULE_TAG = "crit:decision"
DECISION_SIGNAL_TAG = "signal:decision"
DESIGN_TAG = "design:two_arm"
