"""
mapprior.core.errors
====================

Exception and warning types raised by the mixture and MAP prior machinery.

Argument validation elsewhere in the package raises plain `ValueError`; the
types below mark conditions callers are expected to tell apart. Every error
derives from the builtin it refines so ``except ValueError`` keeps working.

Examples
--------
>>> from mapprior.core.errors import DomainError, MapPriorError
>>> issubclass(DomainError, ValueError) and issubclass(DomainError, MapPriorError)
True
"""

from __future__ import annotations
from typing import Any, Optional


class MapPriorError(Exception):
    """Base class for errors raised by mapprior."""


class InsufficientDataError(MapPriorError, ValueError):
    """Fewer valid draws than required for fitting a mixture."""


class DomainError(MapPriorError, ValueError):
    """Parameters outside the valid domain of a family or a mixture."""


class IncompatibleFamilyError(MapPriorError, ValueError):
    """Mixture algebra attempted across different conjugate families."""


class ConvergenceError(MapPriorError, RuntimeError):
    """EM did not converge within its iteration cap.

    Attributes:
        n_components: Number of components of the failed fit
        iterations: Iterations performed
        loglik: Log-likelihood of the last iterate
        last: The last iterate (a `MixtureDistribution`), if any
    """

    def __init__(
        self,
        message: str,
        *,
        n_components: int,
        iterations: int,
        loglik: float,
        last: Optional[Any] = None,
    ) -> None:
        super().__init__(message)
        self.n_components = n_components
        self.iterations = iterations
        self.loglik = loglik
        self.last = last


class SamplerConvergenceWarning(UserWarning):
    """The posterior sampler reported divergences or poor mixing."""
