"""
Error kinds raised by hohmm components.

All contract violations derive from HMMError (itself a ValueError) so callers
can catch them as a group. Likelihood decrease during training is a warning,
not an error.
"""


class HMMError(ValueError):
    """Base class for hohmm errors."""


class UnsupportedStrandError(HMMError):
    """Reverse-complement scoring was requested but is not defined."""


class InvalidLengthError(HMMError):
    """A span is incompatible with the state or emission it was given to."""


class ForbiddenTransitionError(HMMError):
    """A statistic or explicit path used a context/successor pair with zero probability."""


class StatisticNotResetError(HMMError):
    """Estimation or sampling was called twice without resetting the statistic."""


class TopologyError(HMMError):
    """The model topology is malformed (silent cycle, duplicate context, ...)."""


class RecursionMismatchError(HMMError):
    """Forward and backward passes disagree on the total log-likelihood."""


class ZeroLikelihoodError(HMMError):
    """A training sequence has probability zero under the current model."""


class SamplerRetryExhaustedError(HMMError):
    """Metropolis-Hastings rejected every proposal within the retry bound."""

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(
            f"No proposal accepted after {attempts} attempts; "
            f"consider a different proposal_temperature"
        )


class LikelihoodDecreaseWarning(UserWarning):
    """Training objective decreased between iterations."""
