"""Exceptions and warning categories defined by spikeinfer.

Errors are raised at the API boundary (bad configuration, inconsistent
spike-in information, empty chains). Numerical problems inside the sampler
or in per-gene downstream computations are never raised; they are reported
through the warning categories below.
"""


class InvalidConfiguration(ValueError):
    """Raised when sampler settings are invalid.

    Examples are a non-positive number of iterations or thinning, a negative
    burn-in, or a burn-in that is not strictly smaller than the number of
    iterations.
    """


class InconsistentSpikeInfo(ValueError):
    """Raised when spike-in flags and input molecule counts disagree.

    Attributes
    ----------
    missing : list of str
        Spike-in genes flagged in the data without an input molecule count.
    unexpected : list of str
        Genes with an input molecule count that are not flagged spike-ins.
    """

    def __init__(self, message: str, missing=(), unexpected=()):
        super().__init__(message)
        self.missing = list(missing)
        self.unexpected = list(unexpected)


class EmptyChain(ValueError):
    """Raised when a summary is requested on a chain without draws."""


class NonFiniteProposal(RuntimeWarning):
    """Proposals with a non-finite log density were rejected while sampling."""


class DegenerateVariance(RuntimeWarning):
    """A gene's variance decomposition is undefined and reported as NaN."""
