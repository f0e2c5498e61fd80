"""
Burn-in length from several independent sampling chains.

The variance-ratio test compares, for every candidate burn-in length b, the
spread of the chains' scores after b against the spread within each chain:

    W = mean over chains of the within-chain variance
    B = k * variance of the chain means            (k values per chain)
    R = ((k - 1) / k * W + B / k) / W

The burn-in is the first b whose ratio R drops to `threshold` or below.
"""

from typing import List, Sequence as SequenceType

import numpy as np


def variance_ratio(values: np.ndarray) -> float:
    """
    Ratio of pooled to within-chain variance.

    Args:
        values: (n_chains, k) array of scores, k >= 2

    Returns:
        R >= 0; 1.0 when every chain is constant at the same value, inf when
        the chains are constant at different values
    """
    k = values.shape[1]
    within = values.var(axis=1, ddof=1).mean()
    between = k * values.mean(axis=1).var(ddof=1)
    if within == 0:
        return 1.0 if between == 0 else np.inf
    pooled = (k - 1) / k * within + between / k
    return float(pooled / within)


class VarianceRatioBurnInTest:
    """
    Variance-ratio burn-in test over the score histories of parallel chains.

    Args:
        threshold: Largest ratio accepted as converged (>= 1)
    """

    def __init__(self, threshold: float = 1.2):
        if threshold < 1.0:
            raise ValueError("threshold must be at least 1")
        self.threshold = threshold

    def length_of_burn_in(self, histories: SequenceType[SequenceType[float]]) -> int:
        """
        Number of leading rounds to discard.

        Args:
            histories: One score list per chain; chains are truncated to the
                shortest one

        Returns:
            The first b with ratio <= threshold over rounds b.., or the full
            length when no such b leaves at least two rounds per chain
        """
        if len(histories) < 2:
            raise ValueError("The variance-ratio test needs at least two chains")
        n = min(len(h) for h in histories)
        values = np.array([list(h)[:n] for h in histories], dtype=float)
        for b in range(n - 1):
            if variance_ratio(values[:, b:]) <= self.threshold:
                return b
        return n

    def ratios(self, histories: SequenceType[SequenceType[float]]) -> List[float]:
        """Ratio for every candidate burn-in length (diagnostics)."""
        n = min(len(h) for h in histories)
        values = np.array([list(h)[:n] for h in histories], dtype=float)
        return [variance_ratio(values[:, b:]) for b in range(n - 1)]
