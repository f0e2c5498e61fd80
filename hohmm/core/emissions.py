"""
hohmm emission module

Provides:
1. Emission / SamplingEmission contracts shared by every emission kind
2. DiscreteEmission: categorical symbols, optionally conditioned on the
   preceding `order` symbols, with Dirichlet pseudo-counts
3. GaussianEmission: univariate normal with a Normal-Gamma prior
4. Dirichlet helpers reused by the transition elements

All emissions score inclusive spans [start, end] of a Sequence; an empty span
(end == start - 1) scores 0.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import numpy as np
from scipy.special import gammaln

from hohmm.core.errors import (
    InvalidLengthError,
    StatisticNotResetError,
    UnsupportedStrandError,
)
from hohmm.core.sequence import Sequence

LOG_2PI = float(np.log(2 * np.pi))


# =============================================================================
# Dirichlet helpers
# =============================================================================

def normalize_log(counts: np.ndarray) -> np.ndarray:
    """Row-normalise counts and return log-probabilities (uniform for empty rows)."""
    counts = np.asarray(counts, dtype=float)
    sums = counts.sum(axis=-1, keepdims=True)
    n = counts.shape[-1]
    probs = np.where(sums > 0, counts / np.where(sums > 0, sums, 1.0), 1.0 / n)
    with np.errstate(divide='ignore'):
        return np.log(probs)


def log_beta(alpha: np.ndarray) -> float:
    """Log multivariate Beta function over the strictly positive entries of alpha."""
    alpha = np.asarray(alpha, dtype=float)
    alpha = alpha[alpha > 0]
    if alpha.size == 0:
        return 0.0
    return float(gammaln(alpha).sum() - gammaln(alpha.sum()))


def log_dirichlet_sample(alpha: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    """Draw log-probabilities from Dirichlet(alpha); zero entries stay at -inf."""
    alpha = np.asarray(alpha, dtype=float)
    positive = alpha > 0
    if not positive.any():
        return np.full(alpha.shape, -np.log(alpha.size))
    draws = np.zeros_like(alpha)
    draws[positive] = rng.standard_gamma(alpha[positive])
    total = draws.sum()
    if total <= 0:
        # every gamma variate underflowed; fall back to the mean
        draws[positive] = alpha[positive]
        total = draws.sum()
    with np.errstate(divide='ignore'):
        return np.log(draws / total)


def dirichlet_gamma_score(counts: np.ndarray, alpha: np.ndarray) -> float:
    """log B(counts + alpha) - log B(alpha), over cells with alpha > 0."""
    mask = alpha > 0
    if not mask.any():
        return 0.0
    return log_beta((counts + alpha)[mask]) - log_beta(alpha[mask])


def dirichlet_log_posterior(log_probs: np.ndarray, counts: np.ndarray,
                            alpha: np.ndarray) -> float:
    """
    Unnormalised log posterior: log Dir(theta; alpha) + sum(counts * log theta).

    Cells with alpha == 0 contribute only their likelihood term.
    """
    mask = alpha > 0
    with np.errstate(invalid='ignore'):
        like = np.where(counts > 0, counts * log_probs, 0.0).sum()
        if not mask.any():
            return float(like)
        exponent = np.where(mask, alpha - 1.0, 0.0)
        prior = np.where(exponent != 0, exponent * log_probs, 0.0).sum() - log_beta(alpha[mask])
    return float(like + prior)


# =============================================================================
# Contracts
# =============================================================================

class Emission(ABC):
    """
    Scoring + sufficient-statistic contract.

    The statistic is consumed once by estimate_from_statistic(); calling it
    again before reset_statistic() raises StatisticNotResetError.
    """

    type_name = 'abstract'

    def __init__(self):
        self._statistic_consumed = False

    @abstractmethod
    def get_log_prob_for(self, forward: bool, start: int, end: int,
                         seq: Sequence) -> float:
        """Log-score of the inclusive span [start, end] on the given strand."""

    def get_log_scores(self, forward: bool, start: int, end: int,
                       seq: Sequence) -> np.ndarray:
        """Per-position log-scores for positions start..end."""
        return np.array([self.get_log_prob_for(forward, p, p, seq)
                         for p in range(start, end + 1)], dtype=float)

    @abstractmethod
    def add_to_statistic(self, forward: bool, start: int, end: int,
                         weight: float, seq: Sequence):
        """Add `weight` of evidence for every position of the span."""

    def add_weights_to_statistic(self, forward: bool, start: int,
                                 weights: np.ndarray, seq: Sequence):
        """Add weights[i] of evidence for position start + i."""
        for i, w in enumerate(weights):
            if w > 0:
                self.add_to_statistic(forward, start + i, start + i, w, seq)

    def reset_statistic(self):
        self._clear_statistic()
        self._statistic_consumed = False

    def estimate_from_statistic(self):
        self._consume_statistic()
        self._estimate()

    @abstractmethod
    def _clear_statistic(self):
        pass

    @abstractmethod
    def _estimate(self):
        pass

    @abstractmethod
    def join_statistics(self, *others: 'Emission'):
        """Add the statistics of `others` (same emission type and shape) to this one."""

    @abstractmethod
    def initialize_randomly(self, rng: np.random.Generator):
        pass

    @abstractmethod
    def set_parameters(self, other: 'Emission'):
        """Copy parameters (not statistics) from an emission of the same shape."""

    @abstractmethod
    def to_dict(self) -> Dict[str, Any]:
        pass

    def _consume_statistic(self):
        if self._statistic_consumed:
            raise StatisticNotResetError(
                f"{type(self).__name__}: statistic already consumed; "
                f"call reset_statistic() before estimating again")
        self._statistic_consumed = True

    @staticmethod
    def _check_span(start: int, end: int, seq: Sequence):
        if start < 0 or end >= len(seq) or end < start - 1:
            raise InvalidLengthError(
                f"Span [{start}, {end}] is invalid for a sequence of length {len(seq)}")


class SamplingEmission(Emission):
    """Emission that can also draw parameters from its posterior."""

    def draw_parameters_from_statistic(self, rng: Optional[np.random.Generator] = None):
        self._consume_statistic()
        self._draw(np.random.default_rng() if rng is None else rng)

    @abstractmethod
    def _draw(self, rng: np.random.Generator):
        pass

    @abstractmethod
    def get_log_gamma_score_from_statistic(self) -> float:
        """Log marginal-likelihood normaliser of the statistic (parameter independent)."""

    @abstractmethod
    def get_log_posterior_from_statistic(self) -> float:
        """Log prior density plus log-likelihood of the statistic at the current parameters."""

    def get_log_proposal_posterior_from_statistic(self) -> float:
        """Log density of the current parameters under the proposal distribution."""
        return self.get_log_posterior_from_statistic() - self.get_log_gamma_score_from_statistic()

    def get_log_importance_weight(self, proposal: 'SamplingEmission') -> float:
        """
        log target - log proposal at the current parameters.

        `proposal` must hold the same parameters as self. When both statistics
        are identical the proposal is the exact conjugate posterior and the
        weight reduces to the gamma score.
        """
        if self._statistic_equals(proposal):
            return self.get_log_gamma_score_from_statistic()
        return (self.get_log_posterior_from_statistic()
                - proposal.get_log_proposal_posterior_from_statistic())

    @abstractmethod
    def _statistic_equals(self, other: 'SamplingEmission') -> bool:
        pass

    @abstractmethod
    def scale_statistic(self, factor: float):
        pass


# =============================================================================
# Discrete emission
# =============================================================================

class DiscreteEmission(SamplingEmission):
    """
    Categorical emission over `n_symbols`, conditioned on the previous `order`
    symbols of the scored strand.

    Positions with fewer than `order` preceding symbols score uniformly and add
    nothing to the statistic. Negative (unknown) symbols score 0.

    Args:
        n_symbols: Alphabet size
        order: Number of preceding symbols used as condition
        ess: Equivalent sample size spread uniformly over all hyperparameters
        hyperparameters: Explicit pseudo-counts, shape (n_symbols**order, n_symbols)
        probs: Initial probabilities, same shape as hyperparameters
    """

    type_name = 'discrete'

    def __init__(self, n_symbols: int, order: int = 0, ess: float = 0.0,
                 hyperparameters=None, probs=None):
        super().__init__()
        if n_symbols < 1:
            raise ValueError("n_symbols must be positive")
        if order < 0:
            raise ValueError("order must be non-negative")
        self.n_symbols = n_symbols
        self.order = order
        n_conditions = n_symbols ** order
        shape = (n_conditions, n_symbols)

        if hyperparameters is None:
            if ess < 0:
                raise ValueError("ess must be non-negative")
            self.hyperparameters = np.full(shape, ess / (n_conditions * n_symbols))
        else:
            self.hyperparameters = np.array(hyperparameters, dtype=float).reshape(shape)
            if (self.hyperparameters < 0).any():
                raise ValueError("Hyperparameters must be non-negative")

        if probs is None:
            self.log_probs = np.full(shape, -np.log(n_symbols))
        else:
            probs = np.array(probs, dtype=float).reshape(shape)
            if (probs < 0).any() or not np.allclose(probs.sum(axis=1), 1.0):
                raise ValueError("Each row of probs must be a probability distribution")
            with np.errstate(divide='ignore'):
                self.log_probs = np.log(probs)

        self.statistic = np.zeros(shape)

    @property
    def probs(self) -> np.ndarray:
        return np.exp(self.log_probs)

    def _strand_positions(self, forward: bool, start: int, end: int, seq: Sequence):
        """Symbols and condition indices of the span, in forward position order."""
        self._check_span(start, end, seq)
        positions = np.arange(start, end + 1)
        if forward:
            values = seq.values
            idx = positions
        else:
            values = seq.reverse_complement().values
            idx = len(seq) - 1 - positions
        symbols = values[idx]
        conditions = np.zeros(idx.shape[0], dtype=np.int64)
        valid = idx >= self.order
        for k in range(1, self.order + 1):
            prev = values[np.maximum(idx - k, 0)]
            valid &= prev >= 0
            conditions += np.maximum(prev, 0) * self.n_symbols ** (k - 1)
        conditions[~valid] = -1
        return symbols, conditions

    def get_log_scores(self, forward, start, end, seq):
        symbols, conditions = self._strand_positions(forward, start, end, seq)
        scores = np.full(symbols.shape[0], -np.log(self.n_symbols))
        known = (conditions >= 0) & (symbols >= 0)
        scores[known] = self.log_probs[conditions[known], symbols[known]]
        scores[symbols < 0] = 0.0
        return scores

    def get_log_prob_for(self, forward, start, end, seq):
        return float(self.get_log_scores(forward, start, end, seq).sum())

    def add_to_statistic(self, forward, start, end, weight, seq):
        if weight < 0:
            raise ValueError("Statistic weights must be non-negative")
        symbols, conditions = self._strand_positions(forward, start, end, seq)
        known = (conditions >= 0) & (symbols >= 0)
        np.add.at(self.statistic, (conditions[known], symbols[known]), weight)

    def add_weights_to_statistic(self, forward, start, weights, seq):
        weights = np.asarray(weights, dtype=float)
        symbols, conditions = self._strand_positions(
            forward, start, start + weights.shape[0] - 1, seq)
        known = (conditions >= 0) & (symbols >= 0)
        np.add.at(self.statistic, (conditions[known], symbols[known]), weights[known])

    def _clear_statistic(self):
        self.statistic.fill(0.0)

    def _estimate(self):
        self.log_probs = normalize_log(self.statistic + self.hyperparameters)

    def _draw(self, rng):
        alpha = self.statistic + self.hyperparameters
        self.log_probs = np.vstack([log_dirichlet_sample(row, rng) for row in alpha])

    def get_log_gamma_score_from_statistic(self):
        return float(sum(dirichlet_gamma_score(n, a)
                         for n, a in zip(self.statistic, self.hyperparameters)))

    def get_log_posterior_from_statistic(self):
        return float(sum(dirichlet_log_posterior(lp, n, a) for lp, n, a in
                         zip(self.log_probs, self.statistic, self.hyperparameters)))

    def _statistic_equals(self, other):
        return np.array_equal(self.statistic, other.statistic)

    def scale_statistic(self, factor):
        self.statistic *= factor

    def join_statistics(self, *others):
        for other in others:
            self.statistic += other.statistic

    def set_parameters(self, other):
        if other.log_probs.shape != self.log_probs.shape:
            raise ValueError("Cannot copy parameters between emissions of different shape")
        self.log_probs = other.log_probs.copy()

    def initialize_randomly(self, rng):
        rows = []
        for alpha in self.hyperparameters:
            rows.append(log_dirichlet_sample(alpha if alpha.sum() > 0 else np.ones_like(alpha), rng))
        self.log_probs = np.vstack(rows)
        self.reset_statistic()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type_name,
            'n_symbols': self.n_symbols,
            'order': self.order,
            'hyperparameters': self.hyperparameters.tolist(),
            'probs': self.probs.tolist(),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'DiscreteEmission':
        return cls(n_symbols=d['n_symbols'], order=d.get('order', 0),
                   hyperparameters=d.get('hyperparameters'), probs=d.get('probs'))


# =============================================================================
# Gaussian emission
# =============================================================================

class GaussianEmission(SamplingEmission):
    """
    Univariate normal emission N(mean, 1/precision), forward strand only.

    Prior is Normal-Gamma(prior_mean, ess, shape, rate): precision ~
    Gamma(shape, rate), mean | precision ~ N(prior_mean, 1/(ess * precision)).
    With ess == 0 estimation is maximum likelihood and sampling is undefined.
    """

    type_name = 'gaussian'

    def __init__(self, mean: float = 0.0, precision: float = 1.0,
                 prior_mean: float = 0.0, ess: float = 0.0,
                 shape: float = 1.0, rate: float = 1.0):
        super().__init__()
        if precision <= 0:
            raise ValueError("precision must be positive")
        if ess < 0 or shape <= 0 or rate <= 0:
            raise ValueError("Normal-Gamma prior needs ess >= 0, shape > 0 and rate > 0")
        self.mean = float(mean)
        self.precision = float(precision)
        self.prior_mean = float(prior_mean)
        self.ess = float(ess)
        self.shape = float(shape)
        self.rate = float(rate)
        self.n = 0.0
        self.sum_x = 0.0
        self.sum_x2 = 0.0

    def _values(self, forward, start, end, seq) -> np.ndarray:
        if not forward:
            raise UnsupportedStrandError("GaussianEmission only scores the forward strand")
        self._check_span(start, end, seq)
        return np.asarray(seq.values[start:end + 1], dtype=float)

    def get_log_scores(self, forward, start, end, seq):
        x = self._values(forward, start, end, seq)
        return 0.5 * (np.log(self.precision) - LOG_2PI) - 0.5 * self.precision * (x - self.mean) ** 2

    def get_log_prob_for(self, forward, start, end, seq):
        return float(self.get_log_scores(forward, start, end, seq).sum())

    def add_to_statistic(self, forward, start, end, weight, seq):
        if weight < 0:
            raise ValueError("Statistic weights must be non-negative")
        x = self._values(forward, start, end, seq)
        self.n += weight * x.shape[0]
        self.sum_x += weight * x.sum()
        self.sum_x2 += weight * (x ** 2).sum()

    def add_weights_to_statistic(self, forward, start, weights, seq):
        weights = np.asarray(weights, dtype=float)
        x = self._values(forward, start, start + weights.shape[0] - 1, seq)
        self.n += weights.sum()
        self.sum_x += (weights * x).sum()
        self.sum_x2 += (weights * x ** 2).sum()

    def _clear_statistic(self):
        self.n = self.sum_x = self.sum_x2 = 0.0

    def _posterior(self):
        """Normal-Gamma posterior parameters (kappa_n, mu_n, alpha_n, beta_n)."""
        kappa_n = self.ess + self.n
        mu_n = (self.ess * self.prior_mean + self.sum_x) / kappa_n
        alpha_n = self.shape + 0.5 * self.n
        beta_n = self.rate + 0.5 * (self.sum_x2 + self.ess * self.prior_mean ** 2
                                    - kappa_n * mu_n ** 2)
        return kappa_n, mu_n, alpha_n, beta_n

    def _estimate(self):
        if self.ess == 0:
            if self.n <= 0:
                return
            mean = self.sum_x / self.n
            var = self.sum_x2 / self.n - mean ** 2
            self.mean = mean
            self.precision = 1.0 / max(var, 1e-12)
            return
        kappa_n, mu_n, alpha_n, beta_n = self._posterior()
        self.mean = mu_n
        # joint mode of the Normal-Gamma posterior, posterior mean if it has none
        if alpha_n > 0.5:
            self.precision = (alpha_n - 0.5) / beta_n
        else:
            self.precision = alpha_n / beta_n

    def _draw(self, rng):
        if self.ess == 0:
            raise ValueError("Sampling a GaussianEmission requires ess > 0")
        kappa_n, mu_n, alpha_n, beta_n = self._posterior()
        self.precision = float(rng.gamma(alpha_n, 1.0 / beta_n))
        self.mean = float(rng.normal(mu_n, 1.0 / np.sqrt(kappa_n * self.precision)))

    def get_log_gamma_score_from_statistic(self):
        if self.ess == 0:
            raise ValueError("Gamma score requires ess > 0")
        kappa_n, _, alpha_n, beta_n = self._posterior()
        return float(gammaln(alpha_n) - gammaln(self.shape)
                     + self.shape * np.log(self.rate) - alpha_n * np.log(beta_n)
                     + 0.5 * (np.log(self.ess) - np.log(kappa_n))
                     - 0.5 * self.n * LOG_2PI)

    def get_log_posterior_from_statistic(self):
        if self.ess == 0:
            raise ValueError("Log posterior requires ess > 0")
        mu, tau = self.mean, self.precision
        log_prior = (self.shape * np.log(self.rate) - gammaln(self.shape)
                     + (self.shape - 0.5) * np.log(tau) - self.rate * tau
                     + 0.5 * (np.log(self.ess) - LOG_2PI)
                     - 0.5 * self.ess * tau * (mu - self.prior_mean) ** 2)
        log_like = (0.5 * self.n * (np.log(tau) - LOG_2PI)
                    - 0.5 * tau * (self.sum_x2 - 2 * mu * self.sum_x + self.n * mu ** 2))
        return float(log_prior + log_like)

    def _statistic_equals(self, other):
        return (self.n, self.sum_x, self.sum_x2) == (other.n, other.sum_x, other.sum_x2)

    def scale_statistic(self, factor):
        self.n *= factor
        self.sum_x *= factor
        self.sum_x2 *= factor

    def join_statistics(self, *others):
        for other in others:
            self.n += other.n
            self.sum_x += other.sum_x
            self.sum_x2 += other.sum_x2

    def set_parameters(self, other):
        self.mean = other.mean
        self.precision = other.precision

    def initialize_randomly(self, rng):
        if self.ess > 0:
            self.precision = float(rng.gamma(self.shape, 1.0 / self.rate))
            self.mean = float(rng.normal(self.prior_mean,
                                         1.0 / np.sqrt(self.ess * self.precision)))
        else:
            self.mean = float(rng.normal(self.mean, 1.0 / np.sqrt(self.precision)))
        self.reset_statistic()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type_name,
            'mean': self.mean,
            'precision': self.precision,
            'prior_mean': self.prior_mean,
            'ess': self.ess,
            'shape': self.shape,
            'rate': self.rate,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'GaussianEmission':
        return cls(mean=d['mean'], precision=d['precision'],
                   prior_mean=d.get('prior_mean', 0.0), ess=d.get('ess', 0.0),
                   shape=d.get('shape', 1.0), rate=d.get('rate', 1.0))
