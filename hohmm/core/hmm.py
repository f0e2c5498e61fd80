"""
hohmm HMM module

Provides:
1. Numba JIT-compiled forward, backward, Viterbi and expected-count kernels
   over a higher-order transition lattice
2. HigherOrderHMM: states + emissions + Transition, with scoring, Viterbi
   decoding, posteriors, path sampling and sufficient-statistic hooks

Lattice layout: layer l counts the symbols consumed so far (0..T) and each
node is a transition element (the current context). Emitting edges move from
layer l to l + 1 and add the emission score of symbol l; silent edges stay in
the layer and are processed in the topological order computed by Transition.
"""

from typing import Any, Dict, List, Optional, Sequence as SequenceType, Tuple, Union

import numpy as np
from numba import jit
from scipy.special import logsumexp

from hohmm.core.emissions import Emission, SamplingEmission
from hohmm.core.errors import (
    ForbiddenTransitionError,
    InvalidLengthError,
    RecursionMismatchError,
    TopologyError,
    ZeroLikelihoodError,
)
from hohmm.core.sequence import Sequence
from hohmm.core.states import State
from hohmm.core.transition import Transition


# =============================================================================
# Numba JIT-compiled recursions
# =============================================================================

@jit(nopython=True, cache=False)
def _logaddexp(x, y):
    """log(exp(x) + exp(y)) without overflow."""
    if x == -np.inf:
        return y
    if y == -np.inf:
        return x
    if x >= y:
        return x + np.log1p(np.exp(y - x))
    return y + np.log1p(np.exp(x - y))


@jit(nopython=True, cache=False)
def _forward_numba(log_emit, child_state, descendant, log_trans, consumes,
                   silent_order, start):
    """
    Forward lattice.

    Args:
        log_emit: (T, S) log emission score of symbol l in state s
        child_state, descendant, log_trans: (E, C) compiled transition
        consumes: (E, C) 1 if the successor state emits, else 0
        silent_order: (E,) topological order of elements over silent edges
        start: Index of the start element

    Returns:
        fwd: (T + 1, E) log forward values
    """
    T = log_emit.shape[0]
    E = child_state.shape[0]
    C = child_state.shape[1]
    fwd = np.full((T + 1, E), -np.inf)
    fwd[0, start] = 0.0

    for l in range(T + 1):
        for k in range(E):
            e = silent_order[k]
            f = fwd[l, e]
            if f == -np.inf:
                continue
            for c in range(C):
                if child_state[e, c] < 0:
                    break
                if consumes[e, c] == 0:
                    d = descendant[e, c]
                    fwd[l, d] = _logaddexp(fwd[l, d], f + log_trans[e, c])
        if l == T:
            break
        for e in range(E):
            f = fwd[l, e]
            if f == -np.inf:
                continue
            for c in range(C):
                s = child_state[e, c]
                if s < 0:
                    break
                if consumes[e, c] == 1:
                    d = descendant[e, c]
                    fwd[l + 1, d] = _logaddexp(
                        fwd[l + 1, d], f + log_trans[e, c] + log_emit[l, s])
    return fwd


@jit(nopython=True, cache=False)
def _backward_numba(log_emit, child_state, descendant, log_trans, consumes,
                    silent_order, final):
    """
    Backward lattice; bwd[l, e] is the log-probability of finishing the
    sequence from element e after l symbols. Final elements may stop at T.
    """
    T = log_emit.shape[0]
    E = child_state.shape[0]
    C = child_state.shape[1]
    bwd = np.empty((T + 1, E))

    for l in range(T, -1, -1):
        for k in range(E - 1, -1, -1):
            e = silent_order[k]
            acc = -np.inf
            if l == T and final[e] == 1:
                acc = 0.0
            for c in range(C):
                s = child_state[e, c]
                if s < 0:
                    break
                d = descendant[e, c]
                if consumes[e, c] == 1:
                    if l < T:
                        acc = _logaddexp(acc, log_trans[e, c] + log_emit[l, s] + bwd[l + 1, d])
                else:
                    acc = _logaddexp(acc, log_trans[e, c] + bwd[l, d])
            bwd[l, e] = acc
    return bwd


@jit(nopython=True, cache=False)
def _viterbi_numba(log_emit, child_state, descendant, log_trans, consumes,
                   silent_order, final):
    """
    Viterbi lattice (max instead of log-sum-exp), computed suffix-wise.

    Successors are scanned in increasing state index with a strict '>' so the
    lowest index wins ties; stopping at a final element wins ties over moving on.

    Returns:
        vit: (T + 1, E) best log-score of a completion
        backptr: (T + 1, E) chosen slot, -1 = stop, -2 = no completion
    """
    T = log_emit.shape[0]
    E = child_state.shape[0]
    C = child_state.shape[1]
    vit = np.empty((T + 1, E))
    backptr = np.empty((T + 1, E), dtype=np.int64)

    for l in range(T, -1, -1):
        for k in range(E - 1, -1, -1):
            e = silent_order[k]
            best = -np.inf
            arg = -2
            if l == T and final[e] == 1:
                best = 0.0
                arg = -1
            for c in range(C):
                s = child_state[e, c]
                if s < 0:
                    break
                d = descendant[e, c]
                if consumes[e, c] == 1:
                    if l == T:
                        continue
                    val = log_trans[e, c] + log_emit[l, s] + vit[l + 1, d]
                else:
                    val = log_trans[e, c] + vit[l, d]
                if val > best:
                    best = val
                    arg = c
            vit[l, e] = best
            backptr[l, e] = arg
    return vit, backptr


@jit(nopython=True, cache=False)
def _expected_counts_numba(fwd, bwd, log_emit, child_state, descendant, log_trans,
                           consumes, log_total, weight):
    """
    Posterior edge weights summed over layers.

    Returns:
        trans_counts: (E, C) expected uses of each transition slot
        emit_weights: (T, S) posterior weight of state s emitting symbol l
    """
    T = log_emit.shape[0]
    S = log_emit.shape[1]
    E = child_state.shape[0]
    C = child_state.shape[1]
    trans_counts = np.zeros((E, C))
    emit_weights = np.zeros((T, S))

    for l in range(T + 1):
        for e in range(E):
            f = fwd[l, e]
            if f == -np.inf:
                continue
            for c in range(C):
                s = child_state[e, c]
                if s < 0:
                    break
                d = descendant[e, c]
                if consumes[e, c] == 1:
                    if l == T:
                        continue
                    lw = f + log_trans[e, c] + log_emit[l, s] + bwd[l + 1, d] - log_total
                else:
                    lw = f + log_trans[e, c] + bwd[l, d] - log_total
                if lw == -np.inf:
                    continue
                w = weight * np.exp(lw)
                trans_counts[e, c] += w
                if consumes[e, c] == 1:
                    emit_weights[l, s] += w
    return trans_counts, emit_weights


# =============================================================================
# Model
# =============================================================================

class HigherOrderHMM:
    """
    Higher-order HMM with silent states.

    Args:
        states: Model states; index in this list is the state index used by
            the transition contexts
        transition: Transition built with the states' silence flags
        final_states: State indices (or names) that may end a parse. Defaults
            to the absorbing states (no outgoing transitions) or, if there are
            none, every emitting state.
        name: Optional model name

    The recursions use log probabilities throughout; a parse must consume the
    whole scored span.
    """

    def __init__(self, states: SequenceType[State], transition: Transition,
                 final_states: Optional[SequenceType[Union[int, str]]] = None,
                 name: Optional[str] = None):
        self.states: List[State] = list(states)
        self.transition = transition
        self.name = name
        silent = np.array([s.silent for s in self.states], dtype=bool)
        if silent.shape != transition.is_silent.shape or (silent != transition.is_silent).any():
            raise TopologyError("Transition silence flags do not match the states")
        if transition.order == 0 and silent.any():
            raise TopologyError("Silent states require a transition of order >= 1")

        self.emissions: List[Emission] = []
        for state in self.states:
            if state.emission is not None and not any(state.emission is e for e in self.emissions):
                self.emissions.append(state.emission)
        self._emission_slot = [
            next(i for i, e in enumerate(self.emissions) if e is s.emission)
            if s.emission is not None else -1
            for s in self.states
        ]

        if final_states is None:
            self.final_states = self._determine_final_states()
        else:
            self.final_states = sorted(self.state_index(s) for s in final_states)

        self._final_elements = self._compute_final_elements()
        self._consumes_cache = None

    def _determine_final_states(self) -> List[int]:
        has_successors = set()
        for element in self.transition.elements:
            if element.context and not element.forbidden:
                has_successors.add(element.context[-1])
        absorbing = [i for i in range(self.n_states) if i not in has_successors]
        if absorbing:
            return absorbing
        return [i for i, s in enumerate(self.states) if not s.silent]

    def _compute_final_elements(self) -> np.ndarray:
        final = np.zeros(len(self.transition.elements), dtype=np.int64)
        final_set = set(self.final_states)
        for e, element in enumerate(self.transition.elements):
            if self.transition.order == 0:
                final[e] = 1
            elif element.context and element.context[-1] in final_set:
                final[e] = 1
        return final

    @property
    def n_states(self) -> int:
        return len(self.states)

    def state_index(self, state: Union[int, str]) -> int:
        if isinstance(state, str):
            for i, s in enumerate(self.states):
                if s.name == state:
                    return i
            raise KeyError(f"Unknown state {state!r}")
        if not 0 <= state < self.n_states:
            raise KeyError(f"State index {state} out of range")
        return int(state)

    def _compiled(self):
        child_state, descendant, log_trans = self.transition.compile()
        if self._consumes_cache is None:
            silent = self.transition.is_silent
            consumes = np.zeros(child_state.shape, dtype=np.int64)
            valid = child_state >= 0
            consumes[valid] = (~silent[child_state[valid]]).astype(np.int64)
            self._consumes_cache = consumes
        return child_state, descendant, log_trans, self._consumes_cache

    def _span(self, seq: Sequence, start: int, end: Optional[int]) -> Tuple[int, int]:
        end = len(seq) - 1 if end is None else end
        if start < 0 or end >= len(seq) or end < start - 1:
            raise InvalidLengthError(
                f"Span [{start}, {end}] is invalid for a sequence of length {len(seq)}")
        return start, end

    def _log_emissions(self, seq: Sequence, start: int, end: int) -> np.ndarray:
        """(T, n_states) log emission scores; silent columns are zero."""
        T = end - start + 1
        log_emit = np.zeros((T, self.n_states))
        if T == 0:
            return log_emit
        done: Dict[Tuple[int, bool], np.ndarray] = {}
        for i, state in enumerate(self.states):
            if state.silent:
                continue
            key = (self._emission_slot[i], state.forward)
            if key not in done:
                done[key] = state.emission.get_log_scores(state.forward, start, end, seq)
            log_emit[:, i] = done[key]
        return np.ascontiguousarray(log_emit)

    # -------------------------------------------------------------------------
    # Recursions
    # -------------------------------------------------------------------------

    def forward(self, seq: Sequence, start: int = 0,
                end: Optional[int] = None) -> Tuple[np.ndarray, float]:
        """
        Forward algorithm.

        Returns:
            fwd: (T + 1, n_elements) log forward matrix
            log_prob: Total log-likelihood of the span
        """
        start, end = self._span(seq, start, end)
        log_emit = self._log_emissions(seq, start, end)
        child_state, descendant, log_trans, consumes = self._compiled()
        fwd = _forward_numba(log_emit, child_state, descendant, log_trans, consumes,
                             self.transition.silent_order, self.transition.start)
        final = self._final_elements.astype(bool)
        log_prob = float(logsumexp(fwd[-1, final])) if final.any() else -np.inf
        return fwd, log_prob

    def backward(self, seq: Sequence, start: int = 0,
                 end: Optional[int] = None) -> Tuple[np.ndarray, float]:
        """
        Backward algorithm.

        Returns:
            bwd: (T + 1, n_elements) log backward matrix
            log_prob: Total log-likelihood of the span (bwd[0, start])
        """
        start, end = self._span(seq, start, end)
        log_emit = self._log_emissions(seq, start, end)
        child_state, descendant, log_trans, consumes = self._compiled()
        bwd = _backward_numba(log_emit, child_state, descendant, log_trans, consumes,
                              self.transition.silent_order, self._final_elements)
        return bwd, float(bwd[0, self.transition.start])

    def get_log_score_for(self, seq: Sequence, start: int = 0,
                          end: Optional[int] = None) -> float:
        """Log-likelihood of seq[start..end] summed over all parses."""
        return self.forward(seq, start, end)[1]

    def viterbi(self, seq: Sequence, start: int = 0,
                end: Optional[int] = None) -> Tuple[List[int], float]:
        """
        Best parse of the span.

        Returns:
            path: State indices visited, including silent states
            log_prob: Log-score of the path (-inf and an empty path if the
                span cannot be parsed)
        """
        start, end = self._span(seq, start, end)
        log_emit = self._log_emissions(seq, start, end)
        child_state, descendant, log_trans, consumes = self._compiled()
        vit, backptr = _viterbi_numba(log_emit, child_state, descendant, log_trans,
                                      consumes, self.transition.silent_order,
                                      self._final_elements)
        e = self.transition.start
        score = float(vit[0, e])
        if score == -np.inf:
            return [], score
        path = []
        layer = 0
        while True:
            c = backptr[layer, e]
            if c == -1:
                break
            path.append(int(child_state[e, c]))
            layer += int(consumes[e, c])
            e = int(descendant[e, c])
        return path, score

    def predict(self, seq: Sequence) -> np.ndarray:
        """Viterbi path restricted to emitting states (one entry per symbol)."""
        path, _ = self.viterbi(seq)
        return np.array([s for s in path if not self.states[s].silent], dtype=np.int64)

    def state_posteriors(self, seq: Sequence, start: int = 0,
                         end: Optional[int] = None) -> np.ndarray:
        """
        Posterior probability that symbol l was emitted by state s.

        Returns:
            (T, n_states) array; rows sum to 1 for a parseable span
        """
        start, end = self._span(seq, start, end)
        _, emit_weights, _ = self._expected_counts(seq, start, end, 1.0)
        return emit_weights

    def _expected_counts(self, seq, start, end, weight):
        log_emit = self._log_emissions(seq, start, end)
        child_state, descendant, log_trans, consumes = self._compiled()
        order = self.transition.silent_order
        fwd = _forward_numba(log_emit, child_state, descendant, log_trans, consumes,
                             order, self.transition.start)
        bwd = _backward_numba(log_emit, child_state, descendant, log_trans, consumes,
                              order, self._final_elements)
        final = self._final_elements.astype(bool)
        fwd_total = float(logsumexp(fwd[-1, final])) if final.any() else -np.inf
        bwd_total = float(bwd[0, self.transition.start])
        if fwd_total == -np.inf and bwd_total == -np.inf:
            raise ZeroLikelihoodError(
                f"Sequence {getattr(seq, 'name', None)!r} has probability zero under the model")
        if not np.isclose(fwd_total, bwd_total, rtol=1e-9, atol=1e-6):
            raise RecursionMismatchError(
                f"Forward ({fwd_total}) and backward ({bwd_total}) totals disagree")
        trans_counts, emit_weights = _expected_counts_numba(
            fwd, bwd, log_emit, child_state, descendant, log_trans, consumes,
            bwd_total, float(weight))
        return trans_counts, emit_weights, bwd_total

    def sample_path(self, seq: Sequence, rng: Optional[np.random.Generator] = None,
                    start: int = 0, end: Optional[int] = None) -> Tuple[List[int], float]:
        """
        Draw a parse from its posterior (forward filtering, backward sampling
        run on the suffix lattice).

        Returns:
            path: Sampled state indices, including silent states
            log_prob: Total log-likelihood of the span
        """
        rng = np.random.default_rng() if rng is None else rng
        start, end = self._span(seq, start, end)
        log_emit = self._log_emissions(seq, start, end)
        child_state, descendant, log_trans, consumes = self._compiled()
        bwd = _backward_numba(log_emit, child_state, descendant, log_trans, consumes,
                              self.transition.silent_order, self._final_elements)
        e = self.transition.start
        log_prob = float(bwd[0, e])
        if log_prob == -np.inf:
            raise ZeroLikelihoodError("Cannot sample a parse of a zero-probability span")
        T = log_emit.shape[0]
        path = []
        layer = 0
        while True:
            options = [0.0 if (layer == T and self._final_elements[e]) else -np.inf]
            slots = []
            for c in range(child_state.shape[1]):
                s = child_state[e, c]
                if s < 0:
                    break
                d = descendant[e, c]
                if consumes[e, c]:
                    if layer == T:
                        continue
                    val = log_trans[e, c] + log_emit[layer, s] + bwd[layer + 1, d]
                else:
                    val = log_trans[e, c] + bwd[layer, d]
                options.append(val)
                slots.append(c)
            options = np.array(options)
            probs = np.exp(options - logsumexp(options))
            pick = rng.choice(len(options), p=probs / probs.sum())
            if pick == 0:
                break
            c = slots[pick - 1]
            path.append(int(child_state[e, c]))
            layer += int(consumes[e, c])
            e = int(descendant[e, c])
        return path, log_prob

    def get_log_prob_for_path(self, path: SequenceType[int], seq: Sequence,
                              start: int = 0, end: Optional[int] = None) -> float:
        """Joint log-probability of a complete parse; -inf if it is impossible."""
        start, end = self._span(seq, start, end)
        log_emit = self._log_emissions(seq, start, end)
        T = end - start + 1
        score = 0.0
        e = self.transition.start
        layer = 0
        for s in path:
            c, nxt = self.transition.step(e, s)
            if c < 0:
                return -np.inf
            score += self.transition.elements[e].log_probs[c]
            if not self.states[s].silent:
                if layer >= T:
                    return -np.inf
                score += log_emit[layer, s]
                layer += 1
            e = nxt
        if layer != T or not self._final_elements[e]:
            return -np.inf
        return float(score)

    # -------------------------------------------------------------------------
    # Sufficient statistics
    # -------------------------------------------------------------------------

    def add_baum_welch_statistics(self, seq: Sequence, weight: float = 1.0,
                                  start: int = 0, end: Optional[int] = None) -> float:
        """Add posterior-weighted counts for one sequence; returns its log-likelihood."""
        start, end = self._span(seq, start, end)
        trans_counts, emit_weights, log_prob = self._expected_counts(seq, start, end, weight)
        self.transition.add_counts(trans_counts)
        for i, state in enumerate(self.states):
            if not state.silent:
                state.emission.add_weights_to_statistic(
                    state.forward, start, emit_weights[:, i], seq)
        return log_prob

    def add_viterbi_statistics(self, seq: Sequence, weight: float = 1.0,
                               start: int = 0, end: Optional[int] = None) -> float:
        """Add hard counts of the best parse; returns its log-score."""
        path, score = self.viterbi(seq, start, end)
        if score == -np.inf:
            raise ZeroLikelihoodError(
                f"Sequence {getattr(seq, 'name', None)!r} has no valid parse")
        self.add_path_to_statistic(path, seq, weight, start)
        return score

    def add_path_to_statistic(self, path: SequenceType[int], seq: Sequence,
                              weight: float = 1.0, start: int = 0):
        """Add `weight` for every transition and emission used by `path`."""
        e = self.transition.start
        pos = start
        for s in path:
            c, nxt = self.transition.step(e, s)
            if c < 0:
                raise ForbiddenTransitionError(
                    f"Path uses forbidden transition "
                    f"{self.transition.elements[e].context} -> {s}")
            self.transition.elements[e].add_to_statistic(c, weight)
            state = self.states[s]
            if not state.silent:
                if pos >= len(seq):
                    raise InvalidLengthError("Path emits past the end of the sequence")
                state.add_to_statistic(pos, pos, weight, seq)
                pos += 1
            e = nxt

    def reset_statistics(self):
        self.transition.reset_statistic()
        for emission in self.emissions:
            emission.reset_statistic()

    def estimate_from_statistics(self):
        self.transition.estimate_from_statistic()
        for emission in self.emissions:
            emission.estimate_from_statistic()

    def draw_parameters_from_statistics(self, rng: Optional[np.random.Generator] = None):
        rng = np.random.default_rng() if rng is None else rng
        self.transition.draw_parameters_from_statistic(rng)
        for emission in self._sampling_emissions():
            emission.draw_parameters_from_statistic(rng)

    def _sampling_emissions(self) -> List[SamplingEmission]:
        for emission in self.emissions:
            if not isinstance(emission, SamplingEmission):
                raise TypeError(f"{type(emission).__name__} does not support sampling")
        return self.emissions

    def get_log_gamma_score_from_statistics(self) -> float:
        return (self.transition.get_log_gamma_score_from_statistic()
                + sum(e.get_log_gamma_score_from_statistic() for e in self._sampling_emissions()))

    def get_log_posterior_from_statistics(self) -> float:
        return (self.transition.get_log_posterior_from_statistic()
                + sum(e.get_log_posterior_from_statistic() for e in self._sampling_emissions()))

    def get_log_proposal_posterior_from_statistics(self) -> float:
        return (self.transition.get_log_posterior_from_statistic()
                - self.transition.get_log_gamma_score_from_statistic()
                + sum(e.get_log_proposal_posterior_from_statistic()
                      for e in self._sampling_emissions()))

    def get_log_importance_weight(self, proposal: 'HigherOrderHMM') -> float:
        """Sum of per-component log target - log proposal at the shared parameters."""
        return (self.transition.get_log_importance_weight(proposal.transition)
                + sum(mine.get_log_importance_weight(theirs) for mine, theirs
                      in zip(self._sampling_emissions(), proposal.emissions)))

    def scale_statistics(self, factor: float):
        self.transition.scale_statistic(factor)
        for emission in self._sampling_emissions():
            emission.scale_statistic(factor)

    def join_statistics(self, *others: 'HigherOrderHMM'):
        """Sum the statistics of structurally identical models into this one."""
        for other in others:
            if len(other.emissions) != len(self.emissions):
                raise ValueError("Cannot join statistics of models with different emissions")
        self.transition.join_statistics(*(o.transition for o in others))
        for i, emission in enumerate(self.emissions):
            emission.join_statistics(*(o.emissions[i] for o in others))

    def set_parameters(self, other: 'HigherOrderHMM'):
        self.transition.set_parameters(other.transition)
        for mine, theirs in zip(self.emissions, other.emissions):
            mine.set_parameters(theirs)

    def initialize_randomly(self, rng: Optional[np.random.Generator] = None):
        rng = np.random.default_rng() if rng is None else rng
        self.transition.initialize_randomly(rng)
        for emission in self.emissions:
            emission.initialize_randomly(rng)

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            'model_type': 'HigherOrderHMM',
            'name': self.name,
            'states': [
                {'name': s.name, 'emission': self._emission_slot[i], 'forward': s.forward}
                for i, s in enumerate(self.states)
            ],
            'emissions': [e.to_dict() for e in self.emissions],
            'transition': self.transition.to_dict(),
            'final_states': list(self.final_states),
        }

    def __repr__(self) -> str:
        return (f"HigherOrderHMM(name={self.name!r}, states={self.n_states}, "
                f"emissions={len(self.emissions)}, order={self.transition.order})")


def build_model(states: SequenceType[State], elements, final_states=None,
                name: Optional[str] = None) -> HigherOrderHMM:
    """Build the Transition from `elements` and the states' silence flags."""
    transition = Transition(elements, [s.silent for s in states])
    return HigherOrderHMM(states, transition, final_states=final_states, name=name)


