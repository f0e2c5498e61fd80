"""
Higher-order transitions.

A TransitionElement holds the successor distribution for one context (tuple
of previously visited state indices). A Transition owns all elements, links
every (context, successor) pair to the context reached next, and checks the
silent-state structure once at build time.

Back-off: the context reached from `context` via `child` is
`(context + (child,))[-order:]`, resolved to its longest non-empty suffix that
has an element. If none exists a forbidden element (no successors) is created
for the full context. A forbidden element scores -inf and never backs off.
"""

from collections import deque
from typing import Any, Dict, List, Optional, Sequence as SequenceType, Tuple

import numpy as np

from hohmm.core.emissions import (
    dirichlet_gamma_score,
    dirichlet_log_posterior,
    log_dirichlet_sample,
    normalize_log,
)
from hohmm.core.errors import (
    ForbiddenTransitionError,
    StatisticNotResetError,
    TopologyError,
)


class TransitionElement:
    """
    Successor distribution for one context.

    Args:
        context: Previously visited state indices, oldest first
        states: Allowed successor state indices (empty = forbidden context)
        hyperparameters: Dirichlet pseudo-counts, one per successor
        probs: Initial successor probabilities
        ess: Equivalent sample size spread uniformly if hyperparameters is None
    """

    def __init__(self, context: SequenceType[int], states: SequenceType[int] = (),
                 hyperparameters=None, probs=None, ess: float = 0.0):
        self.context: Tuple[int, ...] = tuple(int(s) for s in context)
        states = [int(s) for s in states]
        if len(set(states)) != len(states):
            raise TopologyError(f"Duplicate successor in context {self.context}: {states}")
        order = np.argsort(states, kind='stable')
        self.states = np.array(states, dtype=np.int64)[order]
        n = len(states)

        if hyperparameters is None:
            self.hyperparameters = np.full(n, ess / n if n else 0.0)
        else:
            hyper = np.array(hyperparameters, dtype=float)
            if hyper.shape != (n,) or (hyper < 0).any():
                raise ValueError(
                    f"Context {self.context}: need {n} non-negative hyperparameters")
            self.hyperparameters = hyper[order]

        if probs is None:
            self.log_probs = np.full(n, -np.log(n) if n else 0.0)
        else:
            p = np.array(probs, dtype=float)
            if p.shape != (n,) or (p < 0).any() or (n and not np.isclose(p.sum(), 1.0)):
                raise ValueError(
                    f"Context {self.context}: probs must be a distribution over {n} successors")
            with np.errstate(divide='ignore'):
                self.log_probs = np.log(p[order])

        self.statistic = np.zeros(n)
        self._statistic_consumed = False

    @property
    def forbidden(self) -> bool:
        return self.states.shape[0] == 0

    @property
    def probs(self) -> np.ndarray:
        return np.exp(self.log_probs)

    def child_index(self, state: int) -> int:
        """Position of `state` among the successors, or -1 if not allowed."""
        i = int(np.searchsorted(self.states, state))
        if i < self.states.shape[0] and self.states[i] == state:
            return i
        return -1

    def get_log_score_for(self, child: int) -> float:
        i = self.child_index(child)
        return float(self.log_probs[i]) if i >= 0 else -np.inf

    def add_to_statistic(self, child_index: int, weight: float):
        self.statistic[child_index] += weight

    def reset_statistic(self):
        self.statistic.fill(0.0)
        self._statistic_consumed = False

    def _consume_statistic(self):
        if self._statistic_consumed:
            raise StatisticNotResetError(
                f"Transition context {self.context}: statistic already consumed")
        self._statistic_consumed = True

    def estimate_from_statistic(self):
        self._consume_statistic()
        if not self.forbidden:
            self.log_probs = normalize_log(self.statistic + self.hyperparameters)

    def draw_parameters_from_statistic(self, rng: np.random.Generator):
        self._consume_statistic()
        if not self.forbidden:
            self.log_probs = log_dirichlet_sample(self.statistic + self.hyperparameters, rng)

    def get_log_gamma_score_from_statistic(self) -> float:
        return dirichlet_gamma_score(self.statistic, self.hyperparameters)

    def get_log_posterior_from_statistic(self) -> float:
        return dirichlet_log_posterior(self.log_probs, self.statistic, self.hyperparameters)

    def get_log_importance_weight(self, proposal: 'TransitionElement') -> float:
        if np.array_equal(self.statistic, proposal.statistic):
            return self.get_log_gamma_score_from_statistic()
        return (self.get_log_posterior_from_statistic()
                - proposal.get_log_posterior_from_statistic()
                + proposal.get_log_gamma_score_from_statistic())

    def scale_statistic(self, factor: float):
        self.statistic *= factor

    def set_parameters(self, other: 'TransitionElement'):
        self.log_probs = other.log_probs.copy()

    def initialize_randomly(self, rng: np.random.Generator):
        if not self.forbidden:
            alpha = self.hyperparameters
            self.log_probs = log_dirichlet_sample(
                alpha if alpha.sum() > 0 else np.ones_like(alpha), rng)
        self.reset_statistic()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'context': list(self.context),
            'states': self.states.tolist(),
            'hyperparameters': self.hyperparameters.tolist(),
            'probs': self.probs.tolist(),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'TransitionElement':
        return cls(d['context'], d['states'],
                   hyperparameters=d.get('hyperparameters'), probs=d.get('probs'))

    def __repr__(self) -> str:
        return f"TransitionElement(context={self.context}, states={self.states.tolist()})"


class Transition:
    """
    Complete higher-order transition structure.

    Args:
        elements: Explicit elements; exactly one must have the empty context
            (the start element)
        is_silent: Silence flag per state index

    Raises:
        TopologyError: duplicate contexts, unknown states, no start element,
            a non-start context that no transition leads into, or a cycle of
            silent states
    """

    def __init__(self, elements: SequenceType[TransitionElement],
                 is_silent: SequenceType[bool]):
        self.elements: List[TransitionElement] = list(elements)
        self.is_silent = np.array(is_silent, dtype=bool)
        self.n_explicit = len(self.elements)
        n_states = self.is_silent.shape[0]

        self._index: Dict[Tuple[int, ...], int] = {}
        for i, element in enumerate(self.elements):
            if element.context in self._index:
                raise TopologyError(f"Duplicate transition context {element.context}")
            used = list(element.context) + element.states.tolist()
            if any(s < 0 or s >= n_states for s in used):
                raise TopologyError(
                    f"Context {element.context} refers to a state outside 0..{n_states - 1}")
            self._index[element.context] = i
        if () not in self._index:
            raise TopologyError("No start element (empty context) defined")
        self.start = self._index[()]
        self.order = max(len(e.context) for e in self.elements)

        self.descendants: List[np.ndarray] = []
        for element in self.elements[:self.n_explicit]:
            self.descendants.append(np.array(
                [self._link(element.context + (int(s),)) for s in element.states],
                dtype=np.int64))
        for _ in range(self.n_explicit, len(self.elements)):
            self.descendants.append(np.zeros(0, dtype=np.int64))

        in_degree = np.bincount(np.concatenate(self.descendants),
                                minlength=len(self.elements))
        in_degree[self.start] = 1
        unreachable = [self.elements[i].context for i in np.flatnonzero(in_degree == 0)]
        if unreachable:
            raise TopologyError(f"No transition leads into contexts {unreachable}")

        self.silent_order = self._topological_order()

    def resolve(self, context: SequenceType[int]) -> Optional[int]:
        """Index of the element used for `context` (longest defined suffix), or None."""
        context = tuple(context)
        if self.order > 0:
            context = context[-self.order:]
        else:
            context = ()
        if not context:
            return self.start
        for k in range(len(context), 0, -1):
            i = self._index.get(context[-k:])
            if i is not None:
                return i
        return None

    def _link(self, context: Tuple[int, ...]) -> int:
        context = context[-self.order:] if self.order > 0 else ()
        i = self.resolve(context)
        if i is None:
            i = len(self.elements)
            self.elements.append(TransitionElement(context))
            self._index[context] = i
        return i

    def _topological_order(self) -> np.ndarray:
        """Kahn's algorithm over silent edges; rejects silent cycles."""
        n = len(self.elements)
        edges: List[List[int]] = [[] for _ in range(n)]
        in_degree = np.zeros(n, dtype=np.int64)
        for e, element in enumerate(self.elements):
            for c, s in enumerate(element.states):
                if self.is_silent[s]:
                    d = int(self.descendants[e][c])
                    edges[e].append(d)
                    in_degree[d] += 1
        queue = deque(i for i in range(n) if in_degree[i] == 0)
        order = []
        while queue:
            e = queue.popleft()
            order.append(e)
            for d in edges[e]:
                in_degree[d] -= 1
                if in_degree[d] == 0:
                    queue.append(d)
        if len(order) < n:
            cycle = [self.elements[i].context for i in range(n) if in_degree[i] > 0]
            raise TopologyError(f"Cycle of silent states among contexts {cycle}")
        return np.array(order, dtype=np.int64)

    def step(self, element: int, child: int) -> Tuple[int, int]:
        """(slot, next element) for moving from `element` into state `child`; (-1, -1) if forbidden."""
        c = self.elements[element].child_index(child)
        if c < 0:
            return -1, -1
        return c, int(self.descendants[element][c])

    def compile(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Padded arrays for the recursion kernels.

        Returns:
            child_state: (E, C) successor state per slot, -1 padding
            descendant: (E, C) element reached per slot, -1 padding
            log_trans: (E, C) log transition probability, -inf padding
        """
        n = len(self.elements)
        width = max(1, max(e.states.shape[0] for e in self.elements))
        child_state = np.full((n, width), -1, dtype=np.int64)
        descendant = np.full((n, width), -1, dtype=np.int64)
        log_trans = np.full((n, width), -np.inf)
        for e, element in enumerate(self.elements):
            k = element.states.shape[0]
            child_state[e, :k] = element.states
            descendant[e, :k] = self.descendants[e]
            log_trans[e, :k] = element.log_probs
        return child_state, descendant, log_trans

    # -------------------------------------------------------------------------
    # Scoring and statistics
    # -------------------------------------------------------------------------

    def get_log_score_for(self, context: SequenceType[int], child: int) -> float:
        i = self.resolve(context)
        if i is None:
            return -np.inf
        return self.elements[i].get_log_score_for(child)

    def add_to_statistic(self, context: SequenceType[int], child: int, weight: float):
        i = self.resolve(context)
        c = self.elements[i].child_index(child) if i is not None else -1
        if c < 0:
            raise ForbiddenTransitionError(
                f"Transition {tuple(context)} -> {child} has probability zero")
        self.elements[i].add_to_statistic(c, weight)

    def add_counts(self, counts: np.ndarray):
        """Add an (E, C) matrix of expected counts laid out like compile()."""
        for e, element in enumerate(self.elements):
            k = element.states.shape[0]
            if k:
                element.statistic += counts[e, :k]

    def reset_statistic(self):
        for element in self.elements:
            element.reset_statistic()

    def estimate_from_statistic(self):
        for element in self.elements:
            element.estimate_from_statistic()

    def draw_parameters_from_statistic(self, rng: np.random.Generator):
        for element in self.elements:
            element.draw_parameters_from_statistic(rng)

    def get_log_gamma_score_from_statistic(self) -> float:
        return float(sum(e.get_log_gamma_score_from_statistic() for e in self.elements))

    def get_log_posterior_from_statistic(self) -> float:
        return float(sum(e.get_log_posterior_from_statistic() for e in self.elements))

    def get_log_importance_weight(self, proposal: 'Transition') -> float:
        return float(sum(e.get_log_importance_weight(p)
                         for e, p in zip(self.elements, proposal.elements)))

    def scale_statistic(self, factor: float):
        for element in self.elements:
            element.scale_statistic(factor)

    def join_statistics(self, *others: 'Transition'):
        for other in others:
            if len(other.elements) != len(self.elements):
                raise ValueError("Cannot join statistics of different transition structures")
            for mine, theirs in zip(self.elements, other.elements):
                mine.statistic += theirs.statistic

    def set_parameters(self, other: 'Transition'):
        for mine, theirs in zip(self.elements, other.elements):
            mine.set_parameters(theirs)

    def initialize_randomly(self, rng: np.random.Generator):
        for element in self.elements:
            element.initialize_randomly(rng)

    def to_dict(self) -> Dict[str, Any]:
        return {'elements': [e.to_dict() for e in self.elements[:self.n_explicit]]}

    def __repr__(self) -> str:
        return (f"Transition(order={self.order}, elements={self.n_explicit}, "
                f"forbidden_links={len(self.elements) - self.n_explicit})")
