"""
Phylogenetic emission.

Provides:
1. PhyloNode / PhyloTree: immutable rooted trees with named leaves and
   branch weights, parsed from Newick via dendropy
2. PhyloEmission: scores one alignment column per position by Felsenstein
   pruning. The stationary distribution pi is the emission's parameter
   vector

The weight w of a branch is the probability that a substitution happens along
it, the new symbol being drawn from pi:
    P(b | a, w) = (1 - w) * [a == b] + w * pi_b
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence as SequenceType, Tuple

import dendropy
import numpy as np

from hohmm.core.emissions import DiscreteEmission, dirichlet_log_posterior
from hohmm.core.sequence import Alignment


@dataclass(frozen=True)
class PhyloNode:
    """
    Tree node.

    Attributes:
        id: Index of the node within its tree
        name: Taxon name for leaves (internal names are kept but unused)
        branch_length: Weight of the branch leading to this node
        children: Child node ids
        parent: Parent node id (None for the root)
    """
    id: int
    name: Optional[str] = None
    branch_length: float = 0.0
    children: Tuple[int, ...] = ()
    parent: Optional[int] = None

    @property
    def is_leaf(self) -> bool:
        return len(self.children) == 0


class PhyloTree:
    """Immutable rooted tree; nodes are indexed by id and visited in postorder."""

    def __init__(self, nodes: SequenceType[PhyloNode], root: int):
        self.nodes: Tuple[PhyloNode, ...] = tuple(sorted(nodes, key=lambda n: n.id))
        if [n.id for n in self.nodes] != list(range(len(self.nodes))):
            raise ValueError("Node ids must be 0..n-1")
        self.root = root
        for node in self.nodes:
            if node.branch_length < 0:
                raise ValueError(f"Negative branch weight at node {node.id}")

        self.postorder: List[int] = []
        stack = [(root, False)]
        while stack:
            node_id, expanded = stack.pop()
            if expanded:
                self.postorder.append(node_id)
                continue
            stack.append((node_id, True))
            for child in reversed(self.nodes[node_id].children):
                stack.append((child, False))
        if len(self.postorder) != len(self.nodes):
            raise ValueError("Tree is not connected from its root")

        self.leaf_ids = [i for i in self.postorder if self.nodes[i].is_leaf]
        self.leaf_names = [self.nodes[i].name for i in self.leaf_ids]
        if any(not name for name in self.leaf_names):
            raise ValueError("Every leaf must be named")
        if len(set(self.leaf_names)) != len(self.leaf_names):
            raise ValueError("Leaf names must be unique")

    @classmethod
    def from_newick(cls, newick: str) -> 'PhyloTree':
        """Parse a Newick string; missing branch weights become 0."""
        tree = dendropy.Tree.get(data=newick, schema="newick",
                                 preserve_underscores=True)
        index = {node: i for i, node in enumerate(tree.postorder_node_iter())}
        nodes = []
        for node, i in index.items():
            if node.taxon is not None:
                name = node.taxon.label
            else:
                name = node.label
            nodes.append(PhyloNode(
                id=i,
                name=name,
                branch_length=float(node.edge_length) if node.edge_length else 0.0,
                children=tuple(index[c] for c in node.child_nodes()),
                parent=index[node.parent_node] if node.parent_node is not None else None,
            ))
        return cls(nodes, index[tree.seed_node])

    @classmethod
    def star(cls, leaf_names: SequenceType[str], branch_length: float) -> 'PhyloTree':
        """Star tree: every leaf hangs off the root with the same branch weight."""
        n = len(leaf_names)
        nodes = [PhyloNode(id=i, name=name, branch_length=branch_length, parent=n)
                 for i, name in enumerate(leaf_names)]
        nodes.append(PhyloNode(id=n, children=tuple(range(n))))
        return cls(nodes, n)

    def to_newick(self) -> str:
        def render(node_id: int) -> str:
            node = self.nodes[node_id]
            label = node.name or ''
            if not node.is_leaf:
                label = '(' + ','.join(render(c) for c in node.children) + ')' + label
            if node_id != self.root:
                label += f':{node.branch_length!r}'
            return label
        return render(self.root) + ';'

    def __repr__(self) -> str:
        return f"PhyloTree({len(self.leaf_ids)} leaves, {len(self.nodes)} nodes)"


class PhyloEmission(DiscreteEmission):
    """
    Emission over alignment columns scored against a fixed tree.

    The statistic holds leaf-symbol counts (driving estimation and the
    Dirichlet proposal) plus the weighted columns themselves, so the sampling
    target can re-score the evidence under the exact tree likelihood.

    Args:
        tree: Rooted tree whose leaf names match Alignment.taxa; branch
            weights must lie in [0, 1]
        n_symbols: Alphabet size
        ess: Equivalent sample size of the Dirichlet prior on pi
        hyperparameters: Explicit pseudo-counts (length n_symbols)
        probs: Initial stationary distribution pi
    """

    type_name = 'phylo'

    def __init__(self, tree: PhyloTree, n_symbols: int, ess: float = 0.0,
                 hyperparameters=None, probs=None):
        super().__init__(n_symbols, order=0, ess=ess,
                         hyperparameters=hyperparameters, probs=probs)
        for node_id in tree.postorder:
            if node_id != tree.root and tree.nodes[node_id].branch_length > 1.0:
                raise ValueError(
                    f"Branch weight of node {node_id} is not a probability: "
                    f"{tree.nodes[node_id].branch_length}")
        self.tree = tree
        self.evidence: Dict[Tuple[int, ...], float] = {}
        self._cache: Dict[Tuple[int, ...], float] = {}
        self._cache_params = None
        self._leaf_maps: Dict[Tuple[str, ...], np.ndarray] = {}

    def _leaf_columns(self, alignment: Alignment) -> np.ndarray:
        key = tuple(alignment.taxa)
        if key not in self._leaf_maps:
            position = {name: j for j, name in enumerate(alignment.taxa)}
            self._leaf_maps[key] = np.array(
                [position.get(name, -1) for name in self.tree.leaf_names], dtype=np.int64)
        return self._leaf_maps[key]

    def _columns(self, forward, start, end, seq) -> List[Tuple[int, ...]]:
        """Leaf-ordered symbol tuples for each position of the span."""
        if not isinstance(seq, Alignment):
            raise TypeError("PhyloEmission scores Alignment objects")
        self._check_span(start, end, seq)
        positions = np.arange(start, end + 1)
        if forward:
            values = seq.values[positions]
        else:
            values = seq.reverse_complement().values[len(seq) - 1 - positions]
        leaf_cols = self._leaf_columns(seq)
        present = leaf_cols >= 0
        cols = np.full((positions.shape[0], leaf_cols.shape[0]), -1, dtype=np.int64)
        cols[:, present] = values[:, leaf_cols[present]]
        return [tuple(int(v) for v in row) for row in cols]

    def column_log_likelihood(self, column: Tuple[int, ...]) -> float:
        """Pruning likelihood of one leaf-ordered column, cached per parameter set."""
        if self._cache_params is not self.log_probs:
            self._cache.clear()
            self._cache_params = self.log_probs
        if column not in self._cache:
            self._cache[column] = self._prune(column)
        return self._cache[column]

    def _prune(self, column: Tuple[int, ...]) -> float:
        pi = np.exp(self.log_probs[0])
        leaf_symbol = dict(zip(self.tree.leaf_ids, column))
        partial: Dict[int, Tuple[np.ndarray, float]] = {}
        for node_id in self.tree.postorder:
            node = self.tree.nodes[node_id]
            if node.is_leaf:
                symbol = leaf_symbol[node_id]
                if 0 <= symbol < self.n_symbols:
                    vec = np.zeros(self.n_symbols)
                    vec[symbol] = 1.0
                else:
                    vec = np.ones(self.n_symbols)
                partial[node_id] = (vec, 0.0)
                continue
            vec = np.ones(self.n_symbols)
            log_scale = 0.0
            for child in node.children:
                child_vec, child_scale = partial.pop(child)
                w = self.tree.nodes[child].branch_length
                vec *= (1.0 - w) * child_vec + w * (pi @ child_vec)
                log_scale += child_scale
            peak = vec.max()
            if peak <= 0:
                return -np.inf
            partial[node_id] = (vec / peak, log_scale + np.log(peak))
        root_vec, root_scale = partial[self.tree.root]
        lik = pi @ root_vec
        if lik <= 0:
            return -np.inf
        return float(np.log(lik) + root_scale)

    def get_log_scores(self, forward, start, end, seq):
        return np.array([self.column_log_likelihood(col)
                         for col in self._columns(forward, start, end, seq)], dtype=float)

    def add_to_statistic(self, forward, start, end, weight, seq):
        if weight < 0:
            raise ValueError("Statistic weights must be non-negative")
        for col in self._columns(forward, start, end, seq):
            self._add_column(col, weight)

    def add_weights_to_statistic(self, forward, start, weights, seq):
        weights = np.asarray(weights, dtype=float)
        cols = self._columns(forward, start, start + weights.shape[0] - 1, seq)
        for col, w in zip(cols, weights):
            if w > 0:
                self._add_column(col, w)

    def _add_column(self, column, weight):
        self.evidence[column] = self.evidence.get(column, 0.0) + weight
        for symbol in column:
            if 0 <= symbol < self.n_symbols:
                self.statistic[0, symbol] += weight

    def _clear_statistic(self):
        super()._clear_statistic()
        self.evidence.clear()

    def join_statistics(self, *others):
        super().join_statistics(*others)
        for other in others:
            for col, w in other.evidence.items():
                self.evidence[col] = self.evidence.get(col, 0.0) + w

    def get_log_posterior_from_statistic(self):
        log_prior = dirichlet_log_posterior(
            self.log_probs[0], np.zeros(self.n_symbols), self.hyperparameters[0])
        log_like = sum(w * self.column_log_likelihood(col)
                       for col, w in self.evidence.items())
        return float(log_prior + log_like)

    def get_log_proposal_posterior_from_statistic(self):
        # Dirichlet posterior of the leaf counts
        return (DiscreteEmission.get_log_posterior_from_statistic(self)
                - self.get_log_gamma_score_from_statistic())

    def get_log_importance_weight(self, proposal):
        return (self.get_log_posterior_from_statistic()
                - proposal.get_log_proposal_posterior_from_statistic())

    def _statistic_equals(self, other):
        return super()._statistic_equals(other) and self.evidence == other.evidence

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        del d['order']
        d['tree'] = self.tree.to_newick()
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'PhyloEmission':
        return cls(PhyloTree.from_newick(d['tree']), n_symbols=d['n_symbols'],
                   hyperparameters=d.get('hyperparameters'), probs=d.get('probs'))
