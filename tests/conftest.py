"""
Shared pytest fixtures for hohmm tests.
"""
import pytest
import numpy as np

from hohmm.core.emissions import DiscreteEmission, GaussianEmission
from hohmm.core.hmm import build_model
from hohmm.core.phylo import PhyloEmission, PhyloTree
from hohmm.core.sequence import Alignment, Sequence
from hohmm.core.states import State
from hohmm.core.transition import TransitionElement


@pytest.fixture
def scenario_model():
    """
    Start -> Match (0.9) | End (0.1); Match -> Match (0.7) | End (0.3).
    Match emits 0 with probability 0.8 over a binary alphabet; Start and End are silent.
    """
    match = DiscreteEmission(2, probs=[0.8, 0.2])
    states = [State('Start'), State('Match', match), State('End')]
    elements = [
        TransitionElement((), [0], probs=[1.0]),
        TransitionElement((0,), [1, 2], probs=[0.9, 0.1]),
        TransitionElement((1,), [1, 2], probs=[0.7, 0.3]),
    ]
    return build_model(states, elements, name='scenario')


@pytest.fixture
def two_state_model():
    """Fully connected first-order model over 4 symbols, with priors for sampling."""
    low = DiscreteEmission(4, ess=4.0, probs=[0.1, 0.2, 0.3, 0.4])
    high = DiscreteEmission(4, ess=4.0, probs=[0.4, 0.3, 0.2, 0.1])
    states = [State('low', low), State('high', high)]
    elements = [
        TransitionElement((), [0, 1], probs=[0.5, 0.5], ess=2.0),
        TransitionElement((0,), [0, 1], probs=[0.9, 0.1], ess=2.0),
        TransitionElement((1,), [0, 1], probs=[0.2, 0.8], ess=2.0),
    ]
    return build_model(states, elements, name='two-state')


@pytest.fixture
def discrete_sequences():
    rng = np.random.default_rng(7)
    seqs = []
    for i in range(6):
        first = rng.choice(4, size=8, p=[0.1, 0.2, 0.3, 0.4])
        second = rng.choice(4, size=8, p=[0.4, 0.3, 0.2, 0.1])
        seqs.append(Sequence(np.concatenate([first, second]), name=f"seq{i}"))
    return seqs


@pytest.fixture
def gaussian_model():
    """Two Gaussian states with Normal-Gamma priors."""
    left = GaussianEmission(mean=-1.0, precision=1.0, prior_mean=0.0, ess=1.0, shape=2.0, rate=2.0)
    right = GaussianEmission(mean=1.0, precision=1.0, prior_mean=0.0, ess=1.0, shape=2.0, rate=2.0)
    states = [State('left', left), State('right', right)]
    elements = [
        TransitionElement((), [0, 1], probs=[0.5, 0.5], ess=2.0),
        TransitionElement((0,), [0, 1], probs=[0.8, 0.2], ess=2.0),
        TransitionElement((1,), [0, 1], probs=[0.2, 0.8], ess=2.0),
    ]
    return build_model(states, elements, name='gaussian')


@pytest.fixture
def gaussian_sequences():
    rng = np.random.default_rng(11)
    return [Sequence(np.concatenate([rng.normal(-2, 0.5, 10), rng.normal(2, 0.5, 10)]),
                     name=f"cont{i}") for i in range(4)]


@pytest.fixture
def star_tree():
    return PhyloTree.star(['human', 'mouse'], 0.3)


@pytest.fixture
def alignment():
    return Alignment.from_strings({'human': 'ACGTTA', 'mouse': 'ACGATA'}, name='aln')


@pytest.fixture
def phylo_model(star_tree):
    conserved = PhyloEmission(star_tree, 4, ess=4.0)
    states = [State('conserved', conserved)]
    elements = [
        TransitionElement((), [0], probs=[1.0]),
        TransitionElement((0,), [0], probs=[1.0]),
    ]
    return build_model(states, elements, name='phylo')
