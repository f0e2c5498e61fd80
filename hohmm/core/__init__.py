"""Core model components: sequences, emissions, states, transitions and recursions."""

from hohmm.core.emissions import DiscreteEmission, Emission, GaussianEmission, SamplingEmission
from hohmm.core.hmm import HigherOrderHMM, build_model
from hohmm.core.model_io import load_model, save_model, load_model_with_metadata
from hohmm.core.phylo import PhyloEmission, PhyloNode, PhyloTree
from hohmm.core.sequence import DNA, Alignment, Alphabet, Sequence
from hohmm.core.states import State
from hohmm.core.transition import Transition, TransitionElement
