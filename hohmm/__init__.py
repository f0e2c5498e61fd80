"""
hohmm - higher-order hidden Markov models with silent states, trained by
Baum-Welch, Viterbi training or Metropolis-Hastings parameter sampling.
"""

__version__ = "1.0.0"

from hohmm.core.emissions import DiscreteEmission, GaussianEmission
from hohmm.core.hmm import HigherOrderHMM, build_model
from hohmm.core.model_io import load_model, save_model, load_model_with_metadata
from hohmm.core.phylo import PhyloEmission, PhyloTree
from hohmm.core.sequence import DNA, Alignment, Alphabet, Sequence
from hohmm.core.states import State
from hohmm.core.transition import Transition, TransitionElement
from hohmm.training.drivers import BaumWelch, ViterbiTrainer, train_with_restarts
from hohmm.training.sampler import MetropolisHastingsSampler
