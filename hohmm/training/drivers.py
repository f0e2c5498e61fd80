"""
hohmm training drivers

Provides:
1. TrainerState: Idle -> Initialized -> Iterating -> Converged | MaxIterationsReached
2. TrainingMonitor: objective history and diagnostics
3. BaumWelch: EM with posterior-weighted statistics
4. ViterbiTrainer: hard-assignment EM with best-path statistics
5. train_with_restarts: several random initialisations, best model kept

A decrease of the objective is reported with LikelihoodDecreaseWarning and
recorded in the monitor; the iteration is kept as is.
"""

import copy
import enum
import warnings
from typing import List, Optional, Sequence as SequenceType, Tuple, Type

import numpy as np
from tqdm import tqdm

from hohmm.core.errors import LikelihoodDecreaseWarning
from hohmm.core.hmm import HigherOrderHMM
from hohmm.core.sequence import Sequence
from hohmm.training.parallel import accumulate_statistics


class TrainerState(enum.Enum):
    IDLE = 'idle'
    INITIALIZED = 'initialized'
    ITERATING = 'iterating'
    CONVERGED = 'converged'
    MAX_ITERATIONS_REACHED = 'max_iterations_reached'
    STOPPED = 'stopped'


class TrainingMonitor:
    """Tracks training progress."""
    def __init__(self):
        self.history: List[float] = []
        self.decreases: List[int] = []
        self.converged = False

    @property
    def n_iter(self) -> int:
        return len(self.history)

    def report(self, value: float, tol: float) -> float:
        """Record one objective value; returns the improvement over the previous one."""
        self.history.append(value)
        if len(self.history) < 2:
            return np.inf
        improvement = value - self.history[-2]
        if improvement < -tol:
            self.decreases.append(len(self.history) - 1)
            warnings.warn(
                f"Training objective decreased from {self.history[-2]:.6g} to {value:.6g} "
                f"at iteration {len(self.history) - 1}",
                LikelihoodDecreaseWarning,
                stacklevel=3,
            )
        return improvement


class _EMTrainer:
    """Shared iterate/fit loop; subclasses pick the statistic mode."""

    mode = 'baum-welch'

    def __init__(self, model: HigherOrderHMM, n_iter: int = 100, tol: float = 1e-4,
                 n_jobs: int = 1, random_state: Optional[int] = None,
                 verbose: bool = False):
        if n_iter < 1:
            raise ValueError("n_iter must be at least 1")
        self.model = model
        self.n_iter = n_iter
        self.tol = tol
        self.n_jobs = n_jobs
        self.rng = np.random.default_rng(random_state)
        self.verbose = verbose
        self.state = TrainerState.IDLE
        self.monitor_ = TrainingMonitor()
        self._stop_requested = False

    def initialize(self, randomize: bool = True) -> 'HigherOrderHMM':
        """Optionally draw starting parameters from the priors; resets the history."""
        if randomize:
            self.model.initialize_randomly(self.rng)
        self.model.reset_statistics()
        self.monitor_ = TrainingMonitor()
        self._stop_requested = False
        self.state = TrainerState.INITIALIZED
        return self.model

    def stop(self):
        """Ask fit() to stop at the next iteration boundary."""
        self._stop_requested = True

    def iterate(self, sequences: SequenceType[Sequence],
                weights: Optional[SequenceType[float]] = None) -> float:
        """
        One E-step + M-step.

        Returns:
            Objective under the parameters used for the E-step
        """
        if self.state == TrainerState.IDLE:
            self.initialize(randomize=False)
        self.state = TrainerState.ITERATING
        objective = accumulate_statistics(self.model, sequences, weights,
                                          mode=self.mode, n_jobs=self.n_jobs)
        self.model.estimate_from_statistics()
        return objective

    def fit(self, sequences: SequenceType[Sequence],
            weights: Optional[SequenceType[float]] = None,
            desc: Optional[str] = None) -> HigherOrderHMM:
        """
        Iterate until the improvement drops below tol or n_iter is reached.

        Returns:
            The trained model (trained in place)
        """
        if self.state not in (TrainerState.INITIALIZED, TrainerState.ITERATING):
            self.initialize(randomize=False)
        sequences = list(sequences)

        iterator = range(self.n_iter)
        if self.verbose:
            iterator = tqdm(iterator, desc=desc or type(self).__name__, leave=False)

        for iteration in iterator:
            objective = self.iterate(sequences, weights)
            improvement = self.monitor_.report(objective, self.tol)

            if self.verbose and hasattr(iterator, 'set_postfix'):
                iterator.set_postfix({'logprob': f'{objective:.4e}',
                                      'delta': f'{improvement:.2e}'})

            if iteration > 0 and improvement < self.tol:
                self.monitor_.converged = True
                self.state = TrainerState.CONVERGED
                break
            if self._stop_requested:
                self.state = TrainerState.STOPPED
                break
        else:
            self.state = TrainerState.MAX_ITERATIONS_REACHED

        if self.verbose:
            print(f"{type(self).__name__}: {self.state.value} after "
                  f"{self.monitor_.n_iter} iterations, objective {self.monitor_.history[-1]:.6g}")
        return self.model


class BaumWelch(_EMTrainer):
    """
    Baum-Welch (EM) training.

    Each iteration resets all statistics, adds posterior transition/emission
    weights from a forward-backward pass over every sequence and re-estimates
    all parameters from statistic + hyperparameters.

    Args:
        model: Model trained in place
        n_iter: Maximum number of iterations
        tol: Minimum log-likelihood improvement to keep iterating
        n_jobs: Worker processes for the E-step (1 = in-process)
        random_state: Seed for random initialisation
        verbose: Show a progress bar and a summary line
    """
    mode = 'baum-welch'


class ViterbiTrainer(_EMTrainer):
    """Viterbi training: hard counts from the best parse of each sequence."""
    mode = 'viterbi'


def train_with_restarts(model: HigherOrderHMM, sequences: SequenceType[Sequence],
                        weights: Optional[SequenceType[float]] = None,
                        trainer_cls: Type[_EMTrainer] = BaumWelch,
                        n_starts: int = 5, seed: int = 0,
                        **trainer_kwargs) -> Tuple[HigherOrderHMM, List[Tuple[HigherOrderHMM, float]]]:
    """
    Train several randomly initialised copies of `model` and keep the best one.

    Args:
        model: Template model (left untouched)
        sequences: Training sequences
        weights: Per-sequence weights
        trainer_cls: BaumWelch or ViterbiTrainer
        n_starts: Number of random initialisations
        seed: Start i uses random_state seed + i
        **trainer_kwargs: Passed to the trainer (n_iter, tol, n_jobs, verbose)

    Returns:
        (best_model, [(model, final objective), ...])
    """
    best_model = None
    best_score = -np.inf
    all_models = []
    sequences = list(sequences)

    pbar = tqdm(range(n_starts), desc="Training restarts",
                disable=not trainer_kwargs.get('verbose', False))
    for i in pbar:
        candidate = copy.deepcopy(model)
        trainer = trainer_cls(candidate, random_state=seed + i, **trainer_kwargs)
        trainer.initialize(randomize=True)
        trainer.fit(sequences, weights, desc=f"Init {i + 1}")
        score = trainer.monitor_.history[-1]
        all_models.append((candidate, score))
        if best_model is None or score > best_score:
            best_score = score
            best_model = candidate

    return best_model, all_models
