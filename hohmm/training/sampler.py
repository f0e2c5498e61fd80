"""
hohmm Metropolis-Hastings parameter sampler

Each round samples a parse of every sequence from its posterior, accumulates
the parse statistics and proposes new parameters by drawing from the
(optionally tempered) conjugate posterior of a copy of those statistics. The
proposal is accepted with probability

    min(1, exp([log Q(theta) - log P(theta)] + [log P(theta') - log Q(theta')]))

where P is the target posterior and Q the proposal density. Rejected draws are
retried up to `max_retries` times before SamplerRetryExhaustedError is raised.

Several independent chains can be run side by side (`n_starts`); a burn-in
test then decides from their score histories how many leading rounds to drop.
The kept parameter samples of all chains are used for averaged likelihoods
and for decoding (viterbi_over_samples).
"""

import copy
from typing import List, Optional, Sequence as SequenceType, Tuple

import numpy as np
from scipy.special import logsumexp
from tqdm import tqdm

from hohmm.core.errors import SamplerRetryExhaustedError
from hohmm.core.hmm import HigherOrderHMM
from hohmm.core.sequence import Sequence
from hohmm.training.burn_in import VarianceRatioBurnInTest
from hohmm.training.drivers import TrainerState, TrainingMonitor

# Path choices for viterbi_over_samples
VITERBI_METHODS = ('max', 'max-gamma', 'sampling', 'sampling-gamma',
                   'max-and-sampling', 'max-and-sampling-gamma')


def acceptance_ratio(log_proposal_current: float, log_posterior_current: float,
                     log_posterior_proposed: float, log_proposal_proposed: float) -> float:
    """Metropolis-Hastings acceptance probability, clipped to [0, 1]."""
    log_ratio = ((log_proposal_current - log_posterior_current)
                 + (log_posterior_proposed - log_proposal_proposed))
    if np.isnan(log_ratio):
        return 0.0
    return float(np.exp(min(0.0, log_ratio)))


class MetropolisHastingsSampler:
    """
    Bayesian parameter sampler.

    Args:
        model: Model whose parameters are updated in place (chain 0)
        n_burn_in: Rounds discarded before samples are kept. With a
            burn_in_test this is the largest burn-in the test may ask for
        n_samples: Rounds whose parameters are kept in samples_
        max_retries: Proposal draws per round before giving up
        proposal_temperature: Statistic of the proposal is divided by this
            value; 1 proposes from the exact conjugate posterior
        n_starts: Number of independent chains; chains 1.. are copies of model
        burn_in_test: Decides the burn-in from the chains' histories
            (requires n_starts >= 2); None uses n_burn_in
        random_state: Seed
        verbose: Show a progress bar
    """

    def __init__(self, model: HigherOrderHMM, n_burn_in: int = 100, n_samples: int = 100,
                 max_retries: int = 100, proposal_temperature: float = 1.0,
                 n_starts: int = 1, burn_in_test: Optional[VarianceRatioBurnInTest] = None,
                 random_state: Optional[int] = None, verbose: bool = False):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if proposal_temperature <= 0:
            raise ValueError("proposal_temperature must be positive")
        if n_starts < 1:
            raise ValueError("n_starts must be at least 1")
        if burn_in_test is not None and n_starts < 2:
            raise ValueError("A burn-in test needs at least two chains")
        self.model = model
        self.n_burn_in = n_burn_in
        self.n_samples = n_samples
        self.max_retries = max_retries
        self.proposal_temperature = proposal_temperature
        self.n_starts = n_starts
        self.burn_in_test = burn_in_test
        self.rng = np.random.default_rng(random_state)
        self.verbose = verbose
        self.state = TrainerState.IDLE
        self.chains_: List[HigherOrderHMM] = [model]
        self.monitors_: List[TrainingMonitor] = [TrainingMonitor()]
        self.chain_attempts_: List[List[int]] = [[]]
        self.chain_samples_: List[List[HigherOrderHMM]] = [[]]
        self.burn_in_length_: Optional[int] = None
        self._stop_requested = False

    @property
    def monitor_(self) -> TrainingMonitor:
        """Monitor of the first chain."""
        return self.monitors_[0]

    @property
    def attempts_(self) -> List[int]:
        """Proposal draws per round of the first chain."""
        return self.chain_attempts_[0]

    @property
    def samples_(self) -> List[HigherOrderHMM]:
        """Kept parameter samples, chain by chain."""
        return [m for samples in self.chain_samples_ for m in samples]

    def initialize(self, randomize: bool = True) -> HigherOrderHMM:
        """
        Set up the chains. With randomize, every chain starts from its own
        random draw; otherwise all chains start from the model's parameters.
        """
        self.chains_ = [self.model] + [copy.deepcopy(self.model)
                                       for _ in range(self.n_starts - 1)]
        for chain in self.chains_:
            if randomize:
                chain.initialize_randomly(self.rng)
            chain.reset_statistics()
        self.monitors_ = [TrainingMonitor() for _ in self.chains_]
        self.chain_attempts_ = [[] for _ in self.chains_]
        self.chain_samples_ = [[] for _ in self.chains_]
        self.burn_in_length_ = None
        self._stop_requested = False
        self.state = TrainerState.INITIALIZED
        return self.model

    def stop(self):
        """Ask run() to stop after the current round."""
        self._stop_requested = True

    def sample_statistics(self, sequences: SequenceType[Sequence],
                          weights: Optional[SequenceType[float]] = None,
                          chain: int = 0) -> float:
        """Reset statistics and fill them from one sampled parse per sequence."""
        weights = [1.0] * len(sequences) if weights is None else list(weights)
        model = self.chains_[chain]
        model.reset_statistics()
        total = 0.0
        for seq, w in zip(sequences, weights):
            path, log_prob = model.sample_path(seq, self.rng)
            model.add_path_to_statistic(path, seq, w)
            total += w * log_prob
        return total

    def step(self, sequences: SequenceType[Sequence],
             weights: Optional[SequenceType[float]] = None, chain: int = 0) -> int:
        """
        One sampling round of one chain.

        Returns:
            Number of proposal draws needed until acceptance

        Raises:
            SamplerRetryExhaustedError: no draw accepted within max_retries
        """
        if self.state == TrainerState.IDLE:
            self.initialize(randomize=False)
        self.state = TrainerState.ITERATING
        model = self.chains_[chain]
        log_likelihood = self.sample_statistics(sequences, weights, chain)

        proposal = copy.deepcopy(model)
        if self.proposal_temperature != 1.0:
            proposal.scale_statistics(1.0 / self.proposal_temperature)
        # importance weights are log P - log Q at a shared parameter set
        log_weight_current = model.get_log_importance_weight(proposal)

        trial = copy.deepcopy(model)
        for attempt in range(1, self.max_retries + 1):
            candidate = copy.deepcopy(proposal)
            candidate.draw_parameters_from_statistics(self.rng)
            trial.set_parameters(candidate)
            log_weight_new = trial.get_log_importance_weight(candidate)
            ratio = acceptance_ratio(0.0, log_weight_current, log_weight_new, 0.0)
            if self.rng.uniform() < ratio:
                model.set_parameters(candidate)
                self.chain_attempts_[chain].append(attempt)
                self.monitors_[chain].history.append(log_likelihood)
                return attempt
        raise SamplerRetryExhaustedError(self.max_retries)

    def _round(self, sequences, weights, keep: bool):
        for chain, model in enumerate(self.chains_):
            self.step(sequences, weights, chain)
            if keep:
                snapshot = copy.deepcopy(model)
                snapshot.reset_statistics()
                self.chain_samples_[chain].append(snapshot)

    def _burn_in_done(self, rounds: int) -> bool:
        if rounds >= self.n_burn_in:
            return True
        if self.burn_in_test is None or rounds == 0:
            return False
        histories = [m.history for m in self.monitors_]
        return rounds > self.burn_in_test.length_of_burn_in(histories)

    def run(self, sequences: SequenceType[Sequence],
            weights: Optional[SequenceType[float]] = None) -> List[HigherOrderHMM]:
        """
        Burn in, then keep one parameter snapshot per round and chain.

        With a burn-in test, burn-in rounds continue until the test's length
        falls below the number of rounds done (at most n_burn_in rounds);
        rounds after the computed length are kept as samples too.

        Returns:
            The kept parameter samples (also in samples_)
        """
        if self.state not in (TrainerState.INITIALIZED, TrainerState.ITERATING):
            self.initialize(randomize=False)
        sequences = list(sequences)
        keep_burn_in = self.burn_in_test is not None
        pbar = tqdm(desc="MH sampling", leave=False, disable=not self.verbose)

        rounds = 0
        while not self._burn_in_done(rounds) and not self._stop_requested:
            self._round(sequences, weights, keep=keep_burn_in)
            rounds += 1
            self._progress(pbar)

        if keep_burn_in:
            histories = [m.history for m in self.monitors_]
            self.burn_in_length_ = min(self.burn_in_test.length_of_burn_in(histories), rounds)
            for samples in self.chain_samples_:
                del samples[:self.burn_in_length_]
        else:
            self.burn_in_length_ = rounds

        for _ in range(self.n_samples):
            if self._stop_requested:
                break
            self._round(sequences, weights, keep=True)
            self._progress(pbar)
        pbar.close()

        if self._stop_requested:
            self.state = TrainerState.STOPPED
        else:
            self.state = TrainerState.MAX_ITERATIONS_REACHED
        return self.samples_

    def _progress(self, pbar):
        pbar.update(1)
        if self.verbose:
            pbar.set_postfix({'loglik': f'{self.monitor_.history[-1]:.4e}',
                              'tries': self.attempts_[-1]})

    def log_likelihood(self, seq: Sequence) -> float:
        """Log of the likelihood averaged over the kept parameter samples."""
        samples = self.samples_
        if not samples:
            return self.model.get_log_score_for(seq)
        scores = np.array([m.get_log_score_for(seq) for m in samples])
        return float(logsumexp(scores) - np.log(len(scores)))

    def viterbi_over_samples(self, seq: Sequence,
                             method: str = 'max') -> Tuple[List[int], float]:
        """
        Best parse of `seq` over all kept parameter samples.

        For every sample, the 'max' methods take its Viterbi parse and the
        'sampling' methods draw a parse from its posterior; 'max-and-sampling'
        methods consider both. A parse is scored by its log-probability under
        the sample, or, for the '-gamma' methods, by the gamma score of the
        parse's statistics (independent of the sampled parameters).

        Returns:
            (path, score) of the best-scoring parse; ties keep the first one
        """
        if method not in VITERBI_METHODS:
            raise ValueError(f"Unknown method {method!r}; choose from {VITERBI_METHODS}")
        samples = self.samples_
        if not samples:
            raise ValueError("No parameter samples; call run() first")
        use_max = method.startswith('max')
        use_sampling = 'sampling' in method
        gamma = method.endswith('gamma')

        best_path: List[int] = []
        best_score = -np.inf
        for model in samples:
            candidates = []
            if use_sampling:
                path, _ = model.sample_path(seq, self.rng)
                candidates.append((path, None))
            if use_max:
                path, score = model.viterbi(seq)
                if score > -np.inf:
                    candidates.append((path, score))
            for path, score in candidates:
                if gamma:
                    model.reset_statistics()
                    model.add_path_to_statistic(path, seq)
                    score = model.get_log_gamma_score_from_statistics()
                    model.reset_statistics()
                elif score is None:
                    score = model.get_log_prob_for_path(path, seq)
                if score > best_score:
                    best_path, best_score = list(path), float(score)
        return best_path, best_score
