"""Training drivers, the Metropolis-Hastings sampler and parallel statistic accumulation."""

from hohmm.training.drivers import (
    BaumWelch,
    TrainerState,
    TrainingMonitor,
    ViterbiTrainer,
    train_with_restarts,
)
from hohmm.training.burn_in import VarianceRatioBurnInTest
from hohmm.training.parallel import accumulate_statistics
from hohmm.training.sampler import MetropolisHastingsSampler, acceptance_ratio

__all__ = [
    'BaumWelch',
    'TrainerState',
    'TrainingMonitor',
    'ViterbiTrainer',
    'train_with_restarts',
    'accumulate_statistics',
    'VarianceRatioBurnInTest',
    'MetropolisHastingsSampler',
    'acceptance_ratio',
]
