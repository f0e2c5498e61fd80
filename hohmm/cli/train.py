#!/usr/bin/env python3
"""
hohmm train
Train a higher-order HMM from a TSV of sequences.

Methods:
- baum-welch (default): EM with posterior-weighted statistics
- viterbi: hard-assignment training on best parses
- metropolis-hastings: Bayesian parameter sampling; the last accepted
  parameters are saved and the per-round log-likelihoods are reported
"""

import argparse
import json
import os
import sys

import pandas as pd

from hohmm.cli.common import (
    add_method_args,
    add_model_args,
    add_output_args,
    add_parallel_args,
    add_sampler_args,
    add_seed_args,
    add_training_args,
    add_verbose_args,
    add_version_args,
    read_model_inputs,
)
from hohmm.core.errors import SamplerRetryExhaustedError
from hohmm.core.model_io import load_model, save_model
from hohmm.training.burn_in import VarianceRatioBurnInTest
from hohmm.training.drivers import BaumWelch, ViterbiTrainer, train_with_restarts
from hohmm.training.sampler import MetropolisHastingsSampler


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description='Train a higher-order HMM',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    add_model_args(parser)
    add_output_args(parser)
    add_method_args(parser)
    add_training_args(parser)
    add_sampler_args(parser)
    add_parallel_args(parser)
    add_seed_args(parser)
    parser.add_argument('--no-randomize', action='store_true',
                        help='Start from the parameters stored in the model file')
    add_verbose_args(parser)
    add_version_args(parser)
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    print("hohmm model training")
    print(f"  Model: {args.model}")
    print(f"  Input: {args.input}")
    print(f"  Method: {args.method}")
    print(f"  Seed: {args.seed}")

    model = load_model(args.model)
    sequences, weights = read_model_inputs(args.input, model)
    print(f"Loaded {len(sequences)} sequences")
    os.makedirs(args.output, exist_ok=True)

    if args.method == 'metropolis-hastings':
        burn_in_test = None
        if args.burn_in_threshold is not None:
            burn_in_test = VarianceRatioBurnInTest(args.burn_in_threshold)
        sampler = MetropolisHastingsSampler(
            model,
            n_burn_in=args.burn_in,
            n_samples=args.samples,
            max_retries=args.max_retries,
            proposal_temperature=args.proposal_temperature,
            n_starts=args.chains,
            burn_in_test=burn_in_test,
            random_state=args.seed,
            verbose=args.verbose,
        )
        sampler.initialize(randomize=not args.no_randomize)
        try:
            sampler.run(sequences, weights)
        except SamplerRetryExhaustedError as e:
            print(f"Error: {e}")
            sys.exit(1)
        print(f"  Burn-in: {sampler.burn_in_length_} rounds, "
              f"{len(sampler.samples_)} samples kept")
        best_model = model
        history = pd.concat([
            pd.DataFrame({
                'chain': chain,
                'round': range(len(monitor.history)),
                'log_likelihood': monitor.history,
                'attempts': attempts,
            })
            for chain, (monitor, attempts)
            in enumerate(zip(sampler.monitors_, sampler.chain_attempts_))
        ], ignore_index=True)
        final_score = sampler.monitor_.history[-1] if sampler.monitor_.history else None
    else:
        trainer_cls = BaumWelch if args.method == 'baum-welch' else ViterbiTrainer
        trainer_kwargs = dict(n_iter=args.max_iter, tol=args.tol,
                              n_jobs=args.cores, verbose=args.verbose)
        if args.no_randomize:
            trainer = trainer_cls(model, random_state=args.seed, **trainer_kwargs)
            trainer.initialize(randomize=False)
            best_model = trainer.fit(sequences, weights)
            scores = [trainer.monitor_.history[-1]]
        else:
            best_model, all_models = train_with_restarts(
                model, sequences, weights, trainer_cls=trainer_cls,
                n_starts=args.restarts, seed=args.seed, **trainer_kwargs)
            scores = [score for _, score in all_models]
        history = pd.DataFrame({'restart': range(len(scores)), 'objective': scores})
        final_score = max(scores)

    print(f"\nSaving to {args.output}")
    save_model(best_model, os.path.join(args.output, 'best-model.json'),
               metadata={'method': args.method, 'seed': args.seed,
                         'n_sequences': len(sequences)})
    print("  Saved: best-model.json")
    history.to_csv(os.path.join(args.output, 'training-history.tsv'), sep='\t', index=False)
    print("  Saved: training-history.tsv")

    config = {
        'method': args.method,
        'max_iter': args.max_iter,
        'tol': args.tol,
        'restarts': args.restarts,
        'seed': args.seed,
        'chains': args.chains,
        'final_score': final_score,
    }
    with open(os.path.join(args.output, 'training_config.json'), 'w') as f:
        json.dump(config, f, indent=2)

    print("Done!")


if __name__ == '__main__':
    main()
