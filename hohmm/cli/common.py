"""Shared argparse argument factories and input readers for hohmm CLI tools.

Each add_* function adds a group of related arguments to an ArgumentParser.
Default values can be overridden per-script where needed.
"""

import argparse
from typing import List, Tuple

import numpy as np
import pandas as pd

from hohmm.core.emissions import GaussianEmission
from hohmm.core.hmm import HigherOrderHMM
from hohmm.core.phylo import PhyloEmission
from hohmm.core.sequence import DNA, Alignment, Sequence

METHODS = ('baum-welch', 'viterbi', 'metropolis-hastings')


def add_model_args(parser: argparse.ArgumentParser) -> None:
    """Add -m/--model and -i/--input arguments."""
    parser.add_argument(
        '-m', '--model', required=True,
        help="Model file (.json written by save_model, or a pickled model)"
    )
    parser.add_argument(
        '-i', '--input', required=True,
        help="TSV with a 'sequence' column of whitespace-separated symbols "
             "and optional 'name' and 'weight' columns. For phylogenetic models, "
             "one column of aligned DNA per taxon instead of 'sequence'"
    )


def add_method_args(parser: argparse.ArgumentParser,
                    default: str = 'baum-welch') -> None:
    """Add --method argument."""
    parser.add_argument(
        '--method', choices=METHODS, default=default,
        help=f"Training method (default: {default})"
    )


def add_training_args(parser: argparse.ArgumentParser,
                      n_iter: int = 100,
                      tol: float = 1e-4,
                      n_starts: int = 1) -> None:
    """Add EM arguments (--max-iter, --tol, --restarts)."""
    parser.add_argument(
        '--max-iter', type=int, default=n_iter,
        help=f"Maximum EM iterations (default: {n_iter})"
    )
    parser.add_argument(
        '--tol', type=float, default=tol,
        help=f"Stop when the log-likelihood improves by less than this (default: {tol})"
    )
    parser.add_argument(
        '--restarts', type=int, default=n_starts,
        help=f"Random initialisations; the best model is kept (default: {n_starts})"
    )


def add_sampler_args(parser: argparse.ArgumentParser,
                     burn_in: int = 100,
                     n_samples: int = 100,
                     max_retries: int = 100) -> None:
    """Add Metropolis-Hastings arguments."""
    parser.add_argument(
        '--burn-in', type=int, default=burn_in,
        help=f"Sampling rounds discarded before samples are kept (default: {burn_in})"
    )
    parser.add_argument(
        '--samples', type=int, default=n_samples,
        help=f"Sampling rounds kept after burn-in (default: {n_samples})"
    )
    parser.add_argument(
        '--max-retries', type=int, default=max_retries,
        help=f"Proposal draws per round before giving up (default: {max_retries})"
    )
    parser.add_argument(
        '--proposal-temperature', type=float, default=1.0,
        help="Divide the proposal statistic by this value (default: 1.0)"
    )
    parser.add_argument(
        '--chains', type=int, default=1,
        help="Independent sampling chains, each started randomly (default: 1)"
    )
    parser.add_argument(
        '--burn-in-threshold', type=float, default=None,
        help="Variance-ratio threshold deciding the burn-in from the chains; "
             "--burn-in then caps it (needs --chains >= 2, default: fixed burn-in)"
    )


def add_parallel_args(parser: argparse.ArgumentParser,
                      default_cores: int = 1) -> None:
    """Add --cores argument."""
    parser.add_argument(
        '--cores', '-c', type=int, default=default_cores,
        help=f"Number of CPU cores for the E-step (0=auto, default: {default_cores})"
    )


def add_seed_args(parser: argparse.ArgumentParser, default: int = 42) -> None:
    """Add -s/--seed argument."""
    parser.add_argument(
        '-s', '--seed', type=int, default=default,
        help=f"Random seed (default: {default})"
    )


def add_output_args(parser: argparse.ArgumentParser,
                    required: bool = True,
                    help_text: str = "Output directory") -> None:
    """Add -o/--output argument."""
    parser.add_argument(
        '-o', '--output', required=required,
        help=help_text
    )


def add_verbose_args(parser: argparse.ArgumentParser) -> None:
    """Add --verbose flag."""
    parser.add_argument(
        '-v', '--verbose', action='store_true',
        help="Verbose output"
    )


def add_version_args(parser: argparse.ArgumentParser) -> None:
    """Add --version flag."""
    from hohmm import __version__
    parser.add_argument(
        '--version', action='version',
        version=f'%(prog)s {__version__}'
    )


def is_continuous(model: HigherOrderHMM) -> bool:
    return any(isinstance(e, GaussianEmission) for e in model.emissions)


def read_sequences(filepath: str, continuous: bool = False) -> Tuple[List[Sequence], List[float]]:
    """
    Read training sequences from a TSV file.

    Args:
        filepath: TSV with a 'sequence' column; 'name' and 'weight' are optional
        continuous: Parse symbols as floats instead of integer codes

    Returns:
        (sequences, weights)
    """
    df = pd.read_csv(filepath, sep='\t', dtype={'sequence': str}, keep_default_na=False)
    if 'sequence' not in df.columns:
        raise ValueError(f"{filepath}: missing 'sequence' column")
    if 'name' not in df.columns:
        df['name'] = [f"seq{i}" for i in range(len(df))]
    if 'weight' not in df.columns:
        df['weight'] = 1.0

    dtype = float if continuous else np.int64
    sequences = [
        Sequence(np.array(row.sequence.split(), dtype=dtype), name=str(row.name))
        for row in df.itertuples(index=False)
    ]
    return sequences, df['weight'].astype(float).tolist()


def is_phylo(model: HigherOrderHMM) -> bool:
    return any(isinstance(e, PhyloEmission) for e in model.emissions)


def read_alignments(filepath: str) -> Tuple[List[Alignment], List[float]]:
    """
    Read DNA alignments from a TSV file, one alignment per row.

    Every column other than 'name' and 'weight' is a taxon holding that
    taxon's aligned string. Empty cells mark a taxon absent from the row;
    it is marginalised like an all-gap row.

    Returns:
        (alignments, weights)
    """
    df = pd.read_csv(filepath, sep='\t', dtype=str, keep_default_na=False)
    taxa = [c for c in df.columns if c not in ('name', 'weight')]
    if not taxa:
        raise ValueError(f"{filepath}: no taxon columns")
    names = df['name'] if 'name' in df.columns else [f"aln{i}" for i in range(len(df))]
    weights = df['weight'].astype(float).tolist() if 'weight' in df.columns else [1.0] * len(df)

    alignments = []
    for i, name in enumerate(names):
        rows = {t: df[t].iloc[i] for t in taxa if df[t].iloc[i]}
        if not rows:
            raise ValueError(f"{filepath}: row {name} has no aligned sequences")
        alignments.append(Alignment.from_strings(rows, alphabet=DNA, name=str(name)))
    return alignments, weights


def read_model_inputs(filepath: str, model: HigherOrderHMM):
    """Read sequences in the layout the model's emissions score."""
    if is_phylo(model):
        return read_alignments(filepath)
    return read_sequences(filepath, continuous=is_continuous(model))
