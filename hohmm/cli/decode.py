#!/usr/bin/env python3
"""
hohmm decode
Viterbi-decode sequences with a trained model and report log-likelihoods.

Output TSV columns: name, log_likelihood, viterbi_score, path (state names,
comma separated, silent states included).
"""

import argparse

import numpy as np
import pandas as pd
from tqdm import tqdm

from hohmm.cli.common import (
    add_model_args,
    add_output_args,
    add_verbose_args,
    add_version_args,
    read_model_inputs,
)
from hohmm.core.hmm import HigherOrderHMM
from hohmm.core.model_io import load_model


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description='Viterbi-decode sequences with a higher-order HMM',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    add_model_args(parser)
    add_output_args(parser, help_text="Output TSV")
    add_verbose_args(parser)
    add_version_args(parser)
    return parser.parse_args(argv)


def decode_sequences(model: HigherOrderHMM, sequences, verbose: bool = False) -> pd.DataFrame:
    rows = []
    for seq in tqdm(sequences, desc="Decoding", disable=not verbose):
        path, score = model.viterbi(seq)
        rows.append({
            'name': seq.name,
            'log_likelihood': model.get_log_score_for(seq),
            'viterbi_score': score,
            'path': ','.join(model.states[s].name for s in path),
        })
    return pd.DataFrame(rows, columns=['name', 'log_likelihood', 'viterbi_score', 'path'])


def main(argv=None):
    args = parse_args(argv)
    model = load_model(args.model)
    sequences, _ = read_model_inputs(args.input, model)
    df = decode_sequences(model, sequences, verbose=args.verbose)
    df.to_csv(args.output, sep='\t', index=False)

    n_failed = int(np.isinf(df['viterbi_score']).sum())
    print(f"Decoded {len(df)} sequences -> {args.output}")
    if n_failed:
        print(f"  Warning: {n_failed} sequences have no valid parse")


if __name__ == '__main__':
    main()
