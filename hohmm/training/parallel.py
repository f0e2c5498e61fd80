"""hohmm sequence-parallel statistic accumulation and worker management."""

import os
from concurrent.futures import ProcessPoolExecutor, as_completed
from typing import List, Optional, Sequence as SequenceType, Tuple

import numpy as np

from hohmm.core.hmm import HigherOrderHMM
from hohmm.core.sequence import Sequence

MODES = ('baum-welch', 'viterbi')


def _init_worker():
    """Initialize worker process."""
    # Disable numba caching to avoid file lock contention between workers
    os.environ['NUMBA_CACHE_DIR'] = ''


def _accumulate_chunk(model: HigherOrderHMM, sequences: List[Sequence],
                      weights: List[float], mode: str) -> Tuple[HigherOrderHMM, float]:
    """
    Worker function: fill the statistics of a private model copy.

    Returns:
        (model copy holding the partial statistics, summed objective)
    """
    model.reset_statistics()
    total = 0.0
    for seq, w in zip(sequences, weights):
        if mode == 'baum-welch':
            total += w * model.add_baum_welch_statistics(seq, w)
        else:
            total += w * model.add_viterbi_statistics(seq, w)
    return model, total


def split_chunks(n_items: int, n_chunks: int) -> List[Tuple[int, int]]:
    """Split range(n_items) into at most n_chunks contiguous, non-empty (start, stop) pairs."""
    n_chunks = max(1, min(n_chunks, n_items))
    bounds = np.linspace(0, n_items, n_chunks + 1).astype(int)
    return [(int(a), int(b)) for a, b in zip(bounds[:-1], bounds[1:]) if b > a]


def resolve_n_jobs(n_jobs: int) -> int:
    """0 or negative means all available cores."""
    if n_jobs <= 0:
        return os.cpu_count() or 1
    return n_jobs


def accumulate_statistics(model: HigherOrderHMM, sequences: SequenceType[Sequence],
                          weights: Optional[SequenceType[float]] = None,
                          mode: str = 'baum-welch', n_jobs: int = 1) -> float:
    """
    Reset the model's statistics and fill them from `sequences`.

    With n_jobs > 1 each worker scores a contiguous chunk against its own
    pickled copy of the model; the partial statistics are joined into `model`
    in chunk order once every worker has finished. Model parameters are never
    touched here, so estimation can only happen after this call returns.

    Args:
        model: Model whose statistics receive the evidence
        sequences: Training sequences
        weights: Per-sequence weights (default 1)
        mode: 'baum-welch' (posterior weights) or 'viterbi' (best-path counts)
        n_jobs: Worker processes (1 = in-process, 0 = all cores)

    Returns:
        Weighted sum of per-sequence log-likelihoods (or Viterbi scores)
    """
    if mode not in MODES:
        raise ValueError(f"mode must be one of {MODES}, got {mode!r}")
    sequences = list(sequences)
    weights = [1.0] * len(sequences) if weights is None else [float(w) for w in weights]
    if len(weights) != len(sequences):
        raise ValueError("Need exactly one weight per sequence")
    if any(w < 0 for w in weights):
        raise ValueError("Sequence weights must be non-negative")

    n_jobs = resolve_n_jobs(n_jobs)
    chunks = split_chunks(len(sequences), n_jobs)

    model.reset_statistics()
    if n_jobs == 1 or len(chunks) <= 1:
        total = 0.0
        for seq, w in zip(sequences, weights):
            if mode == 'baum-welch':
                total += w * model.add_baum_welch_statistics(seq, w)
            else:
                total += w * model.add_viterbi_statistics(seq, w)
        return total

    results = [None] * len(chunks)
    with ProcessPoolExecutor(max_workers=len(chunks), initializer=_init_worker) as executor:
        futures = {
            executor.submit(_accumulate_chunk, model, sequences[a:b], weights[a:b], mode): i
            for i, (a, b) in enumerate(chunks)
        }
        for future in as_completed(futures):
            results[futures[future]] = future.result()

    model.join_statistics(*(partial for partial, _ in results))
    return float(sum(total for _, total in results))
