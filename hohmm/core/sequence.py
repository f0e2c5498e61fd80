"""
Sequence containers consumed by emissions.

A Sequence wraps a fixed-length numpy array of symbols (ints for discrete
alphabets, floats for continuous data). An Alignment is a Sequence whose
positions are columns across named taxa.
"""

from typing import Dict, List, Optional, Sequence as SequenceType

import numpy as np

from hohmm.core.errors import UnsupportedStrandError


class Alphabet:
    """
    Discrete alphabet with an optional complement table.

    Args:
        symbols: Characters of the alphabet, index = encoded symbol
        complement: Characters such that complement[i] pairs with symbols[i]
    """

    def __init__(self, symbols: str, complement: Optional[str] = None):
        if len(set(symbols)) != len(symbols):
            raise ValueError(f"Alphabet symbols must be unique: {symbols!r}")
        self.symbols = symbols
        self._index = {c: i for i, c in enumerate(symbols)}
        self.complement_table: Optional[np.ndarray] = None
        if complement is not None:
            if len(complement) != len(symbols):
                raise ValueError("Complement must have one entry per symbol")
            self.complement_table = np.array(
                [self._index[c] for c in complement], dtype=np.int64)

    def __len__(self) -> int:
        return len(self.symbols)

    @property
    def has_complement(self) -> bool:
        return self.complement_table is not None

    def encode(self, text: str) -> np.ndarray:
        """Encode characters to symbol indices; unknown characters become -1."""
        return np.array([self._index.get(c, -1) for c in text], dtype=np.int64)

    def decode(self, values) -> str:
        return ''.join(self.symbols[v] if v >= 0 else 'N' for v in values)

    def complement(self, values: np.ndarray) -> np.ndarray:
        if self.complement_table is None:
            raise UnsupportedStrandError(
                f"Alphabet {self.symbols!r} has no complement")
        values = np.asarray(values)
        out = np.full(values.shape, -1, dtype=np.int64)
        known = values >= 0
        out[known] = self.complement_table[values[known]]
        return out


DNA = Alphabet('ACGT', complement='TGCA')


class Sequence:
    """
    Fixed-length symbol sequence.

    Args:
        values: Symbols (int array for discrete data, float array for continuous)
        alphabet: Optional alphabet; required for reverse_complement()
        name: Optional identifier
    """

    def __init__(self, values, alphabet: Optional[Alphabet] = None,
                 name: Optional[str] = None):
        self.values = np.array(values)
        self.values.setflags(write=False)
        self.alphabet = alphabet
        self.name = name
        self._reverse: Optional['Sequence'] = None

    @classmethod
    def from_string(cls, text: str, alphabet: Alphabet = DNA,
                    name: Optional[str] = None) -> 'Sequence':
        return cls(alphabet.encode(text), alphabet=alphabet, name=name)

    def __len__(self) -> int:
        return self.values.shape[0]

    def __getitem__(self, pos):
        return self.values[pos]

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, length={len(self)})"

    @property
    def is_discrete(self) -> bool:
        return np.issubdtype(self.values.dtype, np.integer)

    def reverse_complement(self) -> 'Sequence':
        """Return the reverse-complement view (computed once and cached)."""
        if self.alphabet is None or not self.alphabet.has_complement:
            raise UnsupportedStrandError(
                "Reverse strand requested for a sequence without a complement alphabet")
        if self._reverse is None:
            self._reverse = Sequence(
                self.alphabet.complement(self.values)[::-1].copy(),
                alphabet=self.alphabet, name=self.name)
        return self._reverse


class Alignment(Sequence):
    """
    Column-wise multiple alignment; position i is the column values[i, :].

    Args:
        values: (length, n_taxa) int array, negative entries are gaps/unknown
        taxa: Taxon name for each column of values
        alphabet: Optional alphabet
    """

    def __init__(self, values, taxa: SequenceType[str],
                 alphabet: Optional[Alphabet] = None, name: Optional[str] = None):
        values = np.asarray(values, dtype=np.int64)
        if values.ndim != 2:
            raise ValueError("Alignment values must be 2-D (length x taxa)")
        if values.shape[1] != len(taxa):
            raise ValueError(
                f"Got {values.shape[1]} columns per position but {len(taxa)} taxa")
        super().__init__(values, alphabet=alphabet, name=name)
        self.taxa: List[str] = list(taxa)

    @classmethod
    def from_strings(cls, rows: Dict[str, str], alphabet: Alphabet = DNA,
                     name: Optional[str] = None) -> 'Alignment':
        """Build from {taxon: aligned string}; all strings must have equal length."""
        lengths = {len(s) for s in rows.values()}
        if len(lengths) != 1:
            raise ValueError("Aligned sequences must have equal length")
        taxa = list(rows)
        values = np.stack([alphabet.encode(rows[t]) for t in taxa], axis=1)
        return cls(values, taxa, alphabet=alphabet, name=name)

    def reverse_complement(self) -> 'Alignment':
        if self.alphabet is None or not self.alphabet.has_complement:
            raise UnsupportedStrandError(
                "Reverse strand requested for an alignment without a complement alphabet")
        if self._reverse is None:
            self._reverse = Alignment(
                self.alphabet.complement(self.values)[::-1].copy(),
                self.taxa, alphabet=self.alphabet, name=self.name)
        return self._reverse
