"""HMM states: an emission bound to a strand, or a silent wiring state."""

from dataclasses import dataclass
from typing import Optional

from hohmm.core.emissions import Emission
from hohmm.core.errors import InvalidLengthError
from hohmm.core.sequence import Sequence


@dataclass(frozen=True, eq=False)
class State:
    """
    Immutable (name, emission, strand) triple.

    A state without an emission is silent: it consumes no symbol, scores 0 for
    the empty span and never receives statistic weight. Several states may
    share one Emission object to tie their parameters.
    """
    name: str
    emission: Optional[Emission] = None
    forward: bool = True

    @property
    def silent(self) -> bool:
        return self.emission is None

    def get_log_score_for(self, start: int, end: int, seq: Sequence) -> float:
        if self.silent:
            if end != start - 1:
                raise InvalidLengthError(
                    f"Silent state {self.name!r} cannot score span [{start}, {end}]")
            return 0.0
        return self.emission.get_log_prob_for(self.forward, start, end, seq)

    def add_to_statistic(self, start: int, end: int, weight: float, seq: Sequence):
        if self.silent:
            if end != start - 1:
                raise InvalidLengthError(
                    f"Silent state {self.name!r} cannot take statistic for span [{start}, {end}]")
            return
        self.emission.add_to_statistic(self.forward, start, end, weight, seq)
