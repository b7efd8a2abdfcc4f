"""Typed records shared by all pipeline stages."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np


def empty_abundance(num_libs: int) -> np.ndarray:
    """Return a zeroed abundance vector with one slot per library."""
    return np.zeros(num_libs, dtype=np.int64)


def abundance_from_counts(counts) -> np.ndarray:
    return np.asarray(list(counts), dtype=np.int64)


@dataclass
class DerepRecord:
    """A dereplicated sequence with its per-library abundance vector.

    The id is a temporary dense integer, only meaningful inside the file the
    record was read from or is about to be written to.
    """
    id: int
    sequence: str
    abundance: np.ndarray

    @property
    def size(self) -> int:
        return int(self.abundance.sum())


@dataclass
class SingletRecord:
    """A low-abundance sequence stored with sparse (library, count) pairs."""
    id: int
    sequence: str
    pairs: List[Tuple[int, int]]

    @property
    def size(self) -> int:
        return sum(count for _, count in self.pairs)

    def to_dense(self, num_libs: int) -> np.ndarray:
        dense = empty_abundance(num_libs)
        for lib_index, count in self.pairs:
            dense[lib_index] += count
        return dense

    @classmethod
    def from_dense(cls, record_id: int, sequence: str, abundance: np.ndarray) -> 'SingletRecord':
        pairs = [(int(i), int(abundance[i])) for i in np.flatnonzero(abundance)]
        return cls(record_id, sequence, pairs)


@dataclass
class LibraryInfo:
    name: str
    path: Path
    declared_size: int


@dataclass
class IterationState:
    """State of one outer radius iteration; discarded when it ends."""
    radius: int
    chunk_size: int
    head_path: Path
    tail_path: Optional[Path] = None
    round_num: int = 0

    @property
    def identity(self) -> float:
        return radius_to_identity(self.radius)

    def has_tail(self) -> bool:
        return self.tail_path is not None and self.tail_path.exists()


@dataclass
class Otu:
    """A representative sequence and the aggregate abundance of its members."""
    sequence: str
    abundance: np.ndarray
    id: Optional[int] = None
    taxonomy: str = ""
    ranks: List[Tuple[str, str, float]] = field(default_factory=list)

    @property
    def size(self) -> int:
        return int(self.abundance.sum())


def radius_to_identity(radius: int) -> float:
    """Convert a percent-mismatch radius to the identity threshold used for search."""
    return (100 - radius) / 100
