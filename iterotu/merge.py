"""Dereplication of per-library seq-obs streams.

The k-way merge combines N sorted ``(sequence, count)`` streams into one
sorted stream of ``(sequence, abundance vector)``. Each merged record is then
routed either to the singlet sink (too rare to seed a cluster) or to the
clusterable spill, which is sorted by descending total abundance.
"""

import heapq
import itertools
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple

import numpy as np

from iterotu.errors import ConfigurationError, IntegrityError
from iterotu.records import (
    SeqObsReader,
    format_singlet_header,
    read_library_header,
)
from iterotu.types import DerepRecord, LibraryInfo, SingletRecord, empty_abundance

SEQOBS_NAMES = ("seqobs.tsv", "seqobs.tsv.gz", "seqobs.tsv.bz2")
SEQOBS_SUFFIXES = (".seqobs.tsv", ".seqobs.tsv.gz", ".seqobs.tsv.bz2")


@dataclass
class MergeSummary:
    """Counters produced while dereplicating the input libraries."""
    libraries: List[str]
    input_sizes: np.ndarray
    clusterable_sizes: np.ndarray
    singlet_sizes: np.ndarray
    num_clusterable: int = 0
    num_singlets: int = 0
    skipped_libraries: List[str] = field(default_factory=list)
    singlet_files: List[Path] = field(default_factory=list)


def discover_libraries(data_dir: Path) -> List[Path]:
    """Find seq-obs files under a data directory, sorted by library name.

    Accepts either ``<dir>/<lib>/seqobs.tsv[.gz|.bz2]`` or
    ``<dir>/<lib>.seqobs.tsv[.gz|.bz2]``.
    """
    found = []
    for entry in sorted(os.listdir(data_dir)):
        if entry.startswith('.'):
            continue
        path = data_dir / entry
        if path.is_dir():
            candidates = [path / name for name in SEQOBS_NAMES if (path / name).exists()]
            if not candidates:
                logging.warning(f"No seq-obs file found in {path}, skipping")
                continue
            found.append(candidates[0])
        elif entry.endswith(SEQOBS_SUFFIXES):
            found.append(path)
    return found


def select_libraries(paths: Sequence[Path], min_lib_size: int) -> Tuple[List[LibraryInfo], List[str]]:
    """Read library headers and drop libraries below the minimum size.

    Returns the kept libraries in input order and the names of skipped ones.
    """
    kept = []
    skipped = []
    seen = set()
    for path in paths:
        library = read_library_header(path)
        if library.name in seen:
            raise IntegrityError(f"Duplicate library name {library.name} ({path})")
        seen.add(library.name)
        if library.declared_size < min_lib_size:
            logging.warning(f"Discarding library {library.name}: total size "
                            f"{library.declared_size} < {min_lib_size}")
            skipped.append(library.name)
            continue
        kept.append(library)
    if not kept:
        raise ConfigurationError("No seq-obs libraries passed the minimum library size filter")
    return kept, skipped


class LibraryMergeReader:
    """k-way merge of sorted per-library streams into abundance vectors.

    Iterating yields ``(sequence, abundance)`` in ascending sequence order,
    exactly one record per distinct sequence across all libraries.
    """

    def __init__(self, libraries: List[LibraryInfo]):
        self.libraries = libraries
        self.readers = [SeqObsReader(library) for library in libraries]

    @property
    def num_libs(self) -> int:
        return len(self.libraries)

    def _tagged(self, index: int) -> Iterator[Tuple[str, int, int]]:
        for sequence, count in self.readers[index]:
            yield sequence, index, count

    def __iter__(self) -> Iterator[Tuple[str, np.ndarray]]:
        streams = [self._tagged(i) for i in range(self.num_libs)]
        merged = heapq.merge(*streams)
        for sequence, group in itertools.groupby(merged, key=lambda item: item[0]):
            abundance = empty_abundance(self.num_libs)
            for _, index, count in group:
                abundance[index] += count
            yield sequence, abundance

    def run(self, clusterable_sink: 'AbundanceSorter', singlet_sink: 'SingletSink',
            min_cluster_size: int) -> MergeSummary:
        """Merge all libraries, routing each record to the matching sink."""
        summary = MergeSummary(
            libraries=[library.name for library in self.libraries],
            input_sizes=np.array([library.declared_size for library in self.libraries], dtype=np.int64),
            clusterable_sizes=empty_abundance(self.num_libs),
            singlet_sizes=empty_abundance(self.num_libs),
        )
        for sequence, abundance in self:
            if int(abundance.sum()) < min_cluster_size:
                singlet_sink.add(sequence, abundance)
                summary.singlet_sizes += abundance
                summary.num_singlets += 1
            else:
                clusterable_sink.add(sequence, abundance)
                summary.clusterable_sizes += abundance
                summary.num_clusterable += 1
        singlet_sink.close()
        summary.singlet_files = list(singlet_sink.files)
        logging.info(f"Dereplicated {self.num_libs} libraries: {summary.num_clusterable} clusterable "
                     f"and {summary.num_singlets} singlet sequences")
        return summary


class SingletSink:
    """Writes singlets in sparse form, rotating files every ``per_file`` records."""

    def __init__(self, base_path: Path, per_file: int = 10_000):
        self.base_path = base_path
        self.per_file = per_file
        self.files: List[Path] = []
        self._handle = None
        self._in_file = 0
        self._next_id = 0

    def _rotate(self) -> None:
        if self._handle:
            self._handle.close()
        path = Path(f"{self.base_path}.{len(self.files) + 1}.fasta")
        self.files.append(path)
        self._handle = open(path, 'w')
        self._in_file = 0

    def add(self, sequence: str, abundance: np.ndarray) -> None:
        if self._handle is None or self._in_file >= self.per_file:
            self._rotate()
        record = SingletRecord.from_dense(self._next_id, sequence, abundance)
        self._handle.write(f">{format_singlet_header(record)}\n{sequence}\n")
        self._next_id += 1
        self._in_file += 1

    def close(self) -> None:
        if self._handle:
            self._handle.close()
            self._handle = None


class AbundanceSorter:
    """Stable external sort of records by descending total abundance.

    Records are buffered and spilled to sorted run files of at most
    ``buffer_size`` records, then heap-merged. Ties keep their insertion
    order, both within a run and across runs.
    """

    def __init__(self, tmp_dir: Path, buffer_size: int = 500_000):
        self.tmp_dir = tmp_dir
        self.buffer_size = buffer_size
        self.runs: List[Path] = []
        self._buffer: List[Tuple[int, str, np.ndarray]] = []
        self.count = 0

    def add(self, sequence: str, abundance: np.ndarray) -> None:
        self._buffer.append((int(abundance.sum()), sequence, abundance))
        self.count += 1
        if len(self._buffer) >= self.buffer_size:
            self._spill()

    def _spill(self) -> None:
        if not self._buffer:
            return
        self._buffer.sort(key=lambda item: -item[0])
        path = self.tmp_dir / f"sort.run.{len(self.runs)}.tsv"
        with open(path, 'w') as f:
            for size, sequence, abundance in self._buffer:
                f.write(f"{size}\t{sequence}\t{','.join(str(int(x)) for x in abundance)}\n")
        self.runs.append(path)
        self._buffer = []

    @staticmethod
    def _read_run(path: Path) -> Iterator[Tuple[int, str, np.ndarray]]:
        with open(path) as f:
            for line in f:
                size, sequence, obs = line.rstrip('\n').split('\t')
                yield int(size), sequence, np.array([int(x) for x in obs.split(',')], dtype=np.int64)

    def sorted_records(self) -> Iterator[DerepRecord]:
        """Yield all records in rank order, numbered densely from 0."""
        if self.runs:
            self._spill()
            merged = heapq.merge(*(self._read_run(path) for path in self.runs), key=lambda item: -item[0])
        else:
            self._buffer.sort(key=lambda item: -item[0])
            merged = iter(self._buffer)
        for index, (_, sequence, abundance) in enumerate(merged):
            yield DerepRecord(index, sequence, abundance)
        self.cleanup()

    def cleanup(self) -> None:
        for path in self.runs:
            if path.exists():
                path.unlink()
        self.runs = []
        self._buffer = []


def dereplicate(libraries: List[LibraryInfo], tmp_dir: Path, min_cluster_size: int,
                singlets_per_file: int, sort_buffer: int,
                skipped: Optional[List[str]] = None) -> Tuple[MergeSummary, AbundanceSorter]:
    """Run the merge into a fresh sorter and singlet sink under ``tmp_dir``."""
    reader = LibraryMergeReader(libraries)
    sorter = AbundanceSorter(tmp_dir, buffer_size=sort_buffer)
    singlets = SingletSink(tmp_dir / "singlets", per_file=singlets_per_file)
    try:
        summary = reader.run(sorter, singlets, min_cluster_size)
    finally:
        singlets.close()
    summary.skipped_libraries = list(skipped or [])
    return summary, sorter
