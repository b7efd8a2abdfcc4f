"""Head/tail partitioning of abundance-ranked record streams."""

import logging
from pathlib import Path
from typing import Iterable, Optional, Tuple

from iterotu.records import format_derep_header
from iterotu.types import DerepRecord

MIN_CHUNK_SIZE = 10_000
MAX_CHUNK_SIZE = 150_000


def derive_chunk_size(num_clusterable: int, configured: Optional[int] = None,
                      min_chunk: int = MIN_CHUNK_SIZE, max_chunk: int = MAX_CHUNK_SIZE) -> int:
    """Number of records clustered per round.

    An explicitly configured size is used as is. Otherwise about a fifth of
    the clusterable records, clamped to ``[min_chunk, max_chunk]``.
    """
    if configured:
        return configured
    return max(min_chunk, min(max_chunk, num_clusterable // 5))


def split_records(records: Iterable[DerepRecord], head_path: Path, tail_path: Path,
                  head_size: int) -> Tuple[int, int]:
    """Write the first ``head_size`` records to head, the rest to tail.

    Ids are renumbered densely from 0 within each file, in row order. The
    tail file is only created (and any stale one removed) when it receives
    records.

    Returns:
        Tuple of (records in head, records in tail)
    """
    if tail_path.exists():
        tail_path.unlink()
    n_head = n_tail = 0
    tail = None
    with open(head_path, 'w') as head:
        for record in records:
            if n_head < head_size:
                out = head
                record = DerepRecord(n_head, record.sequence, record.abundance)
                n_head += 1
            else:
                if tail is None:
                    tail = open(tail_path, 'w')
                out = tail
                record = DerepRecord(n_tail, record.sequence, record.abundance)
                n_tail += 1
            out.write(f">{format_derep_header(record)}\n{record.sequence}\n")
    if tail is not None:
        tail.close()
    logging.debug(f"Split {n_head + n_tail} records into head={n_head}, tail={n_tail}")
    return n_head, n_tail
