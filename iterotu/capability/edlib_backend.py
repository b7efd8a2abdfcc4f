"""In-process clustering and search using edlib edit distance.

Intended for small datasets and hosts without vsearch. Chimera checking and
classification still go through the external tools.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import List, Optional, Tuple

import edlib
from Bio import SeqIO

from iterotu.capability.base import Hit, sibling
from iterotu.capability.vsearch import VsearchCapability
from iterotu.records import parse_record_id
from iterotu.types import radius_to_identity


def calculate_identity(seq1: str, seq2: str, min_identity: float) -> float:
    """Global identity from edit distance, 0.0 when below ``min_identity``."""
    if len(seq1) == 0 or len(seq2) == 0:
        return 0.0

    longest = max(len(seq1), len(seq2))
    max_dist = int((1 - min_identity) * longest)
    result = edlib.align(seq1, seq2, task="distance", k=max_dist)

    if result["editDistance"] == -1:
        return 0.0

    return 1.0 - (result["editDistance"] / longest)


def _read_labelled(path: Path) -> List[Tuple[str, int, str]]:
    return [(rec.id, parse_record_id(rec.id), str(rec.seq)) for rec in SeqIO.parse(str(path), "fasta")]


class EdlibCapability(VsearchCapability):
    """Greedy in-order clustering and best-hit search computed in Python."""

    def needs_vsearch(self, chimera: bool) -> bool:
        # chimera checking still runs vsearch
        return chimera

    def cluster(self, input_fasta: Path, radius: int,
                output_fasta: Optional[Path] = None) -> Path:
        output_fasta = output_fasta or sibling(input_fasta, ".centroids")
        min_identity = radius_to_identity(radius)
        centroids = []
        for label, _, sequence in _read_labelled(input_fasta):
            if any(calculate_identity(sequence, centroid, min_identity) >= min_identity
                   for _, centroid in centroids):
                continue
            centroids.append((label, sequence))
        with open(output_fasta, "w") as f:
            for label, sequence in centroids:
                f.write(f">{label}\n{sequence}\n")
        logging.debug(f"edlib clustering of {input_fasta.name}: {len(centroids)} centroids")
        return output_fasta

    def search(self, query_fasta: Path, db_fasta: Path, identity: float,
               threads: int) -> List[Hit]:
        queries = _read_labelled(query_fasta)
        targets = _read_labelled(db_fasta)

        def best_hit(query: Tuple[str, int, str]) -> Optional[Hit]:
            _, query_id, sequence = query
            best_id = None
            best_identity = 0.0
            # First target wins ties
            for _, target_id, target_seq in targets:
                sim = calculate_identity(sequence, target_seq, identity)
                if sim >= identity and sim > best_identity:
                    best_identity = sim
                    best_id = target_id
            return (query_id, best_id) if best_id is not None else None

        if threads > 1 and len(queries) > 10:
            with ThreadPoolExecutor(max_workers=threads) as executor:
                results = list(executor.map(best_hit, queries))
        else:
            results = [best_hit(query) for query in queries]

        return [hit for hit in results if hit is not None]
