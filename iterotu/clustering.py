"""Cluster and search rounds of the iterative clustering loop.

A round pair works on a bounded head chunk:

    ClusterRound  cluster the head (single-threaded), map head members back to
                  the representatives, fold member abundance into them
    SearchRound   map the whole tail against the representatives
                  (multi-threaded), fold hits, and refill the next head with
                  the representatives followed by unmapped tail records

Abundance is conserved through every fold: whatever does not end up in a
representative or in the remaining tail is reported as lost.
"""

import logging
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional

import numpy as np

from iterotu.context import RunContext
from iterotu.errors import ClusterOrderingError, IntegrityError
from iterotu.records import (
    format_derep_header,
    load_derep_records,
    read_derep_records,
    read_record_ids,
    write_otu_fasta,
)
from iterotu.types import DerepRecord, Otu, empty_abundance, radius_to_identity


def rank_otus(otus: List[Otu]) -> List[Otu]:
    """Re-rank by descending total abundance and renumber densely from 0.

    The sort is stable, so ties keep their prior relative order and ranking an
    already ranked list changes nothing.
    """
    ranked = sorted(otus, key=lambda otu: -otu.size)
    for index, otu in enumerate(ranked):
        otu.id = index
    return ranked


def otu_records(otus: List[Otu]) -> Iterator[DerepRecord]:
    for otu in otus:
        yield DerepRecord(otu.id, otu.sequence, otu.abundance)


def write_representatives(otus: List[Otu], path: Path) -> Path:
    write_otu_fasta(otus, path)
    return path


def _ordering_violation(message: str) -> None:
    logging.warning(f"Clustering order inconsistency: {message}")
    warnings.warn(message, ClusterOrderingError, stacklevel=3)


@dataclass
class ClusterRoundResult:
    otus: List[Otu]
    num_members: int
    num_folded: int
    num_ordering_skipped: int
    num_unassigned: int
    lost: np.ndarray


@dataclass
class SearchRoundResult:
    head_path: Path
    tail_path: Optional[Path]
    num_queries: int
    num_mapped: int
    num_head: int
    num_tail: int
    folded: np.ndarray


class ClusterRound:
    """Cluster one head chunk at a fixed radius."""

    def __init__(self, context: RunContext, radius: int):
        self.context = context
        self.radius = radius
        self.identity = radius_to_identity(radius)

    def run(self, head_path: Path) -> ClusterRoundResult:
        """Cluster ``head_path`` and fold members into their representatives.

        The head file is consumed (deleted) on success.

        Returns:
            ClusterRoundResult with representatives ranked and renumbered from 0
        """
        context = self.context
        members = load_derep_records(head_path, context.num_libs)
        centroids_path = context.tmp_path(f"centroids.r{self.radius}.fasta")

        with context.timer('cluster'):
            context.capability.cluster(head_path, self.radius, centroids_path)

        representatives: Dict[int, Otu] = {}
        for rep_id in read_record_ids(centroids_path):
            if rep_id not in members:
                raise IntegrityError(f"Clustering returned unknown representative id {rep_id}")
            if rep_id in representatives:
                raise IntegrityError(f"Clustering returned representative id {rep_id} twice")
            member = members[rep_id]
            representatives[rep_id] = Otu(member.sequence, member.abundance.copy())

        with context.timer('search'):
            hits = context.capability.search(head_path, centroids_path, self.identity, context.threads)

        assignments: Dict[int, int] = {}
        ordering_skipped = 0
        for query_id, target_id in hits:
            if query_id == target_id:
                continue
            if target_id not in representatives:
                raise IntegrityError(f"Hit references unknown representative id {target_id}")
            if query_id not in members:
                raise IntegrityError(f"Hit references unknown query id {query_id}")
            if query_id in representatives:
                _ordering_violation(f"representative {query_id} matched representative {target_id}; "
                                    f"it stays a separate cluster")
                ordering_skipped += 1
                continue
            if query_id < target_id:
                _ordering_violation(f"record {query_id} would fold into larger id {target_id}; skipped")
                ordering_skipped += 1
                continue
            assignments.setdefault(query_id, target_id)

        lost = empty_abundance(context.num_libs)
        num_folded = num_unassigned = 0
        for member_id, member in members.items():
            if member_id in representatives:
                continue
            target_id = assignments.get(member_id)
            if target_id is None:
                lost += member.abundance
                num_unassigned += 1
                continue
            representatives[target_id].abundance += member.abundance
            num_folded += 1

        if num_unassigned:
            logging.warning(f"{num_unassigned} clustered records were not assigned to any representative "
                            f"({int(lost.sum())} reads lost)")

        otus = rank_otus([representatives[rep_id] for rep_id in sorted(representatives)])

        head_path.unlink()
        centroids_path.unlink()

        logging.debug(f"Radius {self.radius}: {len(members)} records -> {len(otus)} clusters "
                      f"({num_folded} folded)")
        return ClusterRoundResult(
            otus=otus,
            num_members=len(members),
            num_folded=num_folded,
            num_ordering_skipped=ordering_skipped,
            num_unassigned=num_unassigned,
            lost=lost,
        )


class SearchRound:
    """Map the tail against current representatives and refill the head."""

    def __init__(self, context: RunContext, radius: int, chunk_size: int):
        self.context = context
        self.radius = radius
        self.identity = radius_to_identity(radius)
        self.chunk_size = chunk_size

    def head_capacity(self, num_otus: int) -> int:
        """Unmapped records admitted to the next head.

        Representatives count toward the chunk size. When they fill it on
        their own a full chunk is admitted so every round makes progress.
        """
        capacity = self.chunk_size - num_otus
        return capacity if capacity > 0 else self.chunk_size

    def run(self, otus: List[Otu], tail_path: Path, head_path: Path) -> SearchRoundResult:
        """Fold tail hits into ``otus`` (in place) and write the next head.

        The tail file is replaced by the records that did not fit in the new
        head, or removed when none are left.
        """
        context = self.context
        reps_path = write_representatives(otus, context.tmp_path(f"reps.r{self.radius}.fasta"))

        with context.timer('search'):
            hits = context.capability.search(tail_path, reps_path, self.identity, context.threads)

        by_id = {otu.id: otu for otu in otus}
        assignments: Dict[int, int] = {}
        for query_id, target_id in hits:
            if target_id not in by_id:
                raise IntegrityError(f"Hit references unknown representative id {target_id}")
            if query_id in assignments:
                raise IntegrityError(f"Query {query_id} reported more than one hit")
            assignments[query_id] = target_id

        capacity = self.head_capacity(len(otus))
        pending_path = context.tmp_path("pending.fasta")
        next_tail_path = context.tmp_path("tail.next.fasta")
        folded = empty_abundance(context.num_libs)
        num_queries = num_mapped = num_pending = num_rest = 0
        rest = None
        try:
            with open(pending_path, 'w') as pending:
                for record in read_derep_records(tail_path, context.num_libs):
                    if record.id != num_queries:
                        raise IntegrityError(f"Tail record ids out of sequence at {record.id}")
                    num_queries += 1
                    target_id = assignments.get(record.id)
                    if target_id is not None:
                        by_id[target_id].abundance += record.abundance
                        folded += record.abundance
                        num_mapped += 1
                        continue
                    if num_pending < capacity:
                        out = pending
                        num_pending += 1
                    else:
                        if rest is None:
                            rest = open(next_tail_path, 'w')
                        out = rest
                        record = DerepRecord(num_rest, record.sequence, record.abundance)
                        num_rest += 1
                    out.write(f">{format_derep_header(record)}\n{record.sequence}\n")
        finally:
            if rest is not None:
                rest.close()

        if num_mapped != len(assignments):
            raise IntegrityError(f"{len(assignments) - num_mapped} hits reference unknown query ids")

        tail_path.unlink()
        reps_path.unlink()
        new_tail: Optional[Path] = None
        if num_rest:
            next_tail_path.replace(tail_path)
            new_tail = tail_path

        ranked = rank_otus(otus)
        num_head = 0
        with open(head_path, 'w') as head:
            for record in otu_records(ranked):
                head.write(f">{format_derep_header(record)}\n{record.sequence}\n")
                num_head += 1
            for record in read_derep_records(pending_path, context.num_libs):
                record = DerepRecord(num_head, record.sequence, record.abundance)
                head.write(f">{format_derep_header(record)}\n{record.sequence}\n")
                num_head += 1
        pending_path.unlink()

        logging.debug(f"Radius {self.radius}: mapped {num_mapped}/{num_queries} tail records; "
                      f"next head {num_head}, tail {num_rest}")
        return SearchRoundResult(
            head_path=head_path,
            tail_path=new_tail,
            num_queries=num_queries,
            num_mapped=num_mapped,
            num_head=num_head,
            num_tail=num_rest,
            folded=folded,
        )
