"""Deferred mapping of singlet sequences onto the final representatives."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List

import numpy as np
from tqdm import tqdm

from iterotu.clustering import write_representatives
from iterotu.context import RunContext
from iterotu.errors import IntegrityError
from iterotu.records import read_singlet_records
from iterotu.types import Otu, empty_abundance, radius_to_identity


@dataclass
class SingletResult:
    mapped: np.ndarray
    discarded: np.ndarray
    num_mapped: int = 0
    num_discarded: int = 0


class SingletMapper:
    """Fold singlets that match a final representative; discard the rest.

    Singlets are searched once, at the loosest radius, after all clustering
    rounds. Unmatched singlets are dropped for good and counted.
    """

    def __init__(self, context: RunContext, radius: int):
        self.context = context
        self.identity = radius_to_identity(radius)

    def run(self, otus: List[Otu], singlet_files: List[Path]) -> SingletResult:
        context = self.context
        result = SingletResult(mapped=empty_abundance(context.num_libs),
                               discarded=empty_abundance(context.num_libs))
        if not singlet_files:
            return result
        if not otus:
            logging.warning("No representatives to map singlets against; all singlets discarded")

        by_id = {otu.id: otu for otu in otus}
        reps_path = write_representatives(otus, context.tmp_path("reps.singlets.fasta"))
        for singlet_file in tqdm(singlet_files, desc="Mapping singlets"):
            if otus:
                with context.timer('search'):
                    hits = {}
                    for query_id, target_id in context.capability.search(
                            singlet_file, reps_path, self.identity, context.threads):
                        if target_id not in by_id:
                            raise IntegrityError(f"Singlet hit references unknown representative id {target_id}")
                        if query_id in hits:
                            raise IntegrityError(f"Singlet {query_id} reported more than one hit")
                        hits[query_id] = target_id
            else:
                hits = {}

            matched = 0
            for singlet in read_singlet_records(singlet_file, context.num_libs):
                dense = singlet.to_dense(context.num_libs)
                target_id = hits.get(singlet.id)
                if target_id is None:
                    result.discarded += dense
                    result.num_discarded += 1
                    continue
                by_id[target_id].abundance += dense
                result.mapped += dense
                result.num_mapped += 1
                matched += 1
            if matched != len(hits):
                raise IntegrityError(f"{len(hits) - matched} singlet hits reference unknown query ids "
                                     f"in {singlet_file.name}")
            singlet_file.unlink()
        reps_path.unlink()

        logging.info(f"Mapped {result.num_mapped} singlets, discarded {result.num_discarded}")
        return result
