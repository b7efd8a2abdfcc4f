"""Reference-based chimera filtering of final representatives."""

import logging
from dataclasses import dataclass
from typing import List

import numpy as np

from iterotu.clustering import write_representatives
from iterotu.context import RunContext
from iterotu.errors import IntegrityError
from iterotu.records import read_record_ids
from iterotu.types import Otu, empty_abundance


@dataclass
class ChimeraResult:
    otus: List[Otu]
    lost: np.ndarray
    num_dropped: int = 0


class ChimeraFilter:
    """Drop representatives flagged as chimeric against a reference database.

    Dropped abundance is not redistributed; it is returned as ``lost`` so it
    can be reported per library.
    """

    def __init__(self, context: RunContext):
        self.context = context

    def run(self, otus: List[Otu]) -> ChimeraResult:
        context = self.context
        lost = empty_abundance(context.num_libs)
        reference_db = context.config.reference_db
        if reference_db is None or not otus:
            return ChimeraResult(otus=list(otus), lost=lost)

        candidates = write_representatives(otus, context.tmp_path("chimera.candidates.fasta"))
        nonchimeric_path = context.tmp_path("chimera.nonchimeras.fasta")
        with context.timer('chimera'):
            context.capability.chimera_check(candidates, reference_db, nonchimeric_path)

        by_id = {otu.id: otu for otu in otus}
        keep = set()
        for otu_id in read_record_ids(nonchimeric_path):
            if otu_id not in by_id:
                raise IntegrityError(f"Chimera check returned unknown representative id {otu_id}")
            keep.add(otu_id)

        kept = []
        num_dropped = 0
        for otu in otus:
            if otu.id in keep:
                kept.append(otu)
            else:
                lost += otu.abundance
                num_dropped += 1
                logging.debug(f"Representative {otu.id} (size={otu.size}) flagged as chimeric")

        candidates.unlink()
        nonchimeric_path.unlink()
        logging.info(f"Chimera filter removed {num_dropped} of {len(otus)} representatives "
                     f"({int(lost.sum())} reads)")
        return ChimeraResult(otus=kept, lost=lost, num_dropped=num_dropped)
