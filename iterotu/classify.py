"""Parallel taxonomic classification and taxonomy filtering of final OTUs."""

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence, Tuple

import numpy as np

from iterotu.context import RunContext
from iterotu.errors import IntegrityError
from iterotu.records import write_otu_table
from iterotu.types import Otu, empty_abundance

# RDP training sets name the top rank either kingdom or domain
RANK_ALIASES = {'kingdom': ('kingdom', 'domain')}


def consensus_lineage(ranks: List[Tuple[str, str, float]], cutoff: float) -> str:
    """Join the leading taxa whose confidence reaches ``cutoff``."""
    lineage = []
    for taxon, _, confidence in ranks:
        if confidence < cutoff:
            break
        lineage.append(taxon)
    return ';'.join(lineage)


def passes_level(ranks: List[Tuple[str, str, float]], level: str, cutoff: float) -> bool:
    """True when the confidence at ``level`` (kingdom..genus) reaches ``cutoff``.

    The rank is looked up by name, so intermediate ranks (subphylum, norank
    and the like) do not shift the match. A lineage lacking the rank fails.
    """
    names = RANK_ALIASES.get(level, (level,))
    for _, rank, confidence in ranks:
        if rank.lower() in names:
            return confidence >= cutoff
    return False


@dataclass
class ClassificationResult:
    classified: List[Otu]
    unclassified: List[Otu]
    classified_sizes: np.ndarray
    unclassified_sizes: np.ndarray


class Classifier:
    """Classify representatives with one concurrent job per worker thread.

    Representatives are dealt round-robin into per-job FASTA files; all jobs
    are joined before their results are merged back in OTU order.
    """

    def __init__(self, context: RunContext):
        self.context = context

    def _write_inputs(self, otus: List[Otu], num_jobs: int) -> List[Path]:
        paths = [self.context.tmp_path(f"classify.in.{i}.fasta") for i in range(num_jobs)]
        handles = [open(path, 'w') for path in paths]
        try:
            for index, otu in enumerate(otus):
                handles[index % num_jobs].write(f">{otu.id}\n{otu.sequence}\n")
        finally:
            for handle in handles:
                handle.close()
        return paths

    def run(self, otus: List[Otu], output_dir: Path) -> ClassificationResult:
        context = self.context
        config = context.config
        num_jobs = max(1, min(context.threads, len(otus)))
        inputs = self._write_inputs(otus, num_jobs)
        outputs = [context.tmp_path(f"classify.out.{i}.tsv") for i in range(num_jobs)]

        logging.info(f"Classifying {len(otus)} representatives in {num_jobs} parallel jobs")
        with context.timer('classify'):
            with ThreadPoolExecutor(max_workers=num_jobs) as executor:
                futures = [executor.submit(context.capability.classify, inputs[i],
                                           config.training_model, config.min_words, outputs[i])
                           for i in range(num_jobs)]
                job_results = [future.result() for future in futures]

        merged = {}
        for results in job_results:
            for otu_id, result in results.items():
                if otu_id in merged:
                    raise IntegrityError(f"Classifier returned OTU {otu_id} more than once")
                merged[otu_id] = result
        known = {otu.id for otu in otus}
        unknown = set(merged) - known
        if unknown:
            raise IntegrityError(f"Classifier returned unknown OTU ids: {sorted(unknown)[:5]}")

        classified, unclassified = [], []
        classified_sizes = empty_abundance(context.num_libs)
        unclassified_sizes = empty_abundance(context.num_libs)
        with open(output_dir / "rdp.tsv", 'w') as raw:
            for otu in otus:
                result = merged.get(otu.id)
                if result is None:
                    otu.taxonomy = ''
                    unclassified.append(otu)
                    unclassified_sizes += otu.abundance
                    continue
                fields, ranks = result
                raw.write('\t'.join([str(otu.id)] + fields) + '\n')
                otu.ranks = ranks
                otu.taxonomy = consensus_lineage(ranks, config.cutoff)
                if passes_level(ranks, config.level, config.cutoff):
                    classified.append(otu)
                    classified_sizes += otu.abundance
                else:
                    unclassified.append(otu)
                    unclassified_sizes += otu.abundance

        write_otu_table(classified, context.libraries, output_dir / "otu.tax.tsv")
        write_otu_table(unclassified, context.libraries, output_dir / "otu.unk.tsv")
        for path in inputs + outputs:
            if path.exists():
                path.unlink()

        logging.info(f"Classified {len(classified)} OTUs at {config.level} level, "
                     f"{len(unclassified)} unclassified")
        return ClassificationResult(classified, unclassified, classified_sizes, unclassified_sizes)


def taxonomy_filter(otus: List[Otu], prefixes: Sequence[str],
                    num_libs: int) -> Tuple[List[Otu], np.ndarray, np.ndarray]:
    """Keep OTUs whose lineage starts with any of ``prefixes`` (case-insensitive).

    Returns:
        Tuple of (kept OTUs, per-library kept abundance, per-library removed abundance)
    """
    pattern = re.compile('^(?:' + '|'.join(re.escape(p) for p in prefixes) + ')', re.IGNORECASE)
    kept = []
    passed = empty_abundance(num_libs)
    failed = empty_abundance(num_libs)
    for otu in otus:
        if pattern.match(otu.taxonomy):
            kept.append(otu)
            passed += otu.abundance
        else:
            failed += otu.abundance
    return kept, passed, failed
