#!/usr/bin/env python3

import argparse
import logging
import os
import shutil
import sys
import tempfile
import time
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import numpy as np
from tqdm import tqdm

try:
    from iterotu import __version__
except ImportError:
    # Fallback for when running as a script directly (e.g., in tests)
    __version__ = "dev"

from iterotu.capability import Capability, make_capability
from iterotu.chimera import ChimeraFilter
from iterotu.classify import Classifier, taxonomy_filter
from iterotu.clustering import ClusterRound, SearchRound, otu_records, rank_otus
from iterotu.config import LEVELS, PipelineConfig
from iterotu.context import RunContext
from iterotu.errors import ConfigurationError, IntegrityError, IterotuError
from iterotu.merge import MergeSummary, dereplicate, discover_libraries, select_libraries
from iterotu.records import write_otu_fasta, write_otu_table
from iterotu.singlets import SingletMapper
from iterotu.split import derive_chunk_size, split_records
from iterotu.summary import SummaryLog
from iterotu.types import IterationState, Otu, empty_abundance


class Orchestrator:
    """Drives dereplication, the radius schedule and the final output stages.

    Clustering is single-threaded by tool constraint, so every round pairs
    one clustering call on a bounded head chunk with one multi-threaded
    search of the remaining tail.
    """

    def __init__(self, config: PipelineConfig, capability: Optional[Capability] = None):
        self.config = config
        if capability is None:
            capability = make_capability(config.backend, rdp_jar=config.rdp_jar)
        capability.check_tools(chimera=config.reference_db is not None,
                               classify=config.classification_enabled)
        self.capability = capability
        self.output_dir = Path(config.output_dir)
        os.makedirs(self.output_dir, exist_ok=True)
        self.summary = SummaryLog(self.output_dir / "cluster.log")
        self.status = "running"
        self.chunk_size: Optional[int] = None
        self.rounds_per_radius = {}
        self.num_otus: Optional[int] = None
        self.merge_summary: Optional[MergeSummary] = None

    def write_stats(self, context: Optional[RunContext], elapsed: float) -> None:
        """Write run metadata and counters to JSON for diagnostics."""
        metadata = {
            "version": __version__,
            "timestamp": datetime.now().isoformat(),
            "status": self.status,
            "parameters": self.config.to_dict(),
            "chunk_size": self.chunk_size,
            "rounds_per_radius": self.rounds_per_radius,
            "num_otus": self.num_otus,
            "elapsed_seconds": round(elapsed, 2),
            "tool_seconds": round(self.capability.tool_seconds, 2),
            "stage_seconds": {k: round(v, 2) for k, v in context.stage_seconds.items()} if context else {},
        }
        if self.merge_summary is not None:
            metadata["num_clusterable"] = self.merge_summary.num_clusterable
            metadata["num_singlets"] = self.merge_summary.num_singlets
            metadata["skipped_libraries"] = self.merge_summary.skipped_libraries
        self.summary.write_json(self.output_dir / "run_stats.json", metadata)

    def run(self) -> List[Otu]:
        """Run the whole pipeline and return the final ranked OTUs.

        Summary counters gathered so far are written even when a stage fails.
        """
        start = time.monotonic()
        tmp_dir = Path(tempfile.mkdtemp(prefix="iterotu.", dir=self.config.tmp_dir))
        context = RunContext(config=self.config, capability=self.capability,
                             tmp_dir=tmp_dir, summary=self.summary)
        try:
            otus = self._run(context)
            self.status = "ok"
            return otus
        except IterotuError as e:
            self.status = type(e).__name__
            logging.error(f"Run failed: {e}")
            raise
        except Exception as e:
            self.status = type(e).__name__
            logging.error(f"Run failed with unexpected {type(e).__name__}: {e}")
            raise
        finally:
            self.write_stats(context, time.monotonic() - start)
            if self.config.keep_temp:
                logging.info(f"Temporary files kept in {tmp_dir}")
            else:
                shutil.rmtree(tmp_dir, ignore_errors=True)

    # ========================================================================
    # Pipeline Phase Helper Methods
    # ========================================================================

    def _dereplicate(self, context: RunContext) -> MergeSummary:
        """Phase 1: merge libraries, split singlets off, rank clusterable records."""
        config = self.config
        paths = list(config.inputs) if config.inputs else discover_libraries(config.data_dir)
        if not paths:
            raise ConfigurationError("No seq-obs files found")
        libraries, skipped = select_libraries(paths, config.min_lib_size)
        context.libraries = [library.name for library in libraries]
        self.summary.set_libraries(context.libraries)

        with context.timer('dereplicate'):
            merge_summary, sorter = dereplicate(libraries, context.tmp_dir, config.min_cluster_size,
                                                config.singlets_per_file, config.sort_buffer, skipped)
        self.merge_summary = merge_summary
        self.summary.add_row('INPUT', merge_summary.input_sizes)
        self.summary.add_row('CLUSTERABLE', merge_summary.clusterable_sizes, merge_summary.input_sizes)
        self.summary.add_row('SINGLETS', merge_summary.singlet_sizes, merge_summary.input_sizes)

        self.chunk_size = derive_chunk_size(merge_summary.num_clusterable, config.chunk_size,
                                            config.min_chunk_size, config.max_chunk_size)
        logging.info(f"Clustering {merge_summary.num_clusterable} sequences in chunks of {self.chunk_size}")
        with context.timer('split'):
            split_records(sorter.sorted_records(), context.tmp_path("head.fasta"),
                          context.tmp_path("tail.fasta"), self.chunk_size)
        return merge_summary

    def _cluster_radius(self, context: RunContext, state: IterationState, lost: np.ndarray) -> List[Otu]:
        """Phase 2 (one radius): alternate cluster and search rounds until the tail is empty."""
        cluster_round = ClusterRound(context, state.radius)
        search_round = SearchRound(context, state.radius, state.chunk_size)
        otus: List[Otu] = []
        with tqdm(desc=f"Clustering at {state.radius}% radius", unit="round") as pbar:
            while True:
                state.round_num += 1
                result = cluster_round.run(state.head_path)
                lost += result.lost
                otus = result.otus
                pbar.update(1)
                if not state.has_tail():
                    break
                search = search_round.run(otus, state.tail_path, state.head_path)
                state.tail_path = search.tail_path
                pbar.set_postfix(clusters=len(otus), tail=search.num_tail)
        self.rounds_per_radius[state.radius] = state.round_num
        logging.info(f"Radius {state.radius}%: {len(otus)} clusters after {state.round_num} rounds")
        return otus

    def _iterative_clustering(self, context: RunContext, merge_summary: MergeSummary) -> List[Otu]:
        """Phase 2: cluster at radius 1..max_radius, re-splitting representatives between radii."""
        head_path = context.tmp_path("head.fasta")
        tail_path = context.tmp_path("tail.fasta")
        lost = empty_abundance(context.num_libs)
        otus: List[Otu] = []
        if merge_summary.num_clusterable == 0:
            logging.warning("No clusterable sequences; skipping clustering")
            if head_path.exists():
                head_path.unlink()
        else:
            for radius in range(1, self.config.max_radius + 1):
                if radius > 1:
                    if not otus:
                        break
                    split_records(otu_records(otus), head_path, tail_path, self.chunk_size)
                state = IterationState(radius=radius, chunk_size=self.chunk_size, head_path=head_path,
                                       tail_path=tail_path if tail_path.exists() else None)
                otus = self._cluster_radius(context, state, lost)

        clustered = empty_abundance(context.num_libs)
        for otu in otus:
            clustered += otu.abundance
        if not np.array_equal(clustered + lost, merge_summary.clusterable_sizes):
            raise IntegrityError("Abundance not conserved through clustering rounds")
        self.summary.add_row('CLUSTERING LOSS', lost, merge_summary.clusterable_sizes)
        return otus

    def _map_singlets(self, context: RunContext, otus: List[Otu], merge_summary: MergeSummary) -> List[Otu]:
        """Phase 3: fold singlets matching final representatives."""
        with context.timer('singlets'):
            result = SingletMapper(context, self.config.max_radius).run(otus, merge_summary.singlet_files)
        self.summary.add_row('SINGLETS MAPPED', result.mapped, merge_summary.singlet_sizes)
        self.summary.add_row('SINGLETS DISCARDED', result.discarded, merge_summary.singlet_sizes)
        return rank_otus(otus)

    def _chimera_filter(self, context: RunContext, otus: List[Otu]) -> List[Otu]:
        """Phase 4: drop chimeric representatives, reporting their abundance as lost."""
        before = empty_abundance(context.num_libs)
        for otu in otus:
            before += otu.abundance
        self.summary.add_row('BEFORE REF-CHIMERA FILTER', before)

        result = ChimeraFilter(context).run(otus)
        if self.config.reference_db is not None:
            self.summary.add_row('REF-CHIMERA', result.lost, before)
        final = rank_otus(result.otus)
        self.summary.add_row('CLUSTERED', before - result.lost, before)
        return final

    def _write_outputs(self, context: RunContext, otus: List[Otu]) -> None:
        """Phase 5: representative FASTA, classification and the OTU tables."""
        write_otu_fasta(otus, self.output_dir / "otu.fasta", with_obs=False)

        if self.config.classification_enabled and otus:
            classification = Classifier(context).run(otus, self.output_dir)
            clustered = classification.classified_sizes + classification.unclassified_sizes
            self.summary.add_row('CLASSIFIED', classification.classified_sizes, clustered)
            self.summary.add_row('UNCLASSIFIED', classification.unclassified_sizes, clustered)

            if self.config.tax_filter:
                kept, passed, failed = taxonomy_filter(classification.classified, self.config.tax_filter,
                                                       context.num_libs)
                write_otu_table(kept, context.libraries, self.output_dir / "otu.tax.filtered.tsv")
                self.summary.add_row('TAX-FILTER PASS', passed, classification.classified_sizes)
                self.summary.add_row('TAX-FILTER FAIL', failed, classification.classified_sizes)

        write_otu_table(otus, context.libraries, self.output_dir / "otu.tsv")
        logging.info(f"Wrote {len(otus)} OTUs to {self.output_dir}")

    def _run(self, context: RunContext) -> List[Otu]:
        """Pipeline:
            1. Dereplicate libraries (k-way merge, singlet split, abundance sort)
            2. Iterative clustering at radius 1..max_radius
            3. Singlet mapping
            4. Reference chimera filter
            5. Final ranking, classification and output
        """
        merge_summary = self._dereplicate(context)
        otus = self._iterative_clustering(context, merge_summary)
        otus = self._map_singlets(context, otus, merge_summary)
        otus = self._chimera_filter(context, otus)
        self.num_otus = len(otus)
        self._write_outputs(context, otus)
        return otus


def setup_logging(log_level: str, log_file: str = None):
    """Setup logging configuration with optional file output."""
    # Clear any existing handlers
    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)

    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    logger = logging.getLogger()
    logger.setLevel(getattr(logging, log_level))
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
        return log_file

    return None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Dereplicate amplicon libraries and iteratively cluster them into OTUs"
    )
    parser.add_argument("inputs", nargs="*",
                        help="Seq-obs files, one per library (plain, .gz or .bz2)")
    parser.add_argument("--data-dir",
                        help="Directory of <lib>/seqobs.tsv[.gz|.bz2] or <lib>.seqobs.tsv files "
                             "(used when no input files are given)")
    parser.add_argument("-O", "--output-dir", default=None,
                        help="Output directory (default: otu)")
    parser.add_argument("--config",
                        help="INI file with [clustering] and [classifier] sections; "
                             "command-line options take precedence")
    parser.add_argument("--max-radius", type=int, default=None,
                        help="Loosest clustering radius in percent mismatch, 1-5 (default: 3)")
    parser.add_argument("--chunk-size", type=int, default=None,
                        help="Sequences clustered per round (default: 1/5 of clusterable sequences, "
                             "clamped to the chunk size bounds)")
    parser.add_argument("--min-chunk-size", type=int, default=None,
                        help="Lower bound for the derived chunk size (default: 10000)")
    parser.add_argument("--max-chunk-size", type=int, default=None,
                        help="Upper bound for the derived chunk size (default: 150000)")
    parser.add_argument("--min-lib-size", type=int, default=None,
                        help="Skip libraries with fewer reads (default: 1000)")
    parser.add_argument("--min-cluster-size", type=int, default=None,
                        help="Minimum total abundance for a sequence to seed clusters; "
                             "rarer sequences are mapped afterwards (default: 2)")
    parser.add_argument("--singlets-per-file", type=int, default=None,
                        help="Singlet sequences per temporary file (default: 10000)")
    parser.add_argument("--sort-buffer", type=int, default=None,
                        help="Records held in memory while sorting by abundance (default: 500000)")
    parser.add_argument("--reference-db",
                        help="Reference FASTA for chimera filtering (default: no filtering)")
    parser.add_argument("--backend", choices=["vsearch", "edlib"], default=None,
                        help="Clustering/search backend (default: vsearch)")
    parser.add_argument("--rdp-jar",
                        help="RDP Classifier jar (default: $RDP_JAR_PATH)")
    parser.add_argument("--training-model",
                        help="RDP training properties file; enables classification")
    parser.add_argument("--min-words", type=int, default=None,
                        help="RDP minimum word count (default: 120)")
    parser.add_argument("--cutoff", type=float, default=None,
                        help="Minimum classification confidence (default: 0.5)")
    parser.add_argument("--level", choices=list(LEVELS), default=None,
                        help="Rank that must reach the cutoff to count as classified (default: class)")
    parser.add_argument("--tax-filter", nargs="+", default=None, metavar="PREFIX",
                        help="Keep classified OTUs whose lineage starts with one of these prefixes (e.g. k__Fungi)")
    parser.add_argument("--threads", type=int, default=None, metavar="N",
                        help="Threads for search and classification (default: all CPUs)")
    parser.add_argument("--tmp-dir",
                        help="Directory for temporary files (default: system temp)")
    parser.add_argument("--keep-temp", action="store_true",
                        help="Keep temporary files after the run")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    parser.add_argument("--version", action="version",
                        version=f"iterotu {__version__}",
                        help="Show program's version number and exit")
    return parser


def main(argv: Optional[List[str]] = None):
    args = build_parser().parse_args(argv)

    try:
        config = PipelineConfig.from_args(args)
        os.makedirs(config.output_dir, exist_ok=True)
        setup_logging(args.log_level, str(config.output_dir / "run.log"))
        config.validate()
        logging.info(f"iterotu {__version__}: radius 1-{config.max_radius}%, {config.threads} threads, "
                     f"backend {config.backend}")
        orchestrator = Orchestrator(config)
        orchestrator.run()
    except IterotuError as e:
        logging.error(f"{type(e).__name__}: {e}")
        sys.exit(e.exit_code)


if __name__ == "__main__":
    main()
