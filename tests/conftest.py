"""Shared fixtures: a scripted capability double and input file writers."""

import threading
from pathlib import Path

import pytest
from Bio import SeqIO

from iterotu.capability import Capability
from iterotu.config import PipelineConfig
from iterotu.context import RunContext
from iterotu.records import parse_record_id
from iterotu.summary import SummaryLog

# 100bp sequences so a single substitution is exactly 99% identity
SEQ_A = ("ACGTTGCAAG" "GCTTAACGTA" "TCCGATGCAT" "GGATCCTAGC" "ATTGCGCATA"
         "CGGTACCATG" "TAGCTAGGCT" "AACCGGTTAC" "GTCAGTCATG" "CAGTTCAGGA")
SEQ_B = ("GGGGGCCCCC" "TTTTTAAAAA") * 5
SEQ_C = "AT" * 50

SUBSTITUTE = {'A': 'C', 'C': 'G', 'G': 'T', 'T': 'A'}


def mutate(sequence: str, *positions: int) -> str:
    """Substitute the base at each of ``positions``."""
    bases = list(sequence)
    for pos in positions:
        bases[pos] = SUBSTITUTE[bases[pos]]
    return ''.join(bases)


def write_seqobs(path: Path, name: str, rows: dict, declared: int = None) -> Path:
    """Write a seq-obs file with rows sorted by sequence."""
    if declared is None:
        declared = sum(rows.values())
    with open(path, 'w') as f:
        f.write(f"lib={name};size={declared}\n")
        for sequence in sorted(rows):
            f.write(f"{sequence}\t{rows[sequence]}\n")
    return path


def _read_fasta(path):
    return [(parse_record_id(rec.id), rec.id, str(rec.seq)) for rec in SeqIO.parse(str(path), 'fasta')]


class FakeCapability(Capability):
    """Scripted stand-in for the external tools.

    Unscripted calls behave like exact-sequence tools: clustering keeps the
    first record of each distinct sequence and search maps a query to the
    first target with the same sequence.
    """

    def __init__(self, centroids=None, hits=None, nonchimeric=None, classifications=None):
        super().__init__()
        self.centroids = centroids
        self.hits = hits
        self.nonchimeric = nonchimeric
        self.classifications = classifications or {}
        self.calls = []
        self._lock = threading.Lock()

    def _record(self, *call):
        with self._lock:
            self.calls.append(call)

    def cluster(self, input_fasta, radius, output_fasta=None):
        self._record('cluster', radius)
        output_fasta = output_fasta or input_fasta.with_name(input_fasta.name + '.centroids')
        records = _read_fasta(input_fasta)
        if self.centroids is None:
            seen = set()
            keep = []
            for _, label, sequence in records:
                if sequence not in seen:
                    seen.add(sequence)
                    keep.append((label, sequence))
        else:
            by_id = {record_id: (label, sequence) for record_id, label, sequence in records}
            keep = [by_id.get(record_id, (str(record_id), 'N')) for record_id in self.centroids]
        with open(output_fasta, 'w') as f:
            for label, sequence in keep:
                f.write(f">{label}\n{sequence}\n")
        return output_fasta

    def search(self, query_fasta, db_fasta, identity, threads):
        self._record('search', identity, threads)
        if self.hits is not None:
            return list(self.hits)
        targets = {}
        for record_id, _, sequence in _read_fasta(db_fasta):
            targets.setdefault(sequence, record_id)
        return [(record_id, targets[sequence]) for record_id, _, sequence in _read_fasta(query_fasta)
                if sequence in targets]

    def chimera_check(self, candidate_fasta, reference_db, output_fasta=None):
        self._record('chimera_check', reference_db)
        output_fasta = output_fasta or candidate_fasta.with_name(candidate_fasta.name + '.nochim')
        with open(output_fasta, 'w') as f:
            for record_id, label, sequence in _read_fasta(candidate_fasta):
                if self.nonchimeric is None or record_id in self.nonchimeric:
                    f.write(f">{label}\n{sequence}\n")
        return output_fasta

    def classify(self, sequence_fasta, training_model, min_words, output_tsv=None):
        self._record('classify', training_model, min_words)
        results = {}
        for record_id, _, sequence in _read_fasta(sequence_fasta):
            ranks = self.classifications.get(sequence)
            if ranks is None:
                continue
            fields = ['']
            for taxon, rank, confidence in ranks:
                fields += [taxon, rank, str(confidence)]
            results[record_id] = (fields, list(ranks))
        return results


@pytest.fixture
def make_context(tmp_path):
    """Build a RunContext under tmp_path with a fake capability."""
    def _make(capability=None, num_libs=2, **config_kwargs):
        config_kwargs.setdefault('output_dir', tmp_path / 'out')
        config = PipelineConfig(**config_kwargs)
        tmp_dir = tmp_path / 'tmp'
        tmp_dir.mkdir(exist_ok=True)
        return RunContext(
            config=config,
            capability=capability if capability is not None else FakeCapability(),
            tmp_dir=tmp_dir,
            summary=SummaryLog(tmp_path / 'cluster.log'),
            libraries=[f"lib{i}" for i in range(num_libs)],
        )
    return _make
