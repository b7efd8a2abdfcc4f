"""Record formats at stage boundaries.

All string-encoded identifiers are parsed and written here; the rest of the
package only handles typed records.

Formats:
    seq-obs input     ``lib=<name>;size=<total>`` header, then
                      ``sequence<TAB>count`` rows sorted by sequence
    clusterable FASTA ``>{id};size={total} obs={c1},...,{cN}``
    singlet FASTA     ``>{id};size={total};obs={lib}:{count},...``
    hit list          ``query<TAB>target`` labels as written by the search tool
"""

import bz2
import gzip
import re
from pathlib import Path
from typing import Iterable, Iterator, List, Tuple, Union

from Bio import SeqIO

from iterotu.errors import IntegrityError, LibraryIntegrityError
from iterotu.types import DerepRecord, LibraryInfo, Otu, SingletRecord, abundance_from_counts

PathLike = Union[str, Path]

SEQOBS_HEADER_RE = re.compile(r'^#?lib=([^;\s]+);size=(\d+)$')
RECORD_ID_RE = re.compile(r'^(\d+)(?:;|$)')
SIZE_RE = re.compile(r';size=(\d+)')
SINGLET_LABEL_RE = re.compile(r'^(\d+);size=(\d+);obs=([\d:,]*)$')
NUCLEOTIDE_RE = re.compile(r'^[ACGTUNRYKMSWBDHV]+$')

# Decoding and I/O failures while reading an input table
READ_ERRORS = (UnicodeDecodeError, OSError, EOFError)


def open_text(path: PathLike, mode: str = 'rt'):
    """Open a plain, gzip or bzip2 text file based on its suffix."""
    path = str(path)
    if path.endswith('.gz'):
        return gzip.open(path, mode)
    if path.endswith('.bz2'):
        return bz2.open(path, mode)
    return open(path, mode[0])


# ============================================================================
# Seq-obs input
# ============================================================================

def parse_seqobs_header(line: str, path: PathLike = '') -> Tuple[str, int]:
    match = SEQOBS_HEADER_RE.match(line.strip())
    if not match:
        raise IntegrityError(f"Invalid seq-obs header in {path}: {line.strip()!r}")
    return match.group(1), int(match.group(2))


def read_library_header(path: PathLike) -> LibraryInfo:
    """Read only the header line of a seq-obs file."""
    try:
        with open_text(path) as f:
            line = f.readline()
    except READ_ERRORS as e:
        raise IntegrityError(f"{path}: unreadable seq-obs file ({e})") from e
    if not line:
        raise IntegrityError(f"Empty seq-obs file: {path}")
    name, size = parse_seqobs_header(line, path)
    return LibraryInfo(name=name, path=Path(path), declared_size=size)


class SeqObsReader:
    """Stream ``(sequence, count)`` rows of one library, verifying them.

    Rows must be strictly ascending by sequence. When the stream is exhausted
    the summed counts are compared with the declared library size. Decoding
    and I/O failures surface as IntegrityError.
    """

    def __init__(self, library: LibraryInfo):
        self.library = library
        self.observed = 0
        self.rows = 0

    def __iter__(self) -> Iterator[Tuple[str, int]]:
        try:
            yield from self._rows()
        except READ_ERRORS as e:
            raise IntegrityError(f"{self.library.path}: unreadable seq-obs file ({e})") from e
        if self.observed != self.library.declared_size:
            raise LibraryIntegrityError(self.library.name, self.library.declared_size, self.observed)

    def _rows(self) -> Iterator[Tuple[str, int]]:
        path = self.library.path
        with open_text(path) as f:
            header = f.readline()
            name, declared = parse_seqobs_header(header, path)
            if name != self.library.name or declared != self.library.declared_size:
                raise IntegrityError(f"Header of {path} changed while reading")
            previous = None
            for line_num, line in enumerate(f, 2):
                line = line.rstrip('\n\r')
                if not line:
                    continue
                fields = line.split('\t')
                if len(fields) != 2:
                    raise IntegrityError(f"{path}:{line_num}: expected 2 fields, found {len(fields)}")
                sequence = fields[0].strip().upper()
                if not sequence:
                    raise IntegrityError(f"{path}:{line_num}: empty sequence")
                if not NUCLEOTIDE_RE.match(sequence):
                    raise IntegrityError(f"{path}:{line_num}: invalid nucleotide in sequence {sequence[:20]!r}")
                try:
                    count = int(fields[1])
                except ValueError:
                    raise IntegrityError(f"{path}:{line_num}: invalid count {fields[1]!r}") from None
                if count <= 0:
                    raise IntegrityError(f"{path}:{line_num}: count must be positive, got {count}")
                if previous is not None and sequence <= previous:
                    raise IntegrityError(f"{path}:{line_num}: rows not strictly sorted by sequence")
                previous = sequence
                self.observed += count
                self.rows += 1
                yield sequence, count


# ============================================================================
# Tagged FASTA records
# ============================================================================

def parse_record_id(label: str) -> int:
    """Extract the numeric id from a ``{id};size=...`` label."""
    match = RECORD_ID_RE.match(label)
    if not match:
        raise IntegrityError(f"Invalid record label: {label!r}")
    return int(match.group(1))


def format_derep_header(record: DerepRecord) -> str:
    obs = ','.join(str(int(x)) for x in record.abundance)
    return f"{record.id};size={record.size} obs={obs}"


def write_derep_records(records: Iterable[DerepRecord], path: PathLike) -> int:
    """Write records to a clusterable FASTA file. Returns the record count."""
    count = 0
    with open(path, 'w') as f:
        for record in records:
            f.write(f">{format_derep_header(record)}\n{record.sequence}\n")
            count += 1
    return count


def read_derep_records(path: PathLike, num_libs: int) -> Iterator[DerepRecord]:
    """Stream records from a clusterable FASTA file, checking their tags."""
    for rec in SeqIO.parse(str(path), 'fasta'):
        record_id = parse_record_id(rec.id)
        parts = rec.description.split(None, 1)
        if len(parts) != 2 or not parts[1].startswith('obs='):
            raise IntegrityError(f"Record {rec.id} in {path} has no abundance vector")
        try:
            abundance = abundance_from_counts(int(x) for x in parts[1][4:].split(','))
        except ValueError:
            raise IntegrityError(f"Record {rec.id} in {path} has a malformed abundance vector") from None
        if len(abundance) != num_libs:
            raise IntegrityError(f"Record {rec.id} in {path} has {len(abundance)} counts, "
                                 f"expected {num_libs}")
        if (abundance < 0).any():
            raise IntegrityError(f"Record {rec.id} in {path} has a negative count")
        size_match = SIZE_RE.search(rec.id)
        if size_match and int(size_match.group(1)) != int(abundance.sum()):
            raise IntegrityError(f"Record {rec.id} in {path}: size tag does not match counts")
        yield DerepRecord(record_id, str(rec.seq), abundance)


def load_derep_records(path: PathLike, num_libs: int) -> dict:
    """Load a whole clusterable FASTA file as an ordered id -> record dict."""
    records = {}
    for record in read_derep_records(path, num_libs):
        if record.id in records:
            raise IntegrityError(f"Duplicate record id {record.id} in {path}")
        records[record.id] = record
    return records


def read_record_ids(path: PathLike) -> List[int]:
    """Return the ids of a FASTA file written by an external tool, in file order."""
    return [parse_record_id(rec.id) for rec in SeqIO.parse(str(path), 'fasta')]


# ============================================================================
# Singlets
# ============================================================================

def format_singlet_header(record: SingletRecord) -> str:
    obs = ','.join(f"{i}:{count}" for i, count in record.pairs)
    return f"{record.id};size={record.size};obs={obs}"


def parse_singlet_label(label: str, num_libs: int) -> Tuple[int, List[Tuple[int, int]]]:
    match = SINGLET_LABEL_RE.match(label)
    if not match:
        raise IntegrityError(f"Invalid singlet label: {label!r}")
    pairs = []
    for item in filter(None, match.group(3).split(',')):
        lib_index, _, count = item.partition(':')
        if not lib_index or not count:
            raise IntegrityError(f"Invalid sparse abundance item {item!r} in {label!r}")
        lib_index, count = int(lib_index), int(count)
        if lib_index >= num_libs:
            raise IntegrityError(f"Library index {lib_index} out of range in {label!r}")
        pairs.append((lib_index, count))
    if sum(count for _, count in pairs) != int(match.group(2)):
        raise IntegrityError(f"Singlet size tag does not match counts: {label!r}")
    return int(match.group(1)), pairs


def read_singlet_records(path: PathLike, num_libs: int) -> Iterator[SingletRecord]:
    for rec in SeqIO.parse(str(path), 'fasta'):
        record_id, pairs = parse_singlet_label(rec.id, num_libs)
        yield SingletRecord(record_id, str(rec.seq), pairs)


# ============================================================================
# Representatives and hits
# ============================================================================

def write_otu_fasta(otus: List[Otu], path: PathLike, with_obs: bool = True) -> None:
    """Write ranked OTUs. Each OTU must already carry its id."""
    with open(path, 'w') as f:
        for otu in otus:
            header = f"{otu.id};size={otu.size}"
            if with_obs:
                header += " obs=" + ','.join(str(int(x)) for x in otu.abundance)
            f.write(f">{header}\n{otu.sequence}\n")


def read_hits(path: PathLike) -> List[Tuple[int, int]]:
    """Parse a ``query<TAB>target`` hit list into (query_id, target_id) pairs."""
    hits = []
    with open(path) as f:
        for line in f:
            line = line.rstrip('\n')
            if not line:
                continue
            fields = line.split('\t')
            if len(fields) < 2:
                raise IntegrityError(f"Malformed hit line in {path}: {line!r}")
            hits.append((parse_record_id(fields[0]), parse_record_id(fields[1])))
    return hits


# ============================================================================
# Classifier output
# ============================================================================

def parse_classification_line(line: str) -> Tuple[int, List[str], List[Tuple[str, str, float]]]:
    """Parse one classifier result row.

    Rows are ``id<TAB>direction<TAB>`` followed by ``taxon<TAB>rank<TAB>confidence``
    triples from the root down. The root triple is dropped.
    """
    fields = line.rstrip('\n').split('\t')
    if len(fields) < 2:
        raise IntegrityError(f"Malformed classifier row: {line.strip()!r}")
    record_id = parse_record_id(fields[0])
    triples = fields[2:]
    if len(triples) % 3:
        raise IntegrityError(f"Malformed classifier row for {fields[0]}: incomplete rank triple")
    ranks = []
    for i in range(0, len(triples), 3):
        taxon, rank, confidence = triples[i:i + 3]
        if rank in ('norank', 'rootrank') or taxon == 'Root':
            continue
        try:
            ranks.append((taxon.strip('"'), rank, float(confidence)))
        except ValueError:
            raise IntegrityError(f"Invalid confidence {confidence!r} for {fields[0]}") from None
    return record_id, fields[1:], ranks


def read_classifications(path: PathLike) -> dict:
    """Read a classifier output file into an ordered id -> (fields, ranks) dict."""
    results = {}
    with open(path) as f:
        for line in f:
            if not line.strip():
                continue
            record_id, fields, ranks = parse_classification_line(line)
            if record_id in results:
                raise IntegrityError(f"Duplicate classifier result for {record_id} in {path}")
            results[record_id] = (fields, ranks)
    return results


# ============================================================================
# OTU table
# ============================================================================

def write_otu_table(otus: List[Otu], libraries: List[str], path: PathLike) -> None:
    """Write the per-library abundance table, one row per OTU, in list order."""
    with open(path, 'w') as f:
        f.write('\t'.join(['#OTU_ID'] + list(libraries) + ['consensus_taxonomy']) + '\n')
        for otu in otus:
            counts = [str(int(x)) for x in otu.abundance]
            f.write('\t'.join([str(otu.id)] + counts + [otu.taxonomy]) + '\n')
