"""Tests for record formats at stage boundaries."""

import gzip

import numpy as np
import pytest

from conftest import write_seqobs
from iterotu.errors import IntegrityError, LibraryIntegrityError
from iterotu.records import (
    SeqObsReader,
    format_derep_header,
    format_singlet_header,
    load_derep_records,
    parse_classification_line,
    parse_record_id,
    parse_singlet_label,
    read_derep_records,
    read_hits,
    read_library_header,
    write_derep_records,
    write_otu_table,
)
from iterotu.types import DerepRecord, Otu, SingletRecord


class TestSeqObs:
    def test_reads_header_and_rows(self, tmp_path):
        path = write_seqobs(tmp_path / "a.seqobs.tsv", "A", {"ACGT": 5, "TTTT": 2})
        library = read_library_header(path)
        assert library.name == "A"
        assert library.declared_size == 7
        assert list(SeqObsReader(library)) == [("ACGT", 5), ("TTTT", 2)]

    def test_gzip_input(self, tmp_path):
        path = tmp_path / "a.seqobs.tsv.gz"
        with gzip.open(path, 'wt') as f:
            f.write("lib=A;size=3\nacgt\t3\n")
        library = read_library_header(path)
        assert list(SeqObsReader(library)) == [("ACGT", 3)]

    def test_declared_size_mismatch(self, tmp_path):
        path = write_seqobs(tmp_path / "a.seqobs.tsv", "A", {"ACGT": 5}, declared=6)
        reader = SeqObsReader(read_library_header(path))
        with pytest.raises(LibraryIntegrityError) as excinfo:
            list(reader)
        assert excinfo.value.declared == 6
        assert excinfo.value.observed == 5

    def test_unsorted_rows_rejected(self, tmp_path):
        path = tmp_path / "a.seqobs.tsv"
        path.write_text("lib=A;size=2\nTTTT\t1\nACGT\t1\n")
        with pytest.raises(IntegrityError, match="sorted"):
            list(SeqObsReader(read_library_header(path)))

    def test_bad_count_rejected(self, tmp_path):
        path = tmp_path / "a.seqobs.tsv"
        path.write_text("lib=A;size=1\nACGT\tx\n")
        with pytest.raises(IntegrityError, match="invalid count"):
            list(SeqObsReader(read_library_header(path)))

    def test_empty_sequence_rejected(self, tmp_path):
        path = tmp_path / "a.seqobs.tsv"
        path.write_text("lib=A;size=8\n\t5\nACGT\t3\n")
        with pytest.raises(IntegrityError, match="empty sequence"):
            list(SeqObsReader(read_library_header(path)))

    def test_non_nucleotide_rejected(self, tmp_path):
        path = tmp_path / "a.seqobs.tsv"
        path.write_text("lib=A;size=3\nAC1T\t3\n")
        with pytest.raises(IntegrityError, match="invalid nucleotide"):
            list(SeqObsReader(read_library_header(path)))

    def test_undecodable_bytes_rejected(self, tmp_path):
        path = tmp_path / "a.seqobs.tsv"
        path.write_bytes(b"lib=A;size=3\nAC\xff\xfeGT\t3\n")
        with pytest.raises(IntegrityError, match="unreadable"):
            list(SeqObsReader(read_library_header(path)))

    def test_corrupt_gzip_rejected(self, tmp_path):
        path = tmp_path / "a.seqobs.tsv.gz"
        path.write_text("lib=A;size=3\nACGT\t3\n")
        with pytest.raises(IntegrityError, match="unreadable"):
            list(SeqObsReader(read_library_header(path)))

    def test_bad_header_rejected(self, tmp_path):
        path = tmp_path / "a.seqobs.tsv"
        path.write_text("ACGT\t1\n")
        with pytest.raises(IntegrityError, match="header"):
            read_library_header(path)


class TestDerepRecords:
    def test_header_format(self):
        record = DerepRecord(3, "ACGT", np.array([5, 0, 2]))
        assert format_derep_header(record) == "3;size=7 obs=5,0,2"

    def test_write_and_read(self, tmp_path):
        path = tmp_path / "head.fasta"
        records = [DerepRecord(0, "ACGT", np.array([5, 3])), DerepRecord(1, "TTGG", np.array([0, 2]))]
        assert write_derep_records(records, path) == 2
        loaded = list(read_derep_records(path, 2))
        assert [r.id for r in loaded] == [0, 1]
        assert loaded[0].abundance.tolist() == [5, 3]
        assert loaded[1].sequence == "TTGG"

    def test_wrong_library_count(self, tmp_path):
        path = tmp_path / "head.fasta"
        write_derep_records([DerepRecord(0, "ACGT", np.array([5, 3]))], path)
        with pytest.raises(IntegrityError, match="expected 3"):
            list(read_derep_records(path, 3))

    def test_size_tag_mismatch(self, tmp_path):
        path = tmp_path / "head.fasta"
        path.write_text(">0;size=9 obs=5,3\nACGT\n")
        with pytest.raises(IntegrityError, match="size tag"):
            list(read_derep_records(path, 2))

    def test_duplicate_ids(self, tmp_path):
        path = tmp_path / "head.fasta"
        path.write_text(">0;size=1 obs=1\nACGT\n>0;size=1 obs=1\nTTTT\n")
        with pytest.raises(IntegrityError, match="Duplicate"):
            load_derep_records(path, 1)

    def test_parse_record_id(self):
        assert parse_record_id("12;size=4") == 12
        assert parse_record_id("7") == 7
        with pytest.raises(IntegrityError):
            parse_record_id("otu_7")


class TestSinglets:
    def test_sparse_header(self):
        record = SingletRecord(4, "ACGT", [(2, 1)])
        assert format_singlet_header(record) == "4;size=1;obs=2:1"
        assert parse_singlet_label("4;size=1;obs=2:1", 3) == (4, [(2, 1)])

    def test_dense_conversion(self):
        record = SingletRecord.from_dense(0, "ACGT", np.array([0, 1, 0]))
        assert record.pairs == [(1, 1)]
        assert record.to_dense(3).tolist() == [0, 1, 0]

    def test_library_index_out_of_range(self):
        with pytest.raises(IntegrityError, match="out of range"):
            parse_singlet_label("0;size=1;obs=5:1", 2)

    def test_size_mismatch(self):
        with pytest.raises(IntegrityError, match="size tag"):
            parse_singlet_label("0;size=2;obs=0:1", 2)


def test_read_hits(tmp_path):
    path = tmp_path / "hits.tsv"
    path.write_text("3;size=2 obs=1,1\t0;size=9\n5\t1\n")
    assert read_hits(path) == [(3, 0), (5, 1)]


def test_parse_classification_line():
    line = "0;size=5\t\tRoot\trootrank\t1.0\tBacteria\tdomain\t1.0\tFirmicutes\tphylum\t0.9\n"
    record_id, fields, ranks = parse_classification_line(line)
    assert record_id == 0
    assert fields[0] == ''
    assert ranks == [("Bacteria", "domain", 1.0), ("Firmicutes", "phylum", 0.9)]


def test_write_otu_table(tmp_path):
    otus = [Otu("ACGT", np.array([5, 3]), id=0, taxonomy="Bacteria"), Otu("TTTT", np.array([0, 1]), id=1)]
    path = tmp_path / "otu.tsv"
    write_otu_table(otus, ["A", "B"], path)
    lines = path.read_text().splitlines()
    assert lines[0] == "#OTU_ID\tA\tB\tconsensus_taxonomy"
    assert lines[1] == "0\t5\t3\tBacteria"
    assert lines[2] == "1\t0\t1\t"
