"""End-to-end runs using the in-process edlib backend."""

import json
import logging

import pytest
from Bio import SeqIO

from conftest import SEQ_A, SEQ_B, SEQ_C, FakeCapability, mutate, write_seqobs
from iterotu.capability import EdlibCapability
from iterotu.config import PipelineConfig
from iterotu.core import Orchestrator, main
from iterotu.errors import LibraryIntegrityError


@pytest.fixture
def data_dir(tmp_path):
    """Two libraries with a 1-mismatch variant of each abundant sequence.

    lib1 also holds a singlet variant of SEQ_A, lib2 an unrelated singlet.
    """
    path = tmp_path / "data"
    path.mkdir()
    write_seqobs(path / "lib1.seqobs.tsv", "lib1", {
        SEQ_A: 50, mutate(SEQ_A, 10): 5, SEQ_B: 30, mutate(SEQ_A, 50): 1,
    })
    write_seqobs(path / "lib2.seqobs.tsv", "lib2", {
        SEQ_A: 20, SEQ_B: 10, mutate(SEQ_B, 5): 3, SEQ_C: 1,
    })
    return path


def _run(data_dir, output_dir, **kwargs):
    kwargs.setdefault("max_radius", 2)
    kwargs.setdefault("chunk_size", 2)
    config = PipelineConfig(data_dir=data_dir, output_dir=output_dir, min_lib_size=0,
                            tmp_dir=output_dir.parent, **kwargs)
    config.validate()
    return Orchestrator(config, EdlibCapability()).run()


class TestPipeline:
    def test_clusters_variants_and_maps_singlets(self, data_dir, tmp_path):
        output_dir = tmp_path / "otu"
        otus = _run(data_dir, output_dir)

        assert [(o.id, o.sequence, o.abundance.tolist()) for o in otus] == [
            (0, SEQ_A, [56, 20]),
            (1, SEQ_B, [30, 13]),
        ]
        table = (output_dir / "otu.tsv").read_text().splitlines()
        assert table == ["#OTU_ID\tlib1\tlib2\tconsensus_taxonomy", "0\t56\t20\t", "1\t30\t13\t"]
        records = list(SeqIO.parse(str(output_dir / "otu.fasta"), "fasta"))
        assert [r.id for r in records] == ["0;size=76", "1;size=43"]

    def test_abundance_conserved(self, data_dir, tmp_path):
        output_dir = tmp_path / "otu"
        otus = _run(data_dir, output_dir)
        stats = json.loads((output_dir / "run_stats.json").read_text())
        counters = stats["counters"]

        assert stats["status"] == "ok"
        assert counters["INPUT"]["per_library"] == [86, 34]
        clustered = [int(sum(o.abundance[i] for o in otus)) for i in range(2)]
        discarded = counters["SINGLETS DISCARDED"]["per_library"]
        lost = counters["CLUSTERING LOSS"]["per_library"]
        assert [c + d + x for c, d, x in zip(clustered, discarded, lost)] == [86, 34]
        assert discarded == [0, 1]

    def test_summary_log_rows(self, data_dir, tmp_path):
        output_dir = tmp_path / "otu"
        _run(data_dir, output_dir)
        rows = [line.split("\t") for line in (output_dir / "cluster.log").read_text().splitlines()]
        assert rows[0] == ["LIB", "TOTAL", "lib1", "lib2"]
        labels = [row[0] for row in rows]
        for label in ("INPUT", "CLUSTERABLE", "SINGLETS", "CLUSTERING LOSS", "SINGLETS MAPPED",
                      "SINGLETS DISCARDED", "BEFORE REF-CHIMERA FILTER", "CLUSTERED"):
            assert label in labels
        assert "REF-CHIMERA" not in labels
        assert rows[labels.index("SINGLETS PCT")] == ["SINGLETS PCT", "1.7%", "1.2%", "2.9%"]

    def test_deterministic(self, data_dir, tmp_path):
        _run(data_dir, tmp_path / "run1")
        _run(data_dir, tmp_path / "run2", chunk_size=100)
        first = (tmp_path / "run1" / "otu.fasta").read_text()
        assert first == (tmp_path / "run2" / "otu.fasta").read_text()

    def test_chimera_filter_applied(self, data_dir, tmp_path):
        reference = tmp_path / "ref.fasta"
        reference.write_text(f">ref\n{SEQ_A}\n")
        output_dir = tmp_path / "otu"
        config = PipelineConfig(data_dir=data_dir, output_dir=output_dir, min_lib_size=0,
                                max_radius=1, reference_db=reference, tmp_dir=tmp_path)
        otus = Orchestrator(config, FakeCapability(nonchimeric={0})).run()
        # exact-sequence fake keeps both variants as separate representatives
        assert [o.sequence for o in otus] == [SEQ_A]
        stats = json.loads((output_dir / "run_stats.json").read_text())
        assert stats["counters"]["REF-CHIMERA"]["total"] == 48
        assert stats["counters"]["BEFORE REF-CHIMERA FILTER"]["total"] == 118

    def test_failure_still_writes_stats(self, data_dir, tmp_path):
        write_seqobs(data_dir / "lib3.seqobs.tsv", "lib3", {SEQ_A: 2}, declared=5)
        output_dir = tmp_path / "otu"
        with pytest.raises(LibraryIntegrityError):
            _run(data_dir, output_dir)
        stats = json.loads((output_dir / "run_stats.json").read_text())
        assert stats["status"] == "LibraryIntegrityError"

    def test_unexpected_failure_recorded_in_stats(self, data_dir, tmp_path):
        class Broken(FakeCapability):
            def cluster(self, input_fasta, radius, output_fasta=None):
                raise RuntimeError("cluster crashed")

        output_dir = tmp_path / "otu"
        config = PipelineConfig(data_dir=data_dir, output_dir=output_dir, min_lib_size=0,
                                max_radius=1, tmp_dir=tmp_path)
        with pytest.raises(RuntimeError):
            Orchestrator(config, Broken()).run()
        stats = json.loads((output_dir / "run_stats.json").read_text())
        assert stats["status"] == "RuntimeError"


class TestMain:
    @pytest.fixture(autouse=True)
    def restore_logging(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        for handler in root.handlers[:]:
            if handler not in handlers:
                root.removeHandler(handler)
                handler.close()
        for handler in handlers:
            if handler not in root.handlers:
                root.addHandler(handler)
        root.setLevel(level)

    def test_cli_run(self, data_dir, tmp_path):
        output_dir = tmp_path / "cli"
        main(["--data-dir", str(data_dir), "-O", str(output_dir), "--backend", "edlib",
              "--max-radius", "1", "--min-lib-size", "0", "--threads", "1"])
        assert (output_dir / "otu.fasta").exists()
        assert (output_dir / "run.log").exists()

    def test_configuration_error_exit_code(self, data_dir, tmp_path):
        with pytest.raises(SystemExit) as excinfo:
            main(["--data-dir", str(data_dir), "-O", str(tmp_path / "bad"), "--max-radius", "9"])
        assert excinfo.value.code == 2

    def test_undecodable_input_exit_code(self, tmp_path):
        data_dir = tmp_path / "corrupt"
        data_dir.mkdir()
        (data_dir / "lib1.seqobs.tsv").write_bytes(b"lib=lib1;size=3\nAC\xff\xfeGT\t3\n")
        output_dir = tmp_path / "out"
        with pytest.raises(SystemExit) as excinfo:
            main(["--data-dir", str(data_dir), "-O", str(output_dir), "--backend", "edlib",
                  "--min-lib-size", "0", "--threads", "1"])
        assert excinfo.value.code == 3
        stats = json.loads((output_dir / "run_stats.json").read_text())
        assert stats["status"] == "IntegrityError"
