"""vsearch and RDP Classifier backed capability."""

import logging
import os
import shutil
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from iterotu.capability.base import Capability, Classification, Hit, sibling
from iterotu.errors import ConfigurationError
from iterotu.records import read_classifications, read_hits
from iterotu.types import radius_to_identity


class VsearchCapability(Capability):
    """Runs vsearch for clustering, searching and reference chimera checks,
    and the RDP Classifier jar for taxonomy."""

    def __init__(self, vsearch: str = "vsearch", rdp_jar: Optional[str] = None,
                 java: str = "java", java_heap: Optional[str] = None):
        super().__init__()
        self.vsearch = vsearch
        self.rdp_jar = rdp_jar or os.environ.get("RDP_JAR_PATH")
        self.java = java
        self.java_heap = java_heap

    @property
    def is_available(self) -> bool:
        return shutil.which(self.vsearch) is not None

    def needs_vsearch(self, chimera: bool) -> bool:
        return True

    def check_tools(self, chimera: bool, classify: bool) -> None:
        if self.needs_vsearch(chimera) and not self.is_available:
            raise ConfigurationError(f"{self.vsearch} not found in PATH; install vsearch"
                                     + ("" if chimera else " or use --backend edlib"))
        if classify and shutil.which(self.java) is None:
            raise ConfigurationError(f"{self.java} not found in PATH; required for classification")

    def cluster(self, input_fasta: Path, radius: int,
                output_fasta: Optional[Path] = None) -> Path:
        output_fasta = output_fasta or sibling(input_fasta, ".centroids")
        cmd = [
            self.vsearch,
            "--cluster_smallmem", str(input_fasta),
            "--usersort",  # keep input (rank) order for seeding
            "--id", f"{radius_to_identity(radius):.2f}",
            "--strand", "plus",
            "--centroids", str(output_fasta),
            "--threads", "1",
            "--quiet",
        ]
        self._timed(cmd)
        return output_fasta

    def search(self, query_fasta: Path, db_fasta: Path, identity: float,
               threads: int) -> List[Hit]:
        hits_file = sibling(query_fasta, ".hits")
        cmd = [
            self.vsearch,
            "--usearch_global", str(query_fasta),
            "--db", str(db_fasta),
            "--strand", "plus",
            "--id", f"{identity:.2f}",
            "--maxaccepts", "1",
            "--maxhits", "1",
            "--userout", str(hits_file),
            "--userfields", "query+target",
            "--threads", str(threads),
            "--quiet",
        ]
        self._timed(cmd)
        try:
            return read_hits(hits_file)
        finally:
            if hits_file.exists():
                hits_file.unlink()

    def chimera_check(self, candidate_fasta: Path, reference_db: Path,
                      output_fasta: Optional[Path] = None) -> Path:
        output_fasta = output_fasta or sibling(candidate_fasta, ".nochim")
        cmd = [
            self.vsearch,
            "--uchime_ref", str(candidate_fasta),
            "--db", str(reference_db),
            "--strand", "plus",
            "--nonchimeras", str(output_fasta),
            "--quiet",
        ]
        self._timed(cmd)
        return output_fasta

    def classify(self, sequence_fasta: Path, training_model: str, min_words: int,
                 output_tsv: Optional[Path] = None) -> Dict[int, Tuple[List[str], Classification]]:
        if not self.rdp_jar:
            raise ConfigurationError("RDP Classifier jar not configured (--rdp-jar or $RDP_JAR_PATH)")
        output_tsv = output_tsv or sibling(sequence_fasta, ".rdp.tsv")
        cmd = [self.java]
        if self.java_heap:
            cmd.append(f"-Xmx{self.java_heap}")
        cmd += [
            "-jar", self.rdp_jar,
            "-q", str(sequence_fasta),
            "-o", str(output_tsv),
            "-t", training_model,
            "--minWords", str(min_words),
        ]
        self._timed(cmd)
        results = read_classifications(output_tsv)
        logging.debug(f"Classified {len(results)} sequences from {sequence_fasta.name}")
        return results
