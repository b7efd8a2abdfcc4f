"""Narrow interface to the black-box sequence tools.

One method per external contract. Arguments are typed values and commands
are built as argument lists, never shell strings, so every backend can be
replaced by a test double.
"""

import logging
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from iterotu.errors import ExternalToolError

Hit = Tuple[int, int]
Classification = List[Tuple[str, str, float]]


def run_tool(cmd: List[str]) -> subprocess.CompletedProcess:
    """Run an external executable, raising ExternalToolError on failure."""
    logging.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=True
        )
    except FileNotFoundError as e:
        logging.error(f"{cmd[0]} not found in PATH")
        raise ExternalToolError(cmd, 127, stderr=str(e)) from e
    except subprocess.CalledProcessError as e:
        logging.error(f"{cmd[0]} failed with return code {e.returncode}")
        logging.error(f"Command: {' '.join(cmd)}")
        logging.error(f"Stderr: {e.stderr}")
        raise ExternalToolError(cmd, e.returncode, e.stdout, e.stderr) from e
    if result.stderr:
        logging.debug(f"{cmd[0]} stderr: {result.stderr}")
    return result


class Capability(ABC):
    """Cluster, search, chimera-check and classify contracts.

    Implementations must be safe to call from several threads at once for
    ``classify``; all other calls are made sequentially by the pipeline.
    """

    def __init__(self):
        self.tool_seconds = 0.0
        self._timer_lock = threading.Lock()

    def check_tools(self, chimera: bool, classify: bool) -> None:
        """Raise ConfigurationError when an executable needed by the run is missing.

        Called once before any processing. Backends without external tools
        have nothing to check.
        """

    def _timed(self, cmd: List[str]) -> subprocess.CompletedProcess:
        start = time.monotonic()
        try:
            return run_tool(cmd)
        finally:
            with self._timer_lock:
                self.tool_seconds += time.monotonic() - start

    @abstractmethod
    def cluster(self, input_fasta: Path, radius: int,
                output_fasta: Optional[Path] = None) -> Path:
        """Cluster an abundance-ranked FASTA at ``radius`` percent mismatch.

        Always single-threaded. Records are seeded in input order, so earlier
        (lower id) records become representatives first.

        Returns:
            Path of the representative FASTA
        """

    @abstractmethod
    def search(self, query_fasta: Path, db_fasta: Path, identity: float,
               threads: int) -> List[Hit]:
        """Map every query to its best database record at ``identity`` or better.

        Returns:
            List of (query_id, target_id); queries without a hit are absent
        """

    @abstractmethod
    def chimera_check(self, candidate_fasta: Path, reference_db: Path,
                      output_fasta: Optional[Path] = None) -> Path:
        """Return the path of a FASTA holding only the non-chimeric candidates."""

    @abstractmethod
    def classify(self, sequence_fasta: Path, training_model: str, min_words: int,
                 output_tsv: Optional[Path] = None) -> Dict[int, Tuple[List[str], Classification]]:
        """Classify sequences.

        Returns:
            Dict of record id -> (raw result fields, ranked (taxon, rank, confidence))
            in classifier output order; unclassified records are absent
        """


def sibling(path: Path, suffix: str) -> Path:
    """Return ``path`` with ``suffix`` appended to its name."""
    return path.with_name(path.name + suffix)
