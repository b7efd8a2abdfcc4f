"""Per-stage, per-library summary counters.

Rows are appended to the summary log as soon as a stage reports them, so the
log always reflects the run up to the point of any failure.
"""

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import numpy as np


def commify(value: int) -> str:
    return f"{int(value):,}"


def percent(part: int, whole: int) -> str:
    """Percentage rounded to one decimal, or N/A for an empty denominator."""
    if not whole:
        return 'N/A'
    return f"{int(part / whole * 1000 + 0.5) / 10}%"


class SummaryLog:
    """Tab-separated summary of abundance counts per library.

    Each row holds a label, the total across libraries and one column per
    library. Rows given a denominator are followed by a matching PCT row.
    """

    def __init__(self, path: Path):
        self.path = path
        self.libraries: List[str] = []
        self.counters: Dict[str, List[int]] = {}
        self.path.write_text('')

    def set_libraries(self, libraries: Sequence[str]) -> None:
        self.libraries = list(libraries)
        self._append(['LIB', 'TOTAL'] + self.libraries)

    def add_row(self, label: str, counts: np.ndarray,
                denominator: Optional[np.ndarray] = None) -> None:
        counts = [int(x) for x in counts]
        self.counters[label] = counts
        total = sum(counts)
        self._append([label, commify(total)] + [commify(x) for x in counts])
        if denominator is not None:
            whole = [int(x) for x in denominator]
            self._append([f"{label} PCT", percent(total, sum(whole))] +
                         [percent(part, w) for part, w in zip(counts, whole)])
        logging.info(f"{label}: {commify(total)}")

    def _append(self, fields: List[str]) -> None:
        with open(self.path, 'a') as f:
            f.write('\t'.join(fields) + '\n')

    def write_json(self, path: Path, metadata: dict) -> None:
        """Write run metadata and all counters gathered so far."""
        stats = dict(metadata)
        stats['libraries'] = self.libraries
        stats['counters'] = {label: {'total': sum(counts), 'per_library': counts}
                             for label, counts in self.counters.items()}
        with open(path, 'w') as f:
            json.dump(stats, f, indent=2)
        logging.debug(f"Wrote run statistics to {path}")
