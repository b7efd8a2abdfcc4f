"""Run context handed to every pipeline stage."""

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List

from iterotu.capability import Capability
from iterotu.config import PipelineConfig
from iterotu.summary import SummaryLog


@dataclass
class RunContext:
    """Everything a stage needs besides its own inputs.

    The context owns the temporary directory; stages create their files
    under ``tmp_dir`` and hand them on by path.
    """
    config: PipelineConfig
    capability: Capability
    tmp_dir: Path
    summary: SummaryLog
    libraries: List[str] = field(default_factory=list)
    stage_seconds: Dict[str, float] = field(default_factory=dict)

    @property
    def num_libs(self) -> int:
        return len(self.libraries)

    @property
    def threads(self) -> int:
        return self.config.threads

    def tmp_path(self, name: str) -> Path:
        return self.tmp_dir / name

    @contextmanager
    def timer(self, stage: str):
        """Accumulate wall time spent in ``stage``."""
        start = time.monotonic()
        try:
            yield
        finally:
            self.stage_seconds[stage] = self.stage_seconds.get(stage, 0.0) + time.monotonic() - start
