"""Run configuration."""

import configparser
import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import List, Optional

from iterotu.errors import ConfigurationError

LEVELS = ('kingdom', 'phylum', 'class', 'order', 'family', 'genus')

# Taxonomy filter prefixes start with a rank-tagged taxon, e.g. k__Bacteria
TAX_FILTER_RE = re.compile(r'^[kpcofg]__\w+', re.IGNORECASE)

# INI section/key -> PipelineConfig attribute
INI_KEYS = {
    ('clustering', 'max_radius'): ('max_radius', int),
    ('clustering', 'chunk_size'): ('chunk_size', int),
    ('clustering', 'min_chunk_size'): ('min_chunk_size', int),
    ('clustering', 'max_chunk_size'): ('max_chunk_size', int),
    ('clustering', 'min_lib_size'): ('min_lib_size', int),
    ('clustering', 'min_cluster_size'): ('min_cluster_size', int),
    ('clustering', 'singlets_per_file'): ('singlets_per_file', int),
    ('clustering', 'sort_buffer'): ('sort_buffer', int),
    ('clustering', 'reference_db'): ('reference_db', str),
    ('clustering', 'backend'): ('backend', str),
    ('classifier', 'rdp_jar'): ('rdp_jar', str),
    ('classifier', 'training_model'): ('training_model', str),
    ('classifier', 'min_words'): ('min_words', int),
    ('classifier', 'cutoff'): ('cutoff', float),
    ('classifier', 'level'): ('level', str),
    ('classifier', 'tax_filter'): ('tax_filter', lambda v: [p for p in v.split('|') if p]),
}


@dataclass
class PipelineConfig:
    """Configuration for dereplication, iterative clustering and classification.

    Attributes:
        max_radius: Loosest clustering radius in percent mismatch; radii run 1..max_radius
        chunk_size: Records clustered per round (None = derive from input size)
        min_chunk_size: Lower clamp for the derived chunk size
        max_chunk_size: Upper clamp for the derived chunk size
        min_lib_size: Libraries with fewer declared reads are skipped
        min_cluster_size: Sequences with lower total abundance are treated as singlets
        singlets_per_file: Singlet records per sparse singlet file
        sort_buffer: Records held in memory before spilling a sort run
        reference_db: Reference FASTA for chimera filtering (None = no filtering)
        threads: Worker threads for search and classification
        backend: Capability backend, 'vsearch' or 'edlib'
        rdp_jar: RDP Classifier jar (falls back to $RDP_JAR_PATH)
        training_model: RDP training properties file (None = no classification)
        min_words: RDP minimum word count
        cutoff: Minimum classifier confidence
        level: Rank that must pass the cutoff for an OTU to count as classified
        tax_filter: Lineage prefixes kept by the taxonomy filter
    """
    inputs: List[Path] = field(default_factory=list)
    data_dir: Optional[Path] = None
    output_dir: Path = Path('otu')
    max_radius: int = 3
    chunk_size: Optional[int] = None
    min_chunk_size: int = 10_000
    max_chunk_size: int = 150_000
    min_lib_size: int = 1_000
    min_cluster_size: int = 2
    singlets_per_file: int = 10_000
    sort_buffer: int = 500_000
    reference_db: Optional[Path] = None
    threads: int = 1
    backend: str = 'vsearch'
    rdp_jar: Optional[str] = None
    training_model: Optional[str] = None
    min_words: int = 120
    cutoff: float = 0.5
    level: str = 'class'
    tax_filter: Optional[List[str]] = None
    keep_temp: bool = False
    tmp_dir: Optional[Path] = None

    @property
    def classification_enabled(self) -> bool:
        return self.training_model is not None

    @classmethod
    def from_args(cls, args) -> 'PipelineConfig':
        """Create config from parsed command-line arguments.

        Values from an INI file given with ``--config`` fill in any option not
        set explicitly on the command line.
        """
        config = cls()
        if getattr(args, 'config', None):
            config.apply_ini(Path(args.config))
        for f in fields(cls):
            value = getattr(args, f.name, None)
            if value is None or value == [] or value is False:
                continue
            setattr(config, f.name, value)
        if not getattr(args, 'threads', None):
            config.threads = os.cpu_count() or 1
        config.inputs = [Path(p) for p in config.inputs]
        if config.data_dir is not None:
            config.data_dir = Path(config.data_dir)
        config.output_dir = Path(config.output_dir)
        if config.reference_db is not None:
            config.reference_db = Path(config.reference_db)
        if config.tmp_dir is not None:
            config.tmp_dir = Path(config.tmp_dir)
        return config

    def apply_ini(self, path: Path) -> None:
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}")
        parser = configparser.ConfigParser()
        try:
            parser.read(path)
        except configparser.Error as e:
            raise ConfigurationError(f"Unable to parse config file {path}: {e}") from e
        for (section, key), (attr, convert) in INI_KEYS.items():
            if parser.has_option(section, key):
                raw = parser.get(section, key)
                try:
                    setattr(self, attr, convert(raw))
                except ValueError:
                    raise ConfigurationError(f"Invalid value for [{section}] {key}: {raw!r}") from None

    def validate(self) -> None:
        """Raise ConfigurationError for any missing or out-of-range parameter."""
        if not self.inputs and self.data_dir is None:
            raise ConfigurationError("No input: give seq-obs files or --data-dir")
        for path in self.inputs:
            if not path.exists():
                raise ConfigurationError(f"Input file not found: {path}")
        if self.data_dir is not None and not self.data_dir.is_dir():
            raise ConfigurationError(f"Data directory not found: {self.data_dir}")
        if not 1 <= self.max_radius <= 5:
            raise ConfigurationError(f"max_radius={self.max_radius} invalid; must be 1..5")
        if self.chunk_size is not None and self.chunk_size <= 0:
            raise ConfigurationError("chunk_size must be positive")
        if not 0 < self.min_chunk_size <= self.max_chunk_size:
            raise ConfigurationError("Chunk size bounds must satisfy 0 < min_chunk_size <= max_chunk_size")
        if self.min_lib_size < 0:
            raise ConfigurationError("min_lib_size must not be negative")
        if self.min_cluster_size < 1:
            raise ConfigurationError("min_cluster_size must be at least 1")
        if self.singlets_per_file <= 0 or self.sort_buffer <= 0:
            raise ConfigurationError("singlets_per_file and sort_buffer must be positive")
        if self.threads < 1:
            raise ConfigurationError("threads must be at least 1")
        if self.reference_db is not None and not self.reference_db.exists():
            raise ConfigurationError(f"Reference database not found: {self.reference_db}")
        if self.backend not in ('vsearch', 'edlib'):
            raise ConfigurationError(f"Unknown backend: {self.backend}")
        if self.min_words <= 0:
            raise ConfigurationError("min_words must be positive")
        if not 0 <= self.cutoff <= 1:
            raise ConfigurationError(f"Invalid cutoff {self.cutoff}; must be within 0..1")
        if self.level.lower() not in LEVELS:
            raise ConfigurationError(f"Invalid level {self.level}; must be one of {', '.join(LEVELS)}")
        self.level = self.level.lower()
        if self.classification_enabled:
            rdp_jar = self.rdp_jar or os.environ.get('RDP_JAR_PATH')
            if not rdp_jar:
                raise ConfigurationError("Classification requested but no RDP jar given (--rdp-jar or $RDP_JAR_PATH)")
            if not Path(rdp_jar).is_file():
                raise ConfigurationError(f"RDP jar not found: {rdp_jar}")
            if not Path(self.training_model).is_file():
                raise ConfigurationError(f"Training model not found: {self.training_model}")
        if self.tax_filter:
            if not self.classification_enabled:
                raise ConfigurationError("tax_filter requires a classifier training model")
            for prefix in self.tax_filter:
                if not TAX_FILTER_RE.match(prefix):
                    raise ConfigurationError(f"Invalid tax_filter {prefix!r}; expected a rank-tagged "
                                             f"lineage prefix such as k__Bacteria or p__Firmicutes")

    def to_dict(self) -> dict:
        result = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Path):
                value = str(value)
            elif f.name == 'inputs':
                value = [str(p) for p in value]
            result[f.name] = value
        return result
