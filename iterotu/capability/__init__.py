"""External capability backends (clustering, search, chimera check, classification)."""

from .base import Capability, Classification, Hit, run_tool
from .vsearch import VsearchCapability
from .edlib_backend import EdlibCapability, calculate_identity

BACKENDS = {
    'vsearch': VsearchCapability,
    'edlib': EdlibCapability,
}


def make_capability(backend: str, **kwargs) -> Capability:
    """Instantiate the capability backend registered under ``backend``."""
    return BACKENDS[backend](**kwargs)


__all__ = [
    'Capability',
    'Classification',
    'Hit',
    'run_tool',
    'VsearchCapability',
    'EdlibCapability',
    'calculate_identity',
    'make_capability',
    'BACKENDS',
]
