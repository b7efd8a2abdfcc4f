"""
Iterotu: Dereplication and iterative OTU clustering for amplicon libraries.

Merges per-library sequence observation tables, clusters abundant sequences at
increasingly loose radii in bounded chunks, then maps rare sequences, filters
chimeras and classifies the resulting OTUs.
"""

__version__ = "0.1.0"

from .core import main

__all__ = ["main", "__version__"]
