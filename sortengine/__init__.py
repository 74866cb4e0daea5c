"""
SortEngine: adaptive file categorization.

Learned category prototypes, a correction memory and a resilient
provider cascade fused into a calibrated auto-place / review /
deep-analysis decision.
"""

from .__version__ import __version__

__all__ = ["__version__"]
