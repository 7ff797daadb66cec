"""
imagepatcher - cross-architecture container image patch-and-publish orchestrator
"""

__version__ = "0.3.0"

from .core import ImagePatcher
from .errors import PatcherError

__all__ = ["ImagePatcher", "PatcherError"]
