"""Write RescArch live media with optional offline repository and persistence."""

from .__version__ import __version__

__all__ = ["__version__"]
