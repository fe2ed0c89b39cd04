"""FastRAG ingestion core: source connectors and the indexing pipeline."""

from .__version__ import __version__

__all__ = ["__version__"]
