"""sitekb - crawl websites and documents into a searchable knowledge base."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("sitekb")
except PackageNotFoundError:
    __version__ = "unknown"

__all__ = ["__version__"]
