"""homedash: coordination core for a self-hosted services dashboard."""

__all__ = ["__version__"]

__version__ = "0.1.0"
