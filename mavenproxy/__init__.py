"""A Maven repository server that layers local directories and fetches from remote upstreams."""

__version__ = "0.1.0"
__all__ = ["__version__"]