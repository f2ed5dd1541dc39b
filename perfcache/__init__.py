"""In-process TTL/LRU caching and rolling-window performance monitoring."""

__version__ = "0.1.0"
