"""Speichr - operations console core for Redis and Memcached connections."""

__version__ = "0.1.0"
