"""
shardcache command line interface.

Simulation tools for the ring and the stampede guard; see ``shardcache --help``.
"""

from .main import cli, main

__all__ = ["main", "cli"]
