"""Persistent order pipeline: leased work queue, retry policy and approval review."""

__version__ = "0.1.0"
