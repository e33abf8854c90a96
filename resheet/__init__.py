"""Incremental environment propagation and evaluation for sheets of Python cells."""

__version__ = "0.1.0"
