"""Incremental semantic index over a corpus of text documents."""

__version__ = "0.1.0"
