"""Hierarchical document extraction into a resolved object graph."""

__version__ = "0.1.0"
