"""Batch cleanup, archive and upload pipeline for game install directories."""

__version__ = "0.4.0"
