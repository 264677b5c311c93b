"""Knowledge-graph generation pipeline for study material."""

__version__ = "0.3.0"
