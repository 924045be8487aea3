"""Archive AI platform conversation histories into a local store."""

__version__ = "0.1.0"
