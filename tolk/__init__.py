"""Role resolution and membership invariants for organizations and projects."""

__version__ = "0.1.0"
