"""Hotel inventory reconciliation backend."""

__version__ = "1.0.0"
