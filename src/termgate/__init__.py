"""termgate - Serve terminal applications over SSH."""

__version__ = "0.1.0"
