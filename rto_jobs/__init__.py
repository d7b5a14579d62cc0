"""Background job orchestration for the compliance back office."""

__version__ = "0.1.0"
