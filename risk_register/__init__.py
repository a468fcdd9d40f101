"""Risk Register: risk catalog, KRI breach tracking and quarterly snapshots."""

__version__ = "1.0.0"
