"""Collect GTFS-RT vehicle positions for a single bus route into PostgreSQL."""

__version__ = "0.1.0"
