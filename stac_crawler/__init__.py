"""Domain-partitioned crawler that indexes STAC catalog and API collections."""

__version__ = "0.2.0"
