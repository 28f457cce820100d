"""rowqueue — a relational-database-backed job queue built on SKIP LOCKED claims."""

__version__ = "0.1.0"
