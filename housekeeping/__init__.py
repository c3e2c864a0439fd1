"""Scheduled backups and log-table retention for a database-backed service."""

__version__ = "1.0.0"
