"""Durable job scheduling and work-directory management for repository automations."""

__version__ = "0.1.0"
