"""Backup and restore for self-hosted N8N installs."""

__version__ = "0.1.0"
