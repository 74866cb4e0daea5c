"""Shared utilities: logging, configuration, secrets and time."""
