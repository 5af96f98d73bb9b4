"""Shared utilities: errors, structured logging, configuration."""
