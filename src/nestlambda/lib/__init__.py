"""Shared utilities: errors, logging, retries and lazy initialization."""
