"""Shared helpers: path resolution and secret redaction."""
