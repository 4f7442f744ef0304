"""Embedding runtime adapters."""
