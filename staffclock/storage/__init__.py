"""Revision-checked document storage."""
