"""Enrollment capture, review and profile persistence."""
