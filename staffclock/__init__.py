"""
Core package init for staffclock.

Biometric enrollment, face verification and geofenced attendance logging.
"""

__all__ = [
    "attendance",
    "detectors",
    "enrollment",
    "quality",
    "recognition",
    "storage",
    "clock",
    "config",
    "errors",
    "io_utils",
    "types",
]
