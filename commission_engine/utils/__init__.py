"""Utility functions.

Audit helpers live in commission_engine.utils.audit and are imported from
there directly, since they depend on the models package.
"""

from commission_engine.utils.timeutils import as_utc, format_window, utcnow

__all__ = [
    "as_utc",
    "format_window",
    "utcnow",
]
