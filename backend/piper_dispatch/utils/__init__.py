"""
Utility functions for Piper Dispatch.
"""

from piper_dispatch.utils.dates import to_naive_utc, utcnow

__all__ = ["utcnow", "to_naive_utc"]
