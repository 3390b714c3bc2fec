"""
Utilities Module
"""

from .stable_hash import digest, stable_hex

__all__ = ["digest", "stable_hex"]
