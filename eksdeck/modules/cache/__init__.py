"""
Cache Module - Black Box Interface

Purpose: Short-lived memoization of CLI listings
Interface: get(), set(), clear(), clear_all(), get_or_load()
Hidden: Entry storage, staleness evaluation

TTL is supplied by the caller on every read; entries are never swept.
"""

from .cache import CacheEntry, ResponseCache

__all__ = ["CacheEntry", "ResponseCache"]
