"""
Core modules for OpenCode Quota.

This package contains usage aggregation, pricing lookup, fetch caching,
and the local quota counter.
"""
