"""
OpenCode Quota.

Local usage-tracking and rate-limiting core for AI provider quota reporting.
"""

__version__ = "0.3.0"
