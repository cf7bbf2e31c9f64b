"""
Downstream Sync - keeps downstream forks synchronized with upstream repositories.

This package detects which upstream commits a downstream repository is missing,
classifies the downstream-only carry commits, replays everything onto a working
branch and optionally publishes the result as a pull request.
"""

__version__ = "1.0.0"
