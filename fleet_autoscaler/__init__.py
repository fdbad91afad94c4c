"""
Autoscaler for build farm agent pools.

This package decides, per agent pool, how many worker machines should be online
and drives AWS EC2 to converge toward that number. Sizing strategies are
pluggable per pool and resizes are rate-limited by a persisted cooldown ledger.
"""

__version__ = "0.1.0"
