"""
Cache package.

Provides a Redis-backed cache of ruleset rows per account and of the
entitlement table, so resolving an account's grants can skip the joins.
Decisions themselves are never cached.
"""
