"""
Entitlement catalog package.

- catalog: Declaration, idempotent registration and lookup of entitlements.
- permissions: Parsed entitlement used for matching.
- initializer: Ordered registration queue flushed on storage readiness.
- artifact: Generated `Literal` aliases of entitlement names.
"""
