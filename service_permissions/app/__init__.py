"""
Permissions engine package for the Access Layer.

This package decides what an account may do with tenant data and which
fields of a record it may see. It provides:

- app.main: Service facade wiring every component, plus role/grant administration.
- app.rules: Permission grammar, data model and entity registry.
- app.catalog: Entitlement declaration, registration and the type artifact.
- app.grants: Resolution of an account's roles and rulesets into grants.
- app.overrides: Blocks and bypasses consulted before any ruleset.
- app.evaluator: Decision pipeline, can-do checks and property filtering.
- app.storage: Store interface with PostgreSQL and in-memory backends.
- app.cache: Redis-backed cache of resolved ruleset rows.

Guidelines:
- Deny by default; an unknown entity type or field is never allowed.
- Resolve grants at most once per batch or stream.
- Keep decisions observable (metrics + logs) without leaking grant contents.
"""
