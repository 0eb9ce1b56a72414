"""
Storage package.

The engine never owns its data; it reads and writes through the
`PermissionStore` interface. Two implementations ship with it:

- memory: dictionary-backed store for tests and embedding.
- postgres: asyncpg pool with the five permission tables.
"""
