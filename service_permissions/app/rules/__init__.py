"""
Rules package.

Defines the permission grammar and the data model shared by every other
component of the engine.

Modules of interest:
- models: Actions, PermissionRule, Role/Entitlement/Ruleset rows, Record.
- grammar: Parsing and matching of `entityType:action[:property]` strings.
- entities: Registry of entity types and their field names.
"""
