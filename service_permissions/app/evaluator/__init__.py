"""
Evaluator package.

- pipeline: block → admin → bypass → rulesets, shared by every entry point.
- authorization: can-create, can-do and feature checks.
- filters: property-level filtering, batched or as a memoized stream pipe.
"""
