"""
Override layer.

Blocks deny and bypasses allow independently of any ruleset. The decision
pipeline consults them before resolving grants: block, then admin, then
bypass.
"""
