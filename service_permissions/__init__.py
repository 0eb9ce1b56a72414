"""
Permissions engine for the Access Layer.
"""
