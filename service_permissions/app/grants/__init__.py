"""
Grant resolution package: accounts → roles → rulesets → entitlements.
"""
