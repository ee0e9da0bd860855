"""
narrative-guard: multi-provider narrative generation with cost governance.
"""
