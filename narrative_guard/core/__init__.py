"""
Core modules for narrative-guard.

This package contains provider routing, budget governance, quality
scoring, circuit breaking and telemetry.
"""
