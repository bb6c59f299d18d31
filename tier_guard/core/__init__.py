"""
Core modules for Tier Guard.

This package contains tier classification, the daily quota ledger,
admission control, usage accounting and reconciliation.
"""
