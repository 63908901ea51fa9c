"""
Core modules for the tip ledger.

This package contains the ledger, revenue allocation, verification and
reconciliation services, and the facade collaborators call into.
"""
