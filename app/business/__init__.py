# ==== BUSINESS LOGIC PACKAGE ==== #

"""
Business logic package for domain rules and policies.

This package contains the ledger error taxonomy, the explicit lifecycle
transition tables for invoices, receivables, notes and collections, and the
YAML billing policy.
"""
