# ==== SERVICES PACKAGE ==== #

"""
Services package for ledger business logic.

This package contains the rate engine, invoice lifecycle, receivable
ledger, collection processing, credit/debit notes, compliance sinks,
reporting and the per-entity ledger lock.
"""
