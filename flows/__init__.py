# ==== PREFECT FLOWS PACKAGE ==== #

"""
Prefect flows for scheduled ledger operations.

- ledger_integrity_nightly: balance invariant check and receivables snapshot
"""

from .ledger_integrity_nightly import ledger_integrity_nightly

__all__ = [
    "ledger_integrity_nightly"
]
