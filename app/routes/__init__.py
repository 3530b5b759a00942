# ==== ROUTES PACKAGE ==== #

"""
Routes package for API endpoints.

This package contains the FastAPI routers for invoices, receivables,
collections (including the payment gateway webhook) and financial notes.
"""
