"""
Core modules for AI Credit Meter.

This package contains cost estimation, pricing, the ledger, request
settlement and payment reconciliation.
"""
