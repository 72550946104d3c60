"""
Persistence for accounts, usage, payments and pricing.
"""
