"""
Command-line interface for AI Credit Meter.
"""
