"""
AI Credit Meter.

Credit metering and settlement core for a conversational-AI proxy.
"""

__version__ = "0.1.0"
