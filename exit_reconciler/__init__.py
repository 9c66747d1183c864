"""
Position-exit reconciliation for stop-loss / take-profit conditional orders.
"""

__version__ = "1.0.0"
