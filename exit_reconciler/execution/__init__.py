"""
Execution module.

Normalizes venue trade payloads and records confirmed closes (trade ledger
row plus close event).
"""
