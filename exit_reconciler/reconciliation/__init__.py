"""
Reconciliation module.

    PriceOrderMonitor (scheduled passes)
        │
        ├── OrderStore (active orders, status transitions, positions)
        ├── TriggerDetector (trade-history confirmation)
        └── CloseRecorder (PnL, ledger row, close event)
"""
