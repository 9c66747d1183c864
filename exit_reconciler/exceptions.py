"""
Custom exception hierarchy for the exit reconciler.

Hierarchy:

    ReconcilerError (base)
    ├── OperationalError            : transient (exchange, network, timeouts)
    │   └── ExchangeError           : exchange capability call failed
    │       └── ExchangeUnavailableError
    ├── DataError                   : bad data or a failed write, skip candidate
    │   ├── StoreError
    │   ├── TradeNormalizationError
    │   └── CloseRecordError
    └── InvariantError              : illegal state transition

Rules:
    - OperationalError while listing open orders: abort the pass, retry next cycle
    - DataError / OperationalError on one candidate: log, skip that candidate
    - InvariantError: refuse the write, log, never silently continue the write
    - No exception escapes the pass boundary of the monitor loop.
"""


class ReconcilerError(Exception):
    """Base exception for all exit reconciler errors."""
    pass


# ============ OPERATIONAL (transient, retry next pass) ============

class OperationalError(ReconcilerError):
    """Transient error: exchange API, network, timeouts.

    Treatment: catch, log, try again on the next pass.
    """
    pass


class ExchangeError(OperationalError):
    """An exchange capability call raised or returned garbage."""
    pass


class ExchangeUnavailableError(ExchangeError):
    """The exchange could not be reached or is not initialized."""
    pass


# ============ DATA (bad input, skip candidate) ============

class DataError(ReconcilerError):
    """Bad data or failed persistence for a single candidate.

    Treatment: catch, log, skip the remaining steps of this candidate.
    """
    pass


class StoreError(DataError):
    """Raised when a read or write against the order store fails."""
    pass


class TradeNormalizationError(DataError):
    """Raised when a venue trade payload cannot be mapped to a TradeRecord."""
    pass


class CloseRecordError(DataError):
    """Raised when the trade ledger row or close event cannot be written."""
    pass


# ============ INVARIANT ============

class InvariantError(ReconcilerError):
    """A write would violate a lifecycle invariant (e.g. leaving a terminal status)."""
    pass
