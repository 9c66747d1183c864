"""
Domain protocols (interfaces) for dependency inversion.

The reconciler consumes the exchange only through this capability so that the
concrete client (ccxt-backed in production, AsyncMock in tests) can be swapped.
"""
from decimal import Decimal
from typing import Any, Dict, List, Protocol, runtime_checkable

from exit_reconciler.domain.models import ContractSpec, Side


@runtime_checkable
class ConditionalOrderExchange(Protocol):
    """
    Exchange capability used by the reconciliation loop.

    Implemented by exit_reconciler.exchange.ccxt_exchange.CcxtConditionalOrderExchange.
    """

    async def list_open_conditional_orders(self) -> List[Dict[str, Any]]:
        """Open trigger orders, each with at least an ``id``. May legitimately be empty."""
        ...

    async def list_recent_trades(self, contract: ContractSpec, limit: int) -> List[Dict[str, Any]]:
        """Most recent account trades for a contract, venue-native shape, newest first."""
        ...

    async def cancel_order(self, order_id: str) -> Any:
        """Cancel an order; raises if the venue rejects (e.g. already gone)."""
        ...

    async def compute_contract_pnl(
        self,
        entry_price: Decimal,
        exit_price: Decimal,
        quantity: Decimal,
        side: Side,
        contract: ContractSpec,
    ) -> Decimal:
        ...

    def normalize_symbol(self, symbol: str) -> ContractSpec:
        ...
