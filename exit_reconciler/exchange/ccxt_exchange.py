"""
ccxt-backed implementation of the conditional order exchange capability.

Only the calls the reconciler needs: list open trigger orders, fetch recent
account trades, cancel an order, contract PnL and symbol → contract mapping.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional

import ccxt.async_support as ccxt_async

from exit_reconciler.domain.models import ContractSpec, Side
from exit_reconciler.exceptions import ExchangeError, ExchangeUnavailableError
from exit_reconciler.monitoring.logger import get_logger

logger = get_logger(__name__)


class CcxtConditionalOrderExchange:
    """
    Conditional order capability over a ccxt async exchange.

    Trades come back in ccxt's unified shape, so ``trade_format`` defaults to
    "ccxt"; a venue-native format can be selected for raw ``info`` payloads.
    """

    def __init__(
        self,
        exchange_id: str,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        *,
        default_type: str = "swap",
        quote_currency: str = "USDT",
        use_testnet: bool = False,
        timeout_ms: int = 30000,
        open_orders_params: Optional[Dict[str, Any]] = None,
        trade_format: str = "ccxt",
        client: Any = None,
    ):
        """
        Args:
            exchange_id: ccxt exchange id (e.g. "gateio", "binanceusdm")
            api_key / api_secret: Credentials
            default_type: ccxt market type used for symbol mapping
            quote_currency: Quote/settle currency for perpetual symbols
            use_testnet: Enable ccxt sandbox mode
            open_orders_params: Params selecting trigger orders in fetch_open_orders
            trade_format: Trade payload format handed to the trade normalizer
            client: Pre-built ccxt exchange (tests)
        """
        self.exchange_id = exchange_id
        self.api_key = api_key
        self.api_secret = api_secret
        self.default_type = default_type
        self.quote_currency = quote_currency.upper()
        self.use_testnet = use_testnet
        self.timeout_ms = timeout_ms
        self.open_orders_params = dict(open_orders_params or {"trigger": True})
        self.trade_format = trade_format
        self.exchange = client

        # order id -> ccxt symbol, learned from open-order listings (cancel needs the symbol)
        self._order_symbols: Dict[str, str] = {}

    @classmethod
    def from_config(cls, exchange_config: Any) -> "CcxtConditionalOrderExchange":
        return cls(
            exchange_config.name,
            exchange_config.api_key,
            exchange_config.api_secret,
            default_type=exchange_config.default_type,
            quote_currency=exchange_config.quote_currency,
            use_testnet=exchange_config.use_testnet,
            timeout_ms=exchange_config.timeout_ms,
            open_orders_params=exchange_config.open_orders_params,
            trade_format=exchange_config.trade_format,
        )

    async def initialize(self) -> None:
        """
        Lazy initialization of the ccxt exchange and its markets.
        MUST be called inside the running event loop.
        """
        if self.exchange is None:
            exchange_cls = getattr(ccxt_async, self.exchange_id, None)
            if exchange_cls is None:
                raise ExchangeUnavailableError(f"Unknown ccxt exchange id: {self.exchange_id}")
            self.exchange = exchange_cls({
                "apiKey": self.api_key,
                "secret": self.api_secret,
                "enableRateLimit": True,
                "timeout": self.timeout_ms,
                "options": {"defaultType": self.default_type},
            })
            if self.use_testnet:
                self.exchange.set_sandbox_mode(True)

        try:
            await self.exchange.load_markets()
        except Exception as e:
            raise ExchangeUnavailableError(f"Failed to load {self.exchange_id} markets: {e}") from e
        logger.info("Exchange initialized", exchange=self.exchange_id, testnet=self.use_testnet)

    async def close(self) -> None:
        if self.exchange is not None:
            await self.exchange.close()

    def _require_exchange(self) -> Any:
        if self.exchange is None:
            raise ExchangeUnavailableError("Exchange not initialized; call initialize() first")
        return self.exchange

    # ------------------------------------------------------------------
    # Capability
    # ------------------------------------------------------------------

    async def list_open_conditional_orders(self) -> List[Dict[str, Any]]:
        exchange = self._require_exchange()
        try:
            orders = await exchange.fetch_open_orders(None, None, None, dict(self.open_orders_params))
        except Exception as e:
            logger.error("Failed to fetch open conditional orders", exchange=self.exchange_id, error=str(e))
            raise ExchangeError(f"{self.exchange_id} fetch_open_orders failed: {e}") from e

        for order in orders:
            if order.get("id") is not None and order.get("symbol"):
                self._order_symbols[str(order["id"])] = order["symbol"]
        logger.debug("Fetched open conditional orders", count=len(orders))
        return orders

    async def list_recent_trades(self, contract: ContractSpec, limit: int) -> List[Dict[str, Any]]:
        """
        Most recent account trades, newest first.

        ccxt returns trades oldest first; they are reversed here so callers see
        the venue-native "most recent first" order. With a venue-native
        ``trade_format`` the raw ``info`` payload of each trade is returned.
        """
        exchange = self._require_exchange()
        try:
            trades = await exchange.fetch_my_trades(contract.symbol, None, limit)
        except Exception as e:
            raise ExchangeError(f"{self.exchange_id} fetch_my_trades({contract.symbol}) failed: {e}") from e
        trades = sorted(trades, key=lambda t: t.get("timestamp") or 0, reverse=True)
        if self.trade_format == "ccxt":
            return trades
        return [t.get("info") or t for t in trades]

    async def cancel_order(self, order_id: str) -> Any:
        exchange = self._require_exchange()
        symbol = self._order_symbols.get(str(order_id))
        try:
            result = await exchange.cancel_order(order_id, symbol, dict(self.open_orders_params))
        except Exception as e:
            raise ExchangeError(f"{self.exchange_id} cancel_order({order_id}) failed: {e}") from e
        self._order_symbols.pop(str(order_id), None)
        return result

    async def compute_contract_pnl(
        self,
        entry_price: Decimal,
        exit_price: Decimal,
        quantity: Decimal,
        side: Side,
        contract: ContractSpec,
    ) -> Decimal:
        """
        Realized PnL in settle currency (base coin for inverse contracts).

        Linear:  (exit - entry) * contracts * contract_size
        Inverse: contracts * contract_size * (1/entry - 1/exit)
        Shorts take the opposite sign.
        """
        base_qty = Decimal(quantity) * contract.contract_size
        if contract.inverse:
            if entry_price == 0 or exit_price == 0:
                return Decimal("0")
            pnl = base_qty * (Decimal(1) / entry_price - Decimal(1) / exit_price)
        else:
            pnl = (exit_price - entry_price) * base_qty
        return pnl if side is Side.LONG else -pnl

    def normalize_symbol(self, symbol: str) -> ContractSpec:
        """
        Map a local symbol ("BTC", "BTC_USDT", "BTC/USDT:USDT") to the venue contract.
        """
        unified = self._unified_symbol(symbol)
        markets = getattr(self.exchange, "markets", None) or {}
        market = markets.get(unified) or {}
        contract_size = market.get("contractSize") or 1
        return ContractSpec(
            symbol=unified,
            contract_size=Decimal(str(contract_size)),
            inverse=bool(market.get("inverse")),
            settle=(market.get("settle") or self.quote_currency),
        )

    def _unified_symbol(self, symbol: str) -> str:
        s = (symbol or "").strip().upper()
        if "/" in s:
            return s
        for sep in ("_", "-"):
            if sep in s:
                s = s.split(sep)[0]
                break
        if s.endswith(self.quote_currency) and len(s) > len(self.quote_currency):
            s = s[: -len(self.quote_currency)]
        q = self.quote_currency
        return f"{s}/{q}:{q}"
