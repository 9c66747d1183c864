"""
Trade normalizer: maps venue-specific trade payloads to TradeRecord.

Each venue gets one adapter; the adapter is picked once at the exchange
boundary and every downstream consumer sees only TradeRecord.

Direction convention: TradeRecord.size is signed, negative = sell.
"""
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, List, Optional

from exit_reconciler.domain.models import TradeRecord
from exit_reconciler.exceptions import TradeNormalizationError
from exit_reconciler.monitoring.logger import get_logger

logger = get_logger(__name__)

# Anything below this is an epoch in seconds (1e11 ms is March 1973).
_SECONDS_CUTOFF = 100_000_000_000


def _first(raw: Dict[str, Any], *keys: str) -> Any:
    """First present, non-empty value among ``keys``."""
    for key in keys:
        value = raw.get(key)
        if value is not None and value != "":
            return value
    return None


def _to_decimal(value: Any, field: str, raw: Dict[str, Any]) -> Decimal:
    if value is None:
        raise TradeNormalizationError(f"Trade payload missing {field}: {raw!r}")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise TradeNormalizationError(f"Trade {field} not numeric ({value!r})") from e


def _to_millis(value: Any, raw: Dict[str, Any]) -> int:
    """Epoch millis from epoch seconds, epoch millis, numeric strings or ISO-8601."""
    if value is None:
        raise TradeNormalizationError(f"Trade payload missing timestamp: {raw!r}")
    if isinstance(value, datetime):
        return int(value.timestamp() * 1000)
    if isinstance(value, str):
        try:
            value = Decimal(value)
        except InvalidOperation:
            try:
                return int(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp() * 1000)
            except ValueError as e:
                raise TradeNormalizationError(f"Unparseable trade timestamp {value!r}") from e
    number = Decimal(str(value))
    if number < _SECONDS_CUTOFF:
        number *= 1000
    return int(number)


def _signed(amount: Decimal, side: Optional[str]) -> Decimal:
    """Apply a buy/sell side to an unsigned amount."""
    if side is None:
        return amount
    if str(side).lower() == "sell":
        return -abs(amount)
    return abs(amount)


def _fee_cost(raw_fee: Any) -> Any:
    """ccxt reports fee as {'cost': ..., 'currency': ...}."""
    if isinstance(raw_fee, dict):
        return raw_fee.get("cost")
    return raw_fee


# ---------------------------------------------------------------------------
# Venue adapters
# ---------------------------------------------------------------------------

def normalize_gate_trade(raw: Dict[str, Any]) -> TradeRecord:
    """
    Gate.io futures ``my_trades``: signed ``size`` in contracts, ``create_time``
    in (fractional) seconds, ``create_time_ms`` on newer API versions.
    """
    return TradeRecord(
        id=str(_first(raw, "id", "trade_id") or ""),
        price=_to_decimal(_first(raw, "price"), "price", raw),
        size=_to_decimal(_first(raw, "size"), "size", raw),
        fee=_to_decimal(_first(raw, "fee") or 0, "fee", raw),
        timestamp=_to_millis(_first(raw, "create_time_ms", "create_time"), raw),
    )


def normalize_binance_trade(raw: Dict[str, Any]) -> TradeRecord:
    """
    Binance USDⓈ-M ``userTrades``: unsigned ``qty`` with ``side`` BUY/SELL
    (older payloads carry a ``buyer`` flag instead), ``time`` in millis.
    """
    side = raw.get("side")
    if side is None and "buyer" in raw:
        side = "buy" if raw["buyer"] else "sell"
    qty = _to_decimal(_first(raw, "qty"), "qty", raw)
    return TradeRecord(
        id=str(_first(raw, "id", "orderId") or ""),
        price=_to_decimal(_first(raw, "price"), "price", raw),
        size=_signed(qty, side),
        fee=_to_decimal(_first(raw, "commission") or 0, "commission", raw),
        timestamp=_to_millis(_first(raw, "time"), raw),
    )


def normalize_ccxt_trade(raw: Dict[str, Any]) -> TradeRecord:
    """ccxt unified trade structure (``fetch_my_trades``)."""
    amount = _to_decimal(_first(raw, "amount"), "amount", raw)
    fee = _fee_cost(raw.get("fee"))
    if fee is None and raw.get("fees"):
        fee = sum(Decimal(str(_fee_cost(f) or 0)) for f in raw["fees"])
    return TradeRecord(
        id=str(_first(raw, "id", "order") or ""),
        price=_to_decimal(_first(raw, "price"), "price", raw),
        size=_signed(amount, raw.get("side")),
        fee=_to_decimal(fee or 0, "fee", raw),
        timestamp=_to_millis(_first(raw, "timestamp", "datetime"), raw),
    )


def normalize_generic_trade(raw: Dict[str, Any]) -> TradeRecord:
    """
    Best-effort fallback across the field names seen on supported venues.

    A signed size wins; an unsigned size is signed from ``side`` when present.
    """
    size = _to_decimal(_first(raw, "size", "qty", "amount"), "size", raw)
    if size > 0 and raw.get("side") is not None:
        size = _signed(size, raw.get("side"))
    return TradeRecord(
        id=str(_first(raw, "id", "orderId", "tradeId") or ""),
        price=_to_decimal(_first(raw, "price", "avgPrice", "deal_price"), "price", raw),
        size=size,
        fee=_to_decimal(_fee_cost(_first(raw, "fee", "commission", "fee_amount")) or 0, "fee", raw),
        timestamp=_to_millis(_first(raw, "timestamp", "time", "create_time"), raw),
    )


TRADE_ADAPTERS: Dict[str, Callable[[Dict[str, Any]], TradeRecord]] = {
    "gate": normalize_gate_trade,
    "binance": normalize_binance_trade,
    "ccxt": normalize_ccxt_trade,
    "generic": normalize_generic_trade,
}


def get_trade_adapter(venue: str) -> Callable[[Dict[str, Any]], TradeRecord]:
    """Adapter for ``venue``; unknown venues fall back to the generic adapter."""
    adapter = TRADE_ADAPTERS.get((venue or "generic").lower())
    if adapter is None:
        logger.warning("Unknown trade venue, using generic adapter", venue=venue)
        return normalize_generic_trade
    return adapter


def normalize_trade(raw: Dict[str, Any], venue: str = "generic") -> TradeRecord:
    """Normalize one venue trade payload."""
    return get_trade_adapter(venue)(raw)


def normalize_trades(raws: Iterable[Dict[str, Any]], venue: str = "generic") -> List[TradeRecord]:
    """
    Normalize a batch, preserving exchange order.

    Payloads that cannot be normalized are logged and dropped; one bad row
    must not hide the rest of the history.
    """
    adapter = get_trade_adapter(venue)
    records: List[TradeRecord] = []
    for raw in raws:
        try:
            records.append(adapter(raw))
        except TradeNormalizationError as e:
            logger.warning("Dropping unparseable trade", venue=venue, error=str(e))
    return records
