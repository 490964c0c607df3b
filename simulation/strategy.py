"""
Strategy Evaluator

A small long-only EMA crossover strategy with a paper portfolio. The session
engine feeds it one candle at a time; it answers with the events that candle
produced, in emission order:

    candle -> [fill -> trade] -> [signal -> order] -> equity

Orders are filled on the next bar's open with slippage and fees applied, so
a signal on bar N becomes a position on bar N + 1.

The runner knows nothing about sequence numbers; the event stream assigns
them when the engine publishes.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from core.schemas import Candle, EventType, Timeframe
from simulation.indicators import EmaTracker

StrategyOutput = Tuple[EventType, int, Dict[str, Any]]


@dataclass
class Position:
    qty: float
    entry_price: float
    entry_fees: float
    entry_bar: int
    entry_ts: int


@dataclass
class PendingOrder:
    order_id: str
    side: str
    reason: str
    created_bar: int


class StrategyRunner:
    """
    Incremental EMA crossover strategy with fees, slippage and position sizing.

    Example:
        >>> runner = StrategyRunner("BTCUSDT", Timeframe.M15, warmup_bars=30)
        >>> for candle in candles:
        ...     for event_type, ts, payload in runner.on_candle(candle):
        ...         ...
    """

    def __init__(
        self,
        symbol: str,
        timeframe: Timeframe,
        warmup_bars: int = 50,
        fast_period: int = 9,
        slow_period: int = 21,
        fees_bps: float = 12,
        slippage_bps: float = 8,
        max_position_pct: float = 0.85,
        initial_cash: float = 10_000.0,
        max_hold_bars: int = 96,
    ):
        if fast_period >= slow_period:
            raise ValueError("fast_period must be shorter than slow_period")
        self.symbol = symbol
        self.timeframe = Timeframe.parse(timeframe)
        self.warmup_bars = max(warmup_bars, slow_period)
        self.fees_rate = fees_bps / 10_000
        self.slippage_rate = slippage_bps / 10_000
        self.max_position_pct = max_position_pct
        self.max_hold_bars = max_hold_bars

        self.cash = initial_cash
        self.peak_equity = initial_cash
        self.position: Optional[Position] = None
        self.bar_index = 0
        self.trades_closed = 0

        self._fast = EmaTracker(fast_period)
        self._slow = EmaTracker(slow_period)
        self._prev: Optional[Tuple[float, float]] = None
        self._pending: Optional[PendingOrder] = None
        self._order_seq = 0

    def on_candle(self, candle: Candle) -> List[StrategyOutput]:
        ts = candle.timestamp_ms
        out: List[StrategyOutput] = [
            (EventType.CANDLE, ts, {"candle": candle.model_dump(), "bar_index": self.bar_index})
        ]

        if self._pending is not None:
            out.extend(self._fill(self._pending, candle))
            self._pending = None

        fast = self._fast.update(candle.close)
        slow = self._slow.update(candle.close)

        if fast is not None and slow is not None:
            if self.bar_index >= self.warmup_bars and self._prev is not None:
                out.extend(self._evaluate(candle, fast, slow))
            self._prev = (fast, slow)

        out.append((EventType.EQUITY, ts, self._equity_snapshot(candle.close)))
        self.bar_index += 1
        return out

    # ============================================
    # Signals & Orders
    # ============================================

    def _evaluate(self, candle: Candle, fast: float, slow: float) -> List[StrategyOutput]:
        prev_fast, prev_slow = self._prev
        crossed_up = prev_fast <= prev_slow and fast > slow
        crossed_down = prev_fast >= prev_slow and fast < slow
        indicators = {"ema_fast": fast, "ema_slow": slow}

        if self.position is None and crossed_up:
            return self._signal_and_order(candle, "LONG", "BUY", "ema_cross_up", indicators)

        if self.position is not None:
            held = self.bar_index - self.position.entry_bar
            if crossed_down:
                return self._signal_and_order(candle, "EXIT", "SELL", "ema_cross_down", indicators)
            if held >= self.max_hold_bars:
                return self._signal_and_order(candle, "EXIT", "SELL", "max_hold", indicators)
        return []

    def _signal_and_order(
        self,
        candle: Candle,
        direction: str,
        side: str,
        reason: str,
        indicators: Dict[str, float]
    ) -> List[StrategyOutput]:
        self._order_seq += 1
        order = PendingOrder(
            order_id=f"{self.symbol}-{self._order_seq}",
            side=side,
            reason=reason,
            created_bar=self.bar_index,
        )
        self._pending = order
        ts = candle.timestamp_ms
        return [
            (EventType.SIGNAL, ts, {
                "symbol": self.symbol,
                "direction": direction,
                "reason": reason,
                "price": candle.close,
                "indicators": indicators,
            }),
            (EventType.ORDER, ts, {
                "order_id": order.order_id,
                "symbol": self.symbol,
                "side": side,
                "type": "MARKET",
                "reason": reason,
            }),
        ]

    # ============================================
    # Fills & Portfolio
    # ============================================

    def _fill(self, order: PendingOrder, candle: Candle) -> List[StrategyOutput]:
        ts = candle.timestamp_ms
        if order.side == "BUY":
            price = candle.open * (1 + self.slippage_rate)
            notional = self.cash * self.max_position_pct
            qty = notional / price
            fees = notional * self.fees_rate
            self.cash -= notional + fees
            self.position = Position(qty=qty, entry_price=price, entry_fees=fees, entry_bar=self.bar_index, entry_ts=ts)
            return [(EventType.FILL, ts, self._fill_payload(order, qty, price, fees))]

        position = self.position
        if position is None:
            return []
        price = candle.open * (1 - self.slippage_rate)
        proceeds = position.qty * price
        exit_fees = proceeds * self.fees_rate
        self.cash += proceeds - exit_fees
        self.position = None
        self.trades_closed += 1

        gross_pnl = (price - position.entry_price) * position.qty
        total_fees = position.entry_fees + exit_fees
        trade = {
            "symbol": self.symbol,
            "side": "LONG",
            "entry_price": position.entry_price,
            "exit_price": price,
            "qty": position.qty,
            "gross_pnl": gross_pnl,
            "fees": total_fees,
            "net_pnl": gross_pnl - total_fees,
            "hold_bars": self.bar_index - position.entry_bar,
            "reason": order.reason,
            "timeframe": self.timeframe.value,
        }
        return [
            (EventType.FILL, ts, self._fill_payload(order, position.qty, price, exit_fees)),
            (EventType.TRADE, ts, trade),
        ]

    def _fill_payload(self, order: PendingOrder, qty: float, price: float, fees: float) -> Dict[str, Any]:
        return {
            "order_id": order.order_id,
            "symbol": self.symbol,
            "side": order.side,
            "qty": qty,
            "price": price,
            "fees": fees,
            "reason": order.reason,
        }

    def _equity_snapshot(self, mark_price: float) -> Dict[str, float]:
        position_value = self.position.qty * mark_price if self.position else 0.0
        equity = self.cash + position_value
        self.peak_equity = max(self.peak_equity, equity)
        drawdown = (self.peak_equity - equity) / self.peak_equity * 100 if self.peak_equity > 0 else 0.0
        return {
            "cash": self.cash,
            "position_value": position_value,
            "equity": equity,
            "drawdown_pct": drawdown,
        }
