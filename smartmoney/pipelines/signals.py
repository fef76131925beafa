"""Trade → signal derivation for the followed-wallet feed.

The poller calls SignalFetcher once per address; the fetcher pulls the
address's recent trades and keeps those inside the lookback window.
"""

import logging
from collections.abc import Mapping
from typing import Any, Awaitable, Callable

from smartmoney.config import settings
from smartmoney.orchestrator.schemas import Signal, Trade
from smartmoney.pipelines.priority_poller import ScoreOf
from smartmoney.services.cache import normalize_key
from smartmoney.services.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

TradesFetcher = Callable[[str, int], Awaitable[list[dict[str, Any]]]]


def _build_description(trade: Trade) -> str:
    action = "Buy" if trade.side == "BUY" else "Sell"
    outcome = f" ({trade.outcome_label})" if trade.outcome_label else ""
    title = trade.market_title or f"Market {trade.market_id}"
    return f"{action}{outcome} {title} @ ${trade.price:.4f} · {trade.amount:,.0f} shares"


def trade_to_signal(trade: Trade, smart_score: float | None = None) -> Signal:
    return Signal(
        id=trade.tx_hash or f"trade-{trade.id}",
        type="smart_money_entry" if trade.side == "BUY" else "exit_warning",
        addresses=[trade.wallet_address],
        smart_score=smart_score,
        description=_build_description(trade),
        created_at=trade.created_at,
        metadata={
            "trade_id": trade.id,
            "tx_hash": trade.tx_hash,
            "market_id": trade.market_id,
            "price": trade.price,
            "amount": trade.amount,
            "pnl": trade.profit,
            "action": trade.side,
            "outcome_label": trade.outcome_label,
        },
    )


class SignalFetcher:
    """Callable that turns one address's recent trades into signal dicts."""

    def __init__(
        self,
        fetch_trades: TradesFetcher,
        clock: Clock | None = None,
        lookback_minutes: int | None = None,
        limit_per_address: int | None = None,
        smart_scores: ScoreOf | None = None,
    ):
        self.fetch_trades = fetch_trades
        self.clock = clock or SystemClock()
        self.lookback_minutes = lookback_minutes or settings.signal_lookback_minutes
        self.limit_per_address = limit_per_address or settings.signal_limit_per_address
        if isinstance(smart_scores, Mapping):
            scores = {normalize_key(k): v for k, v in smart_scores.items()}
            self._score_of = scores.get
        else:
            self._score_of = smart_scores or (lambda key: None)

    async def __call__(self, address: str) -> list[dict[str, Any]]:
        trades = await self.fetch_trades(address, self.limit_per_address)
        cutoff = self.clock.now() - self.lookback_minutes * 60
        score = self._score_of(normalize_key(address))

        signals = []
        for raw in trades:
            trade = Trade(**raw)
            if trade.created_at >= cutoff:
                signals.append(trade_to_signal(trade, score).model_dump())

        logger.debug(
            "Signals | address=%s | trades=%d | in_window=%d",
            address, len(trades), len(signals),
        )
        return signals
