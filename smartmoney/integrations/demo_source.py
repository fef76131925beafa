"""Deterministic offline wallet source used when no API base URL is configured.

Every value is derived from a hash of the address (or page index), so the
same inputs always give the same profiles, listing and trades.
"""

import hashlib
import random
import time
from typing import Any

from smartmoney.errors import FetchError
from smartmoney.integrations.smart_wallets import normalize_address
from smartmoney.orchestrator.schemas import WalletPage

DEMO_WALLET_COUNT = 250

_NAMES = [
    "whale", "oracle", "degen", "alpha", "sharp", "quant", "hodler", "punter",
    "caller", "insider", "sniper", "contrarian",
]
_TAGS = ["god_level", "sports_whale", "alpha_hunter", "event_insider", "bcp_king", "bot"]
_MARKETS = [
    "Fed cuts rates in December?",
    "BTC above $150k by year end?",
    "Will it rain in London tomorrow?",
    "Championship winner: home team?",
    "New AI model release this month?",
]


def _rng(seed: str) -> random.Random:
    digest = hashlib.sha256(seed.encode()).hexdigest()
    return random.Random(int(digest[:16], 16))


def demo_address(index: int) -> str:
    return "0x" + hashlib.sha256(f"demo-wallet-{index}".encode()).hexdigest()[:40]


def demo_profile(address: str, rank: int = 0) -> dict[str, Any]:
    address = normalize_address(address)
    rng = _rng(address)
    name = f"{rng.choice(_NAMES)}{rng.randint(1, 999)}"
    return {
        "address": address,
        "user_name": name,
        "twitter_handle": f"{name}_x" if rng.random() < 0.6 else "",
        "ens_name": f"{name}.eth" if rng.random() < 0.4 else "",
        "avatar_url": "",
        "smart_score": round(rng.uniform(5, 95), 2),
        "total_profit": round(rng.uniform(-50_000, 1_000_000), 2),
        "volume": round(rng.uniform(10_000, 5_000_000), 2),
        "roi": round(rng.uniform(-0.5, 3.0), 4),
        "win_rate": round(rng.uniform(30, 90), 2),
        "rank": rank,
        "tags": rng.sample(_TAGS, k=rng.randint(0, 2)),
    }


class DemoWalletSource:
    """Same coroutines as SmartWalletsClient, backed by generated data."""

    def __init__(self, wallet_count: int = DEMO_WALLET_COUNT, failing: set[str] | None = None):
        self.wallet_count = wallet_count
        self.failing = {normalize_address(a) for a in (failing or set())}
        ranked = sorted(
            (demo_profile(demo_address(i)) for i in range(wallet_count)),
            key=lambda p: p["total_profit"],
            reverse=True,
        )
        self._listing = [{**p, "rank": i + 1} for i, p in enumerate(ranked)]

    async def fetch_profile(self, address: str) -> dict[str, Any]:
        address = normalize_address(address)
        if address in self.failing:
            raise FetchError(address, f"demo failure for {address}", status_code=503)
        return demo_profile(address)

    async def fetch_page(
        self,
        page_index: int,
        page_size: int,
        sort_by: str = "total_profit",
        sort_order: str = "desc",
    ) -> WalletPage:
        listing = sorted(
            self._listing,
            key=lambda p: p.get(sort_by) or 0,
            reverse=sort_order == "desc",
        )
        start = page_index * page_size
        return WalletPage(entries=listing[start:start + page_size], total=len(listing))

    async def fetch_trades(self, address: str, limit: int = 50) -> list[dict[str, Any]]:
        address = normalize_address(address)
        if address in self.failing:
            raise FetchError(address, f"demo failure for {address}", status_code=503)

        # trades land on 10-minute slots so repeated calls agree within a slot
        slot = int(time.time() // 600) * 600
        rng = _rng(f"{address}:{slot}")
        trades = []
        for i in range(min(limit, rng.randint(1, 6))):
            market_id = rng.randint(1, 5000)
            trades.append({
                "id": f"{market_id}{i}",
                "tx_hash": "0x" + hashlib.sha256(f"{address}:{slot}:{i}".encode()).hexdigest(),
                "wallet_address": address,
                "market_id": market_id,
                "market_title": rng.choice(_MARKETS),
                "outcome_label": "",
                "side": rng.choice(["BUY", "BUY", "SELL"]),
                "price": round(rng.uniform(0.05, 0.95), 4),
                "amount": round(rng.uniform(10, 20_000), 2),
                "profit": None,
                "created_at": slot - rng.randint(0, 3600),
            })
        return trades
