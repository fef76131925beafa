"""Smart-wallets REST API integration (profiles, wallet listing, trades).

Endpoints:
  GET /smart-wallets/{address}                 → {error, wallet}
  GET /leaderboard/user/{address}/profile      → {errno, errmsg, result}
  GET /smart-wallets/?page=&pageSize=&sortBy=  → {error, wallets, total, page, pageSize}
  GET /trade/user/{address}?page=&limit=       → list, {items}, or {result: {list}}

Every failure is raised as FetchError so the batch orchestrator can collect it
per key.
"""

import logging
import time
from typing import Any

import httpx

from smartmoney.config import settings
from smartmoney.errors import FetchError
from smartmoney.orchestrator.schemas import WalletPage, WalletProfile

logger = logging.getLogger(__name__)

TRADE_SIDES = ("BUY", "SELL", "SPLIT", "MERGE")


def normalize_address(address: str) -> str:
    address = address.strip().lower()
    return address if address.startswith("0x") else f"0x{address}"


def _to_float(value: Any, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _to_int(value: Any, default: int = 0) -> int:
    return int(_to_float(value, default))


class SmartWalletsClient:
    """Async client for the smart-money backend."""

    def __init__(self, base_url: str | None = None, timeout: int | None = None):
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self.timeout = timeout or settings.api_timeout_seconds

    # ═══════════════ PROFILES ═══════════════

    async def fetch_profile(self, address: str) -> dict[str, Any]:
        """Profile for one address; falls back to the leaderboard profile when unknown."""
        address = normalize_address(address)
        try:
            data = await self._get_json(f"/smart-wallets/{address}", key=address)
            wallet = data.get("wallet") if isinstance(data, dict) else None
        except FetchError as e:
            if e.status_code != 404:
                raise
            wallet = None

        if wallet:
            return self.parse_smart_wallet(wallet)

        logger.debug("Smart wallet not found — trying leaderboard | address=%s", address)
        data = await self._get_json(f"/leaderboard/user/{address}/profile", key=address)
        result = data.get("result") if isinstance(data, dict) else None
        if not result:
            raise FetchError(address, f"profile not found for {address}", status_code=404)
        return self.parse_leaderboard_profile(result, address)

    # ═══════════════ LISTING ═══════════════

    async def fetch_page(
        self,
        page_index: int,
        page_size: int,
        sort_by: str = "total_profit",
        sort_order: str = "desc",
    ) -> WalletPage:
        """One page of the smart-wallet listing. page_index is 0-based."""
        params = {
            "page": str(page_index + 1),
            "pageSize": str(page_size),
            "sortBy": sort_by,
            "sortOrder": sort_order,
        }
        data = await self._get_json("/smart-wallets/", key=f"page-{page_index}", params=params)
        wallets = data.get("wallets") or []
        return WalletPage(
            entries=[self.parse_smart_wallet(w) for w in wallets],
            total=_to_int(data.get("total"), len(wallets)),
        )

    # ═══════════════ TRADES ═══════════════

    async def fetch_trades(self, address: str, limit: int = 50) -> list[dict[str, Any]]:
        address = normalize_address(address)
        data = await self._get_json(
            f"/trade/user/{address}", key=address, params={"page": "1", "limit": str(limit)},
        )
        if isinstance(data, list):
            items = data
        elif not isinstance(data, dict):
            items = []
        else:
            container = data.get("result") if isinstance(data.get("result"), dict) else data
            items = container.get("items") or container.get("list") or []
        return [self.parse_trade(item, address, i) for i, item in enumerate(items)]

    # ═══════════════ HTTP ═══════════════

    async def _get_json(self, path: str, key: str, params: dict[str, str] | None = None) -> Any:
        start = time.monotonic()
        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout) as client:
                resp = await client.get(path, params=params)
        except httpx.HTTPError as e:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            logger.error("SmartWallets error | %s | %dms | %s", path, elapsed_ms, str(e)[:200])
            raise FetchError(key, f"request failed: {str(e)[:200]}") from e

        elapsed_ms = int((time.monotonic() - start) * 1000)
        if resp.status_code != 200:
            log = logger.debug if resp.status_code == 404 else logger.warning
            log("SmartWallets | %s | status=%d | %dms", path, resp.status_code, elapsed_ms)
            raise FetchError(key, f"status {resp.status_code} for {path}", status_code=resp.status_code)

        try:
            data = resp.json()
        except ValueError as e:
            raise FetchError(key, f"invalid JSON from {path}", status_code=resp.status_code) from e

        logger.info("SmartWallets OK | %s | %dms", path, elapsed_ms)
        return data

    # ═══════════════ PARSING ═══════════════

    @staticmethod
    def parse_smart_wallet(wallet: dict[str, Any]) -> dict[str, Any]:
        score = wallet.get("smart_score")
        return WalletProfile(
            address=normalize_address(str(wallet.get("wallet_address", ""))),
            user_name=wallet.get("user_name") or "",
            twitter_handle=wallet.get("x_username") or "",
            ens_name=wallet.get("ens_name") or "",
            avatar_url=wallet.get("avatar_url") or "",
            smart_score=_to_float(score) if score is not None else None,
            total_profit=_to_float(wallet.get("total_profit")),
            volume=_to_float(wallet.get("volume")),
            roi=_to_float(wallet.get("roi_value")),
            win_rate=_to_float(wallet.get("win_rate_value")),
            rank=_to_int(wallet.get("rank_the_week")),
            tags=list(wallet.get("system_tags") or []),
        ).model_dump()

    @staticmethod
    def parse_leaderboard_profile(result: dict[str, Any], address: str) -> dict[str, Any]:
        score = result.get("score")
        return WalletProfile(
            address=normalize_address(str(result.get("walletAddress") or address)),
            user_name=result.get("userName") or "",
            twitter_handle=result.get("xUsername") or "",
            ens_name="",
            avatar_url=result.get("avatarUrl") or "",
            smart_score=_to_float(score) if score not in (None, "") else None,
            total_profit=_to_float(result.get("totalProfit")),
            volume=_to_float(result.get("Volume")),
            roi=0.0,
            win_rate=0.0,
            rank=_to_int(result.get("rankTheWeek")),
            tags=[],
        ).model_dump()

    @staticmethod
    def parse_trade(item: dict[str, Any], address: str, index: int) -> dict[str, Any]:
        market_id = _to_int(item.get("marketId"), index)
        side = str(item.get("side") or "").upper()
        created_at = _to_float(item.get("createdAt"), time.time())
        # the API mixes second and millisecond timestamps
        if created_at > 1e11:
            created_at = created_at / 1000

        root_id = _to_int(item.get("rootMarketId"))
        root_title = item.get("rootMarketTitle") or ""
        market_title = item.get("marketTitle") or ""
        return {
            "id": str(item.get("id") or f"{market_id}{index}"),
            "tx_hash": str(item.get("txHash") or ""),
            "wallet_address": address,
            "market_id": market_id,
            "market_title": root_title if root_id > 0 and root_title else market_title,
            "outcome_label": market_title if root_id > 0 else "",
            "side": side if side in TRADE_SIDES else "BUY",
            "price": _to_float(item.get("price")),
            "amount": _to_float(item.get("shares") or item.get("amount")),
            "profit": _to_float(item["profit"]) if item.get("profit") not in (None, "") else None,
            "created_at": created_at,
        }
