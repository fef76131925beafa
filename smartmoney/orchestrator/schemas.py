"""Pydantic models shared across all pipelines.

Split into: remote records, fetch results, progressive view, polling,
search, and API request/response bodies.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


# ═══════════════ REMOTE RECORDS ═══════════════

class WalletProfile(BaseModel):
    """Normalized smart-wallet profile (one per address)."""
    address: str
    user_name: str = ""
    twitter_handle: str = ""
    ens_name: str = ""
    avatar_url: str = ""
    smart_score: float | None = None
    total_profit: float = 0.0
    volume: float = 0.0
    roi: float = 0.0
    win_rate: float = 0.0
    rank: int = 0
    tags: list[str] = Field(default_factory=list)


class WalletPage(BaseModel):
    """One page of the remote wallet listing."""
    entries: list[dict[str, Any]] = Field(default_factory=list)
    total: int = 0


class Trade(BaseModel):
    id: str
    tx_hash: str = ""
    wallet_address: str
    market_id: int = 0
    market_title: str = ""
    outcome_label: str = ""
    side: Literal["BUY", "SELL", "SPLIT", "MERGE"] = "BUY"
    price: float = 0.0
    amount: float = 0.0
    profit: float | None = None
    created_at: float = 0.0  # epoch seconds


class Signal(BaseModel):
    """A trade surfaced as a feed item. Identity = id, recency = created_at."""
    id: str
    type: Literal["smart_money_entry", "exit_warning"]
    addresses: list[str] = Field(default_factory=list)
    smart_score: float | None = None
    description: str = ""
    created_at: float = 0.0
    metadata: dict[str, Any] = Field(default_factory=dict)


# ═══════════════ FETCH RESULTS ═══════════════

class FetchOutcome(BaseModel):
    """Result for one key. Exactly one of payload / error is set."""
    key: str
    payload: Any = None
    error: str | None = None
    status_code: int | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class BatchResult(BaseModel):
    outcomes: list[FetchOutcome] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    windows: int = 0

    @property
    def succeeded(self) -> list[FetchOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failed(self) -> list[FetchOutcome]:
        return [o for o in self.outcomes if not o.ok]


# ═══════════════ PROGRESSIVE VIEW ═══════════════

class ProgressiveItem(BaseModel):
    """One row of a progressive view.

    source is the tag consumers branch on: "cached" came from the TTLCache,
    "fetched" came from the remote source during this session, None means
    there is no payload yet (loading or error).
    """
    key: str
    payload: dict[str, Any] | None = None
    state: Literal["cached", "loading", "error"] = "loading"
    source: Literal["cached", "fetched"] | None = None
    error: str | None = None


class ProgressiveView(BaseModel):
    items: list[ProgressiveItem] = Field(default_factory=list)
    is_loading: bool = False
    has_more: bool = False
    loaded_count: int = 0
    total: int = 0


# ═══════════════ POLLING ═══════════════

class Tier(BaseModel):
    name: str
    members: list[str] = Field(default_factory=list)
    poll_interval_ms: int


class PollSnapshot(BaseModel):
    merged_results: list[dict[str, Any]] = Field(default_factory=list)
    is_loading: bool = False
    errors: list[str] = Field(default_factory=list)
    tiers: list[Tier] = Field(default_factory=list)


# ═══════════════ SEARCH ═══════════════

class SearchableRecord(BaseModel):
    """A record plus the lower-cased fields used for relevance scoring."""
    key: str
    rank: int = 0
    address: str = ""
    user_name: str = ""
    twitter_handle: str = ""
    ens_name: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any], rank: int = 0) -> SearchableRecord:
        address = str(payload.get("address", "")).lower()
        return cls(
            key=address,
            rank=payload.get("rank") or rank,
            address=address,
            user_name=str(payload.get("user_name") or "").lower(),
            twitter_handle=str(payload.get("twitter_handle") or "").lower(),
            ens_name=str(payload.get("ens_name") or "").lower(),
            payload=payload,
        )


class SearchProgress(BaseModel):
    loaded_pages: int = 0
    loaded_records: int = 0
    total_records: int = 0
    percentage: int = 0
    found_matches: int = 0


class SearchResult(BaseModel):
    query: str = ""
    results: list[dict[str, Any]] = Field(default_factory=list)
    is_searching: bool = False
    found_count: int = 0
    error: str | None = None
    superseded: bool = False
    progress: SearchProgress = Field(default_factory=SearchProgress)


# ═══════════════ API ═══════════════

class ProfilesRequest(BaseModel):
    addresses: list[str] = Field(default_factory=list)
    initial_page_size: int | None = None
    followed: bool = False


class EvictResponse(BaseModel):
    removed: int = 0
    namespaces: dict[str, int] = Field(default_factory=dict)
