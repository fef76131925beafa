"""Priority poller — score-tiered polling with one timer per tier.

Keys are partitioned into five tiers by smart score. Each non-empty tier runs
its own loop: tick → batch fetch of the tier's members → merge → schedule the
next tick with loop.call_later(). Higher tiers tick more often, so request
volume is bounded by tier intervals rather than by the number of keys.

Results are stored per key and the poll that completes last for a key wins,
even if the key moved to another tier while that poll was in flight.
stop() cancels every timer and starts a new generation, so ticks that are
still running when it is called are discarded on arrival.
"""

import asyncio
import logging
from collections.abc import Mapping
from typing import Any, Callable

from smartmoney.config import settings
from smartmoney.orchestrator.schemas import PollSnapshot, Tier
from smartmoney.pipelines.batch_fetch import BatchFetchOrchestrator, Fetcher
from smartmoney.services.cache import normalize_key
from smartmoney.services.generation import GenerationCounter
from smartmoney.services.observers import ObserverList

logger = logging.getLogger(__name__)

TIER_NAMES = ("tier1", "tier2", "tier3", "tier4", "tier5")

ScoreOf = Callable[[str], float | None] | Mapping[str, float | None]


def _score_lookup(score_of: ScoreOf) -> Callable[[str], float]:
    if isinstance(score_of, Mapping):
        return lambda key: score_of.get(key) or 0
    return lambda key: score_of(key) or 0


def tier_index(score: float, thresholds: tuple[float, ...]) -> int:
    """0-based tier for a score: the first threshold strictly below it, else the last tier."""
    for index, threshold in enumerate(thresholds):
        if score > threshold:
            return index
    return len(thresholds)


def partition_tiers(
    keys: list[str],
    score_of: ScoreOf,
    thresholds: tuple[float, ...] | None = None,
    intervals_ms: tuple[int, ...] | None = None,
) -> list[Tier]:
    """Split keys into disjoint tiers covering every key exactly once.

    With thresholds (t1, t2, t3, t4): tier1 is score > t1, tier2 is
    t2 < score <= t1, ... , tier5 is score <= t4. A key without a score counts
    as 0. Always returns all five tiers, some possibly empty.
    """
    thresholds = thresholds or settings.tier_thresholds
    intervals_ms = intervals_ms or settings.tier_intervals_ms
    if list(thresholds) != sorted(thresholds, reverse=True):
        raise ValueError("tier thresholds must be in descending order")
    if len(intervals_ms) != len(thresholds) + 1:
        raise ValueError("need exactly one more interval than thresholds")

    lookup = _score_lookup(score_of)
    members: list[list[str]] = [[] for _ in intervals_ms]
    for key in dict.fromkeys(keys):
        members[tier_index(lookup(key), thresholds)].append(key)

    return [
        Tier(name=TIER_NAMES[i] if i < len(TIER_NAMES) else f"tier{i + 1}",
             members=tier_members, poll_interval_ms=intervals_ms[i])
        for i, tier_members in enumerate(members)
    ]


class PriorityPoller:
    """Runs one self-rescheduling poll loop per non-empty tier and merges their results.

    The fetcher returns a list of records for one key. Records are merged by
    recency (newest first) and de-duplicated by identity.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        thresholds: tuple[float, ...] | None = None,
        intervals_ms: tuple[int, ...] | None = None,
        batch_size: int | None = None,
        inter_batch_delay_ms: int | None = None,
        identity_of: Callable[[dict[str, Any]], Any] = lambda r: r.get("id"),
        recency_of: Callable[[dict[str, Any]], float] = lambda r: r.get("created_at") or 0,
    ):
        self.fetcher = fetcher
        self.thresholds = thresholds or settings.tier_thresholds
        self.intervals_ms = intervals_ms or settings.tier_intervals_ms
        self.batch_size = batch_size or settings.poll_batch_size
        self.inter_batch_delay_ms = inter_batch_delay_ms
        self.identity_of = identity_of
        self.recency_of = recency_of

        self._orchestrators: dict[str, BatchFetchOrchestrator] = {}
        self._tiers: list[Tier] = []
        self._keys: list[str] = []
        self._results: dict[str, list[dict[str, Any]]] = {}
        self._tier_errors: dict[str, list[str]] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._tier_epochs: dict[str, int] = {}
        self._tasks: set[asyncio.Task] = set()
        self._in_flight = 0
        self._generation = GenerationCounter()
        self._observers: ObserverList[PollSnapshot] = ObserverList()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._running = False

    # ═══════════════ HANDLE ═══════════════

    @property
    def tiers(self) -> list[Tier]:
        return [t.model_copy() for t in self._tiers]

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_loading(self) -> bool:
        return self._in_flight > 0

    @property
    def errors(self) -> list[str]:
        return [e for name in TIER_NAMES for e in self._tier_errors.get(name, [])]

    @property
    def scheduled_tiers(self) -> list[str]:
        return [name for name in TIER_NAMES if name in self._timers]

    @property
    def merged_results(self) -> list[dict[str, Any]]:
        flat = [
            record
            for tier in self._tiers
            for key in tier.members
            for record in self._results.get(key, [])
        ]
        flat.sort(key=self.recency_of, reverse=True)

        seen = set()
        merged = []
        for record in flat:
            identity = self.identity_of(record)
            if identity in seen:
                continue
            seen.add(identity)
            merged.append(record)
        return merged

    def snapshot(self) -> PollSnapshot:
        return PollSnapshot(
            merged_results=self.merged_results,
            is_loading=self.is_loading,
            errors=self.errors,
            tiers=self.tiers,
        )

    def subscribe(self, callback: Callable[[PollSnapshot], None]) -> Callable[[], None]:
        return self._observers.subscribe(callback)

    # ═══════════════ LIFECYCLE ═══════════════

    async def start(self, keys: list[str], score_of: ScoreOf) -> "PriorityPoller":
        """Partition keys, poll every tier once, then keep each tier on its own timer."""
        if self._running:
            self.stop()
        self._loop = asyncio.get_running_loop()
        self._running = True
        token = self._generation.next()
        self._results = {}
        self._tier_errors = {}
        self._apply_partition(keys, score_of)
        logger.info(
            "Poller start | keys=%d | tiers=%s | gen=%d",
            len(self._keys), [len(t.members) for t in self._tiers], token,
        )
        await self._poll_all(token)
        return self

    def update(self, keys: list[str], score_of: ScoreOf) -> None:
        """Recompute tiers after the key set or the scores change.

        Tiers whose membership changed are polled right away and rescheduled;
        tiers that became empty stop ticking.
        """
        if not self._running:
            raise RuntimeError("poller is not running")
        token = self._generation.current
        before = {t.name: list(t.members) for t in self._tiers}
        self._apply_partition(keys, score_of)

        live = set(self._keys)
        self._results = {k: v for k, v in self._results.items() if k in live}

        for tier in self._tiers:
            if before.get(tier.name) == tier.members:
                continue
            self._cancel_timer(tier.name)
            self._tier_epochs[tier.name] = self._tier_epochs.get(tier.name, 0) + 1
            if tier.members:
                self._spawn_tick(tier.name, token, self._tier_epochs[tier.name])
            else:
                self._tier_errors.pop(tier.name, None)
        logger.info("Poller update | keys=%d | tiers=%s", len(self._keys), [len(t.members) for t in self._tiers])
        self._observers.notify(self.snapshot())

    async def refetch(self) -> PollSnapshot:
        """Poll every tier once immediately, then restart their timers."""
        if not self._running:
            raise RuntimeError("poller is not running")
        for name in list(self._timers):
            self._cancel_timer(name)
        await self._poll_all(self._generation.current)
        return self.snapshot()

    def stop(self) -> None:
        """Cancel every tier timer. In-flight polls finish but are not applied."""
        for name in list(self._timers):
            self._cancel_timer(name)
        self._generation.next()
        self._running = False
        self._in_flight = 0
        logger.info("Poller stopped | gen=%d", self._generation.current)

    # ═══════════════ INTERNALS ═══════════════

    def _apply_partition(self, keys: list[str], score_of: ScoreOf) -> None:
        lookup = _score_lookup(score_of)
        self._keys = list(dict.fromkeys(normalize_key(k) for k in keys if k and k.strip()))
        scores = {}
        for key in keys:
            if key and key.strip():
                scores.setdefault(normalize_key(key), lookup(key))
        self._tiers = partition_tiers(self._keys, scores, self.thresholds, self.intervals_ms)

    def _tier(self, name: str) -> Tier | None:
        return next((t for t in self._tiers if t.name == name), None)

    def _orchestrator(self, name: str) -> BatchFetchOrchestrator:
        if name not in self._orchestrators:
            self._orchestrators[name] = BatchFetchOrchestrator(
                self.fetcher,
                concurrency=self.batch_size,
                inter_batch_delay_ms=self.inter_batch_delay_ms,
            )
        return self._orchestrators[name]

    async def _poll_all(self, token: int) -> None:
        active = [t.name for t in self._tiers if t.members]
        epochs = {name: self._tier_epochs.get(name, 0) for name in active}
        await asyncio.gather(*(self._tick(name, token, epochs[name]) for name in active))

    def _spawn_tick(self, name: str, token: int, epoch: int) -> None:
        self._timers.pop(name, None)
        if not self._generation.is_current(token):
            return
        task = asyncio.ensure_future(self._tick(name, token, epoch))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _schedule(self, name: str, token: int, epoch: int) -> None:
        tier = self._tier(name)
        if tier is None or not tier.members or self._loop is None:
            return
        self._cancel_timer(name)
        self._timers[name] = self._loop.call_later(
            tier.poll_interval_ms / 1000, self._spawn_tick, name, token, epoch,
        )

    def _cancel_timer(self, name: str) -> None:
        handle = self._timers.pop(name, None)
        if handle is not None:
            handle.cancel()

    async def _tick(self, name: str, token: int, epoch: int) -> None:
        tier = self._tier(name)
        members = list(tier.members) if tier else []
        if not members or not self._generation.is_current(token):
            return

        self._in_flight += 1
        try:
            result = await self._orchestrator(name).fetch_all(members)
        except Exception as e:
            if self._generation.is_current(token):
                if self._owns_tier(name, epoch):
                    self._tier_errors[name] = [f"{name}: {str(e)[:200]}"]
                logger.error("Poller tick failed | tier=%s | %s", name, str(e)[:200])
                self._reschedule(name, token, epoch)
            return
        finally:
            if self._generation.is_current(token):
                self._in_flight = max(0, self._in_flight - 1)

        if not self._generation.is_current(token):
            logger.debug("Poller stale tick dropped | tier=%s | gen=%d", name, token)
            return

        live = set(self._keys)
        for outcome in result.outcomes:
            if outcome.ok and outcome.key in live:
                self._results[outcome.key] = list(outcome.payload or [])
        if self._owns_tier(name, epoch):
            self._tier_errors[name] = list(result.errors)

        logger.debug(
            "Poller tick | tier=%s | members=%d | failed=%d",
            name, len(members), len(result.errors),
        )
        self._reschedule(name, token, epoch)
        self._observers.notify(self.snapshot())

    def _owns_tier(self, name: str, epoch: int) -> bool:
        # a newer tick owns the timer and the error slot once the tier's membership changed
        return self._tier_epochs.get(name, 0) == epoch

    def _reschedule(self, name: str, token: int, epoch: int) -> None:
        if self._running and self._owns_tier(name, epoch):
            self._schedule(name, token, epoch)
