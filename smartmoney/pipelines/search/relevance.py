"""Wallet search — field matching and relevance ranking.

Fields are checked in priority order: address > user name > twitter handle
> ENS name. Each field contributes its exact, prefix or contains weight
(at most one of the three). An exact address match alone outweighs the best
possible partial score across all fields.
"""

from smartmoney.orchestrator.schemas import SearchableRecord

# field: (exact, prefix, contains)
FIELD_WEIGHTS: dict[str, tuple[int, int, int]] = {
    "address": (1000, 90, 70),
    "user_name": (80, 55, 50),
    "twitter_handle": (75, 45, 40),
    "ens_name": (70, 50, 45),
}
SEARCH_FIELDS = tuple(FIELD_WEIGHTS)


def field_score(value: str, query: str, weights: tuple[int, int, int]) -> int:
    if not value:
        return 0
    exact, prefix, contains = weights
    if value == query:
        return exact
    if value.startswith(query):
        return prefix
    if query in value:
        return contains
    return 0


def relevance_score(record: SearchableRecord, query: str) -> int:
    """Sum of per-field contributions for a lower-cased query."""
    return sum(
        field_score(getattr(record, field), query, weights)
        for field, weights in FIELD_WEIGHTS.items()
    )


def matches(record: SearchableRecord, query: str) -> bool:
    return any(query in getattr(record, field) for field in SEARCH_FIELDS)


def filter_records(records: list[SearchableRecord], query: str) -> list[SearchableRecord]:
    """Records with the query in any searchable field. Blank query keeps everything."""
    query = query.strip().lower()
    if not query:
        return list(records)
    return [r for r in records if matches(r, query)]


def sort_by_relevance(records: list[SearchableRecord], query: str) -> list[SearchableRecord]:
    """Highest score first, then ascending rank. Full ties keep their input order."""
    query = query.strip().lower()
    if not query:
        return list(records)
    return sorted(records, key=lambda r: (-relevance_score(r, query), r.rank))


def search_records(
    records: list[SearchableRecord],
    query: str,
    limit: int | None = None,
) -> list[SearchableRecord]:
    results = sort_by_relevance(filter_records(records, query), query)
    if limit and limit > 0:
        results = results[:limit]
    return results
