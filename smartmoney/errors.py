"""Error taxonomy shared by the cache, fetch and search layers.

FetchError is collected per key and attached to results, never raised across
a batch. StorageError is caught at the TTLCache boundary and turned into a
miss. StaleResultError marks a result whose generation was superseded; it is
dropped without reaching the caller.
"""


class FetchError(Exception):
    """A remote call failed for one key or one page."""

    def __init__(self, key: str, message: str = "", status_code: int | None = None):
        self.key = key
        self.status_code = status_code
        super().__init__(message or f"fetch failed for {key}")


class StorageError(Exception):
    """The backing key-value store is unreachable or rejected the operation."""


class StaleResultError(Exception):
    """An async result arrived for a generation that is no longer current."""

    def __init__(self, generation: int, current: int):
        self.generation = generation
        self.current = current
        super().__init__(f"stale result | generation={generation} current={current}")
