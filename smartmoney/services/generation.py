"""Monotonic generation tokens for discarding superseded async results."""

from smartmoney.errors import StaleResultError


class GenerationCounter:
    """Hands out increasing generation ids; only the latest one is current.

    A consumer calls next() when it starts an operation, keeps the returned
    token, and calls check(token) once the awaited result resolves. Results
    from older tokens are never applied.
    """

    def __init__(self):
        self._current = 0

    @property
    def current(self) -> int:
        return self._current

    def next(self) -> int:
        self._current += 1
        return self._current

    def is_current(self, token: int) -> bool:
        return token == self._current

    def check(self, token: int) -> None:
        """Raise StaleResultError if token has been superseded."""
        if token != self._current:
            raise StaleResultError(token, self._current)
