"""
Pause gate and per-id reentrancy guard for ledger entry points.
"""

from contextlib import contextmanager
from typing import Iterator, Set

from shared.errors import PausedError, ReentrancyError


class PauseGate:
    """Global stop switch checked by every mutating entry point."""

    def __init__(self):
        self._paused = False

    @property
    def paused(self) -> bool:
        return self._paused

    def pause(self) -> None:
        self._paused = True

    def unpause(self) -> None:
        self._paused = False

    def check(self) -> None:
        if self._paused:
            raise PausedError()


class ReentrancyGuard:
    """Explicit call-in-progress flag per entitlement id.

    A second mutating call for an id whose call is still on the stack (for
    example from an event subscriber) is rejected.
    """

    def __init__(self):
        self._in_progress: Set[int] = set()

    @contextmanager
    def enter(self, entitlement_id: int) -> Iterator[None]:
        if entitlement_id in self._in_progress:
            raise ReentrancyError(details={"id": entitlement_id})
        self._in_progress.add(entitlement_id)
        try:
            yield
        finally:
            self._in_progress.discard(entitlement_id)

    def in_progress(self, entitlement_id: int) -> bool:
        return entitlement_id in self._in_progress
