"""Question id allocation."""

from __future__ import annotations


class IdAllocator:
    """Hands out positive, strictly increasing question ids.

    Id 0 is reserved for connection-level failures and is never allocated.
    """

    __slots__ = ("_next",)

    def __init__(self, start: int = 1) -> None:
        if start < 1:
            msg = f"Question ids start at 1, got {start}"
            raise ValueError(msg)
        self._next = start

    def allocate(self) -> int:
        question_id = self._next
        self._next += 1
        return question_id

    @property
    def last(self) -> int:
        """The most recently allocated id, or 0 if none yet."""
        return self._next - 1
