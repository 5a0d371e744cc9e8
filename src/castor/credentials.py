"""API key pool with a round-robin cursor and per-request rotation sessions."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)


class CredentialSet:
    """Ordered API keys plus a shared cursor and a set of tried indices.

    The cursor persists across requests (round-robin between requests); the
    tried set is reset at the start of every request. Mutations hold a lock so
    concurrent requests always observe a well-defined current key.
    """

    def __init__(self, keys: Iterable[str] = ()) -> None:
        self._keys: tuple[str, ...] = _clean(keys)
        self._index = 0
        self._tried: set[int] = set()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._keys)

    def __repr__(self) -> str:
        return (
            f"CredentialSet(keys=[{len(self._keys)} redacted], "
            f"current_index={self._index}, tried={sorted(self._tried)})"
        )

    @property
    def current_index(self) -> int:
        return self._index

    @property
    def tried(self) -> frozenset[int]:
        with self._lock:
            return frozenset(self._tried)

    @property
    def current_key(self) -> str | None:
        with self._lock:
            return self._keys[self._index] if self._keys else None

    def rotate(self) -> str | None:
        """Advance the cursor, marking the previous index as tried."""
        with self._lock:
            if not self._keys:
                return None
            self._tried.add(self._index)
            self._index = (self._index + 1) % len(self._keys)
            return self._keys[self._index]

    def has_tried_all(self) -> bool:
        with self._lock:
            return len(self._tried) == len(self._keys)

    def reset_tried(self) -> None:
        """Clear the tried set without moving the cursor."""
        with self._lock:
            self._tried.clear()

    def load(self, keys: Iterable[str]) -> None:
        """Replace the key list, following the current key if it is still present."""
        new_keys = _clean(keys)
        with self._lock:
            old_keys, old_index = self._keys, self._index
            new_index = 0
            if old_keys and new_keys:
                if old_keys == new_keys:
                    new_index = min(old_index, len(new_keys) - 1)
                else:
                    current = old_keys[min(old_index, len(old_keys) - 1)]
                    if current in new_keys:
                        new_index = new_keys.index(current)
            self._keys = new_keys
            self._index = new_index
            self._tried.clear()
        logger.debug("Loaded %d credentials (cursor=%d)", len(new_keys), new_index)


def _clean(keys: Iterable[str]) -> tuple[str, ...]:
    return tuple(k.strip() for k in keys if k and k.strip())


class KeyRotationSession:
    """Request-scoped rotation policy over a shared `CredentialSet`.

    Rotates before every attempt after the first; optionally rotates once more
    after a successful request for strict round-robin between requests.
    """

    def __init__(
        self, credentials: CredentialSet, *, rotate_on_success: bool = False
    ) -> None:
        self.credentials = credentials
        self.rotate_on_success = rotate_on_success
        self.start_index = credentials.current_index
        self.rotations = 0

    def on_before_attempt(self, attempt: int) -> None:
        if attempt > 1:
            self._rotate()

    def on_retryable_error(self) -> None:
        """Rotate immediately; do not combine with `on_before_attempt`."""
        self._rotate()

    def on_success(self) -> None:
        if self.rotate_on_success:
            self._rotate()

    def current_key(self) -> str | None:
        return self.credentials.current_key

    def has_tried_all(self) -> bool:
        return self.credentials.has_tried_all()

    def _rotate(self) -> None:
        if len(self.credentials) == 0:
            return
        before = self.credentials.current_index
        self.credentials.rotate()
        self.rotations += 1
        logger.info(
            "Rotated credential %d -> %d", before, self.credentials.current_index
        )
