"""
Explicit "changed" notifications for readers that cache store queries.

Writers announce which tables a committed transaction touched; subscribers
re-run their own repository queries. Nothing here depends on a UI framework.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable

from .logging import get_logger

logger = get_logger(__name__)

Listener = Callable[[frozenset[str]], None]

TABLES = frozenset({"assessments", "ratings", "history_snapshots", "tags", "attachments"})


class ChangeNotifier:
    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; the returned callable unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def notify(self, tables: Iterable[str]) -> None:
        changed = frozenset(tables)
        if not changed:
            return
        unknown = changed - TABLES
        if unknown:
            raise ValueError(f"Unknown tables in change notification: {sorted(unknown)}")

        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(changed)
            except Exception:
                # a failing subscriber must not undo or mask a committed write
                logger.exception("Change listener %r failed for %s", listener, sorted(changed))
