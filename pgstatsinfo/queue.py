"""Items waiting to be written to the repository, and the queue holding them."""

from __future__ import annotations

import threading
from enum import Enum
from typing import Callable, Iterable, Optional


class QueueType(Enum):
    """Kind of work an item carries to the writer."""

    SNAPSHOT = "snapshot"
    LOGSTORE = "logstore"


Action = Callable[[object, object, str], bool]


class QueueItem:
    """A unit of work that writes itself into the repository.

    ``action`` receives the session, the repository connection and the
    instance id, and returns whether the write succeeded. Subclasses may
    override ``execute`` instead of passing an action.
    """

    def __init__(self, item_type: QueueType, action: Optional[Action] = None):
        self.item_type = item_type
        self.action = action
        self.retry = 0

    def execute(self, session, conn, instid: str) -> bool:
        """Write the item; return False when it should be retried."""
        if self.action is None:
            raise TypeError(f"queue item of type {self.item_type.value} has no action")
        return bool(self.action(session, conn, instid))


class WriterQueue:
    """A thread-safe first-in first-out queue of items for the writer."""

    def __init__(self) -> None:
        self._items: list[QueueItem] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def send(self, item: QueueItem) -> None:
        """Append an item, resetting its retry count."""
        item.retry = 0
        with self._lock:
            self._items.append(item)

    def has_queue(self, item_type: QueueType) -> bool:
        """Tell whether an item of the given type is waiting."""
        with self._lock:
            return any(item.item_type is item_type for item in self._items)

    def take_all(self) -> list[QueueItem]:
        """Remove and return every waiting item, oldest first."""
        with self._lock:
            items, self._items = self._items, []
        return items

    def requeue(self, items: Iterable[QueueItem]) -> int:
        """Put items back in front of the queue; return the new length."""
        with self._lock:
            self._items = [*items, *self._items]
            return len(self._items)