"""
Status store: the ordered RequestItems of the current batch plus the
"batch is active" flag. Single source of truth for the status projection;
written by the scheduler, read by everything else through copies.
"""
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from .errors import InvalidTransition
from .model import UNFINISHED, BatchSnapshot, RequestDescriptor, RequestItem
from .utils import IdSequence

logger = logging.getLogger(__name__)

Listener = Callable[["StatusStore"], None]

# Legal status edges. Same-status patches (progress updates) are always allowed.
TRANSITIONS: Dict[str, frozenset] = {
    "pending": frozenset({"in-progress", "failed"}),
    "in-progress": frozenset({"complete", "failed"}),
    "complete": frozenset({"pending"}),
    "failed": frozenset({"pending"}),
}


class StatusStore:
    def __init__(self, ids: Optional[IdSequence] = None):
        self.ids = ids or IdSequence()
        self._items: List[RequestItem] = []
        self._positions: Dict[int, int] = {}
        self._active = False
        self._listeners: List[Listener] = []

    # ---------- notifications ----------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    # ---------- mutations ----------

    @property
    def active(self) -> bool:
        return self._active

    def replace_batch(self, descriptors: Iterable[RequestDescriptor]) -> List[RequestItem]:
        items = [
            RequestItem(
                id=self.ids.next(),
                kind=d.kind,
                source_image_id=d.source_image_id,
                prompt_text=d.prompt_text,
                aspect_ratio=d.aspect_ratio,
            )
            for d in descriptors
        ]
        self._items = items
        self._positions = {item.id: pos for pos, item in enumerate(items)}
        self._active = True
        logger.info("[StatusStore] new batch of %d items, ids=%s", len(items), [i.id for i in items])
        self._notify()
        return [item.model_copy() for item in items]

    def clear(self) -> None:
        """Drop the batch entirely (mode or context change)."""
        self._items = []
        self._positions = {}
        self._active = False
        self._notify()

    def patch(self, item_id: int, **changes: Any) -> bool:
        """Apply a partial update. Returns False when the id is not in the current batch."""
        unknown = sorted(set(changes) - set(RequestItem.model_fields))
        if unknown:
            raise TypeError(f"patch() got unknown RequestItem fields: {', '.join(unknown)}")
        pos = self._positions.get(item_id)
        if pos is None:
            return False
        current = self._items[pos]
        target = changes.get("status", current.status)
        if target != current.status and target not in TRANSITIONS[current.status]:
            raise InvalidTransition(item_id, current.status, target)
        self._items[pos] = RequestItem.model_validate({**current.model_dump(), **changes})
        self._notify()
        return True

    def reset_item(self, item_id: int) -> bool:
        pos = self._positions.get(item_id)
        if pos is None or self._items[pos].status in UNFINISHED:
            return False
        self._items[pos] = self._items[pos].model_copy(
            update={
                "status": "pending",
                "result_ref": None,
                "error_message": None,
                "progress_message": None,
            }
        )
        self._active = True
        self._notify()
        return True

    def mark_batch_inactive(self) -> None:
        if not self._active:
            return
        self._active = False
        self._notify()

    def fail_unfinished(self, message: str) -> List[int]:
        """Force every pending / in-progress item to failed(message)."""
        failed = []
        for pos, item in enumerate(self._items):
            if item.status in UNFINISHED:
                self._items[pos] = item.model_copy(
                    update={"status": "failed", "error_message": message, "progress_message": None}
                )
                failed.append(item.id)
        if failed:
            self._notify()
        return failed

    # ---------- derived queries ----------

    def get(self, item_id: int) -> Optional[RequestItem]:
        pos = self._positions.get(item_id)
        return None if pos is None else self._items[pos].model_copy()

    def items(self) -> List[RequestItem]:
        return [item.model_copy() for item in self._items]

    def __len__(self) -> int:
        return len(self._items)

    def counts(self) -> Dict[str, int]:
        counts = {status: 0 for status in TRANSITIONS}
        for item in self._items:
            counts[item.status] += 1
        return counts

    def all_terminal(self) -> bool:
        return not any(item.status in UNFINISHED for item in self._items)

    def first_pending(self) -> Optional[RequestItem]:
        for item in self._items:
            if item.status == "pending":
                return item.model_copy()
        return None

    def has_unfinished_video(self) -> bool:
        return any(item.kind == "video" and item.status in UNFINISHED for item in self._items)

    def snapshot(self) -> BatchSnapshot:
        counts = self.counts()
        return BatchSnapshot(
            items=self.items(),
            active=self._active,
            total=len(self._items),
            pending=counts["pending"],
            in_progress=counts["in-progress"],
            complete=counts["complete"],
            failed=counts["failed"],
            finished=counts["complete"] + counts["failed"],
        )
