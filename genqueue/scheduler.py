"""
Request queue scheduler.

Drains pending items of the status store in batch order, dispatches them to the
generation client under a concurrency ceiling and writes results back. Every
store change triggers one scheduling pass; passes never interleave because all
state transitions happen synchronously on the event loop, inside `_critical()`.

Ceiling: IMAGE_CONCURRENCY_LIMIT image edits at once, but while any video item
is pending or in progress the whole batch runs one request at a time.
"""
import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from functools import partial
from typing import Iterable, List, Optional, Protocol, Set, Tuple

from config.settings import settings

from .cancellation import CancellationToken
from .credentials import CredentialState
from .errors import (
    API_KEY_ERROR_MESSAGE,
    CANCELLED_MESSAGE,
    AuthorizationError,
    GenerationCancelled,
    GenerationError,
    MissingSourceImage,
)
from .images import ImageRegistry, SourceImage
from .model import TERMINAL, AspectRatio, RequestDescriptor, RequestItem
from .status_store import StatusStore

logger = logging.getLogger(__name__)


class ProgressCallback(Protocol):
    def __call__(self, message: str) -> None: ...


class GenerationClient(Protocol):
    async def edit_image(self, image: SourceImage, prompt_text: str, token: CancellationToken) -> str: ...

    async def generate_video(
        self,
        prompt_text: str,
        aspect_ratio: AspectRatio,
        token: CancellationToken,
        on_progress: ProgressCallback,
        image: Optional[SourceImage] = None,
    ) -> str: ...

    async def fetch_result(self, result_ref: str) -> Tuple[str, bytes]:
        """Resolve a result_ref to (mime_type, content)."""
        ...


@dataclass(eq=False)
class _Dispatch:
    """One in-flight call. `settled` makes sure the active count drops exactly once."""

    item_id: int
    token: CancellationToken
    settled: bool = False


class Scheduler:
    def __init__(
        self,
        store: StatusStore,
        client: GenerationClient,
        images: ImageRegistry,
        credentials: Optional[CredentialState] = None,
        image_limit: Optional[int] = None,
    ):
        self.store = store
        self.client = client
        self.images = images
        self.credentials = credentials or CredentialState(settings.GEMINI_API_KEY)
        self.image_limit = max(1, image_limit or settings.IMAGE_CONCURRENCY_LIMIT)

        self._active = 0
        self._token = CancellationToken()
        self._dispatches: dict[int, _Dispatch] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._in_pass = False
        self._dirty = False
        self._idle = asyncio.Event()
        self._idle.set()

        store.subscribe(self._on_store_change)

    # ---------- public controls ----------

    @property
    def active_requests(self) -> int:
        return self._active

    @property
    def token(self) -> CancellationToken:
        return self._token

    def effective_limit(self) -> int:
        return 1 if self.store.has_unfinished_video() else self.image_limit

    def submit(self, descriptors: Iterable[RequestDescriptor]) -> List[RequestItem]:
        """Replace the current batch and start dispatching it."""
        descriptors = list(descriptors)
        if not descriptors:
            raise ValueError("a batch needs at least one request")
        with self._critical():
            if self._dispatches:
                logger.info("[Scheduler] new batch abandons %d in-flight requests", len(self._dispatches))
                self._token.cancel()
                self._abandon_in_flight()
            self._token = CancellationToken()
            items = self.store.replace_batch(descriptors)
            self._idle.clear()
        return items

    def cancel(self) -> List[int]:
        """Cancel every in-flight call and fail everything that has not finished."""
        with self._critical():
            self._token.cancel()
            self._abandon_in_flight()
            failed = self.store.fail_unfinished(CANCELLED_MESSAGE)
            self.store.mark_batch_inactive()
        logger.info("[Scheduler] batch cancelled, %d items failed", len(failed))
        return failed

    def retry(self, item_id: int) -> bool:
        """Reset one finished item to pending. Siblings are left alone."""
        item = self.store.get(item_id)
        if item is None or item.status not in TERMINAL:
            return False
        with self._critical():
            if not self.store.active or self._token.cancelled:
                self._token = CancellationToken()
            self.store.reset_item(item_id)
            self._idle.clear()
        logger.info("[Scheduler] retrying item %s", item_id)
        return True

    def clear(self) -> None:
        """Discard the batch, e.g. when the generation mode changes."""
        with self._critical():
            self._token.cancel()
            self._abandon_in_flight()
            self.store.clear()

    async def wait_until_idle(self) -> None:
        await self._idle.wait()

    async def aclose(self) -> None:
        """Stop everything still running; used on shutdown."""
        if self.store.active:
            self.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # ---------- scheduling pass ----------

    @contextmanager
    def _critical(self):
        outer = not self._in_pass
        self._in_pass = True
        try:
            yield
        finally:
            if outer:
                self._in_pass = False
        if outer:
            self._pump()

    def _on_store_change(self, store: StatusStore) -> None:
        self._pump()

    def _pump(self) -> None:
        if self._in_pass:
            self._dirty = True
            return
        self._in_pass = True
        try:
            while True:
                self._dirty = False
                self._schedule_pass()
                if not self._dirty:
                    break
        finally:
            self._in_pass = False

    def _schedule_pass(self) -> None:
        if not self.store.active:
            self._idle.set()
            return
        if self._active == 0 and self.store.all_terminal():
            logger.info("[Scheduler] batch finished: %s", self.store.counts())
            self.store.mark_batch_inactive()
            self._idle.set()
            return
        limit = self.effective_limit()
        while self._active < limit:
            item = self.store.first_pending()
            if item is None:
                break
            self._start(item)

    def _start(self, item: RequestItem) -> None:
        dispatch = _Dispatch(item_id=item.id, token=self._token)
        self._active += 1
        self._dispatches[item.id] = dispatch
        self.store.patch(item.id, status="in-progress", progress_message=None)
        logger.info(
            "[Scheduler] start item %s kind=%s active=%d/%d",
            item.id, item.kind, self._active, self.effective_limit(),
        )

        source: Optional[SourceImage] = None
        if item.source_image_id is not None:
            source = self.images.get(item.source_image_id)
        if source is None and (item.kind == "image" or item.source_image_id is not None):
            logger.warning("[Scheduler] item %s: source image %s is gone", item.id, item.source_image_id)
            self._finish(dispatch, error=MissingSourceImage())
            return

        task = asyncio.get_running_loop().create_task(self._run(dispatch, item, source))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, dispatch: _Dispatch, item: RequestItem, source: Optional[SourceImage]) -> None:
        try:
            if item.kind == "image":
                result = await self.client.edit_image(source, item.prompt_text, dispatch.token)
            else:
                result = await self.client.generate_video(
                    item.prompt_text,
                    item.aspect_ratio,
                    dispatch.token,
                    partial(self._on_progress, dispatch),
                    source,
                )
        except GenerationError as e:
            self._finish(dispatch, error=e)
        except Exception as e:
            logger.exception("[Scheduler] item %s: unexpected client error", item.id)
            self._finish(dispatch, error=e)
        else:
            self._finish(dispatch, result=result)

    def _on_progress(self, dispatch: _Dispatch, message: str) -> None:
        if not dispatch.settled:
            self.store.patch(dispatch.item_id, progress_message=message)

    # ---------- reconciliation ----------

    def _release(self, dispatch: _Dispatch) -> bool:
        if dispatch.settled:
            return False
        dispatch.settled = True
        self._active -= 1
        if self._dispatches.get(dispatch.item_id) is dispatch:
            del self._dispatches[dispatch.item_id]
        return True

    def _abandon_in_flight(self) -> None:
        for dispatch in list(self._dispatches.values()):
            self._release(dispatch)

    def _finish(self, dispatch: _Dispatch, result: Optional[str] = None, error: Optional[BaseException] = None) -> None:
        with self._critical():
            if not self._release(dispatch):
                logger.debug("[Scheduler] item %s: dropping late resolution", dispatch.item_id)
                return
            if error is None:
                self.store.patch(dispatch.item_id, status="complete", result_ref=result, progress_message=None)
                logger.info("[Scheduler] item %s complete", dispatch.item_id)
                return

            message = CANCELLED_MESSAGE if isinstance(error, GenerationCancelled) else (str(error) or type(error).__name__)
            self.store.patch(dispatch.item_id, status="failed", error_message=message, progress_message=None)
            logger.warning("[Scheduler] item %s failed: %s", dispatch.item_id, message)
            if isinstance(error, AuthorizationError):
                self.credentials.invalidate(API_KEY_ERROR_MESSAGE)
