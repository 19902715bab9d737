"""Shared fakes: a generation client whose calls the test resolves by hand."""
import asyncio
from io import BytesIO
from typing import List, Optional

import pytest
from PIL import Image

from genqueue.cancellation import CancellationToken
from genqueue.credentials import CredentialState
from genqueue.images import ImageRegistry, SourceImage
from genqueue.scheduler import Scheduler
from genqueue.status_store import TRANSITIONS, StatusStore
from genqueue.utils import IdSequence, split_data_url


def png_bytes(color=(255, 200, 0)) -> bytes:
    buf = BytesIO()
    Image.new("RGB", (4, 4), color).save(buf, format="PNG")
    return buf.getvalue()


class FakeCall:
    def __init__(self, kind, prompt_text, image, token, on_progress=None, aspect_ratio=None):
        self.kind = kind
        self.prompt_text = prompt_text
        self.image: Optional[SourceImage] = image
        self.token: CancellationToken = token
        self.on_progress = on_progress
        self.aspect_ratio = aspect_ratio
        self.future = asyncio.get_running_loop().create_future()

    def succeed(self, result_ref: str = "data:image/png;base64,AAAA") -> None:
        self.future.set_result(result_ref)

    def fail(self, error: BaseException) -> None:
        self.future.set_exception(error)


class FakeClient:
    """
    Every call parks on a future. A cooperative client stops as soon as the
    token fires; a non-cooperative one keeps going until the test resolves it.
    """

    def __init__(self, cooperative: bool = True):
        self.cooperative = cooperative
        self.calls: List[FakeCall] = []

    async def _wait(self, call: FakeCall) -> str:
        self.calls.append(call)
        if self.cooperative:
            return await call.token.guard(call.future)
        return await call.future

    async def edit_image(self, image, prompt_text, token):
        return await self._wait(FakeCall("image", prompt_text, image, token))

    async def generate_video(self, prompt_text, aspect_ratio, token, on_progress, image=None):
        return await self._wait(FakeCall("video", prompt_text, image, token, on_progress, aspect_ratio))

    async def fetch_result(self, result_ref):
        return split_data_url(result_ref)


class InstantClient:
    """Answers every call on the next loop turn, or raises `error` when it is set."""

    def __init__(self, error: Optional[BaseException] = None):
        self.error = error
        self.prompts: List[str] = []

    async def edit_image(self, image, prompt_text, token):
        self.prompts.append(prompt_text)
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return f"data:{image.mime_type};base64,{image.data_b64}"

    async def generate_video(self, prompt_text, aspect_ratio, token, on_progress, image=None):
        self.prompts.append(prompt_text)
        on_progress("rendering")
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return "data:video/mp4;base64,bXA0"

    async def fetch_result(self, result_ref):
        return split_data_url(result_ref)


class Harness:
    """Scheduler wired to a FakeClient, recording every status the store goes through."""

    def __init__(self, image_limit: int = 2, cooperative: bool = True, api_key: Optional[str] = "test-key"):
        self.ids = IdSequence()
        self.images = ImageRegistry(self.ids)
        self.store = StatusStore(self.ids)
        self.client = FakeClient(cooperative)
        self.credentials = CredentialState(api_key)
        self.scheduler = Scheduler(
            self.store, self.client, self.images, self.credentials, image_limit=image_limit
        )
        self.history = {}
        self.ceiling_violations = []
        self.store.subscribe(self._record)

    def _record(self, store: StatusStore) -> None:
        for item in store.items():
            seen = self.history.setdefault(item.id, [])
            if not seen or seen[-1] != item.status:
                seen.append(item.status)
        in_progress = store.counts()["in-progress"]
        limit = 1 if store.has_unfinished_video() else self.scheduler.image_limit
        if in_progress > limit:
            self.ceiling_violations.append((in_progress, limit))

    def add_images(self, n: int) -> List[int]:
        return [self.images.add(png_bytes()).id for _ in range(n)]

    def statuses(self) -> List[str]:
        return [item.status for item in self.store.items()]

    def illegal_edges(self) -> list:
        bad = []
        for item_id, seen in self.history.items():
            for before, after in zip(seen, seen[1:]):
                if after not in TRANSITIONS[before]:
                    bad.append((item_id, before, after))
        return bad


async def drain(rounds: int = 20) -> None:
    """Let pending callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def png():
    return png_bytes()
