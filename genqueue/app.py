# genqueue/app.py

import logging
import zipfile
from contextlib import asynccontextmanager
from io import BytesIO
from typing import List, Optional, Tuple

from fastapi import FastAPI, File, HTTPException, Query, Response, UploadFile

from config.settings import settings
from .credentials import CredentialState
from .errors import GenerationError
from .gemini_client import GeminiClient
from .images import ImageRegistry
from .model import (
    BatchSnapshot,
    CredentialStatus,
    GenerateRequest,
    ImageInfo,
    Mode,
    RequestItem,
    SubmitBatchRequest,
)
from .request_builder import BuildError, build_requests
from .scheduler import GenerationClient, Scheduler
from .status_store import StatusStore
from .utils import IdSequence

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def _artifact_name(item: RequestItem) -> str:
    extension = "png" if item.kind == "image" else "mp4"
    return f"genqueue_{item.id}.{extension}"


def create_app(
    client: Optional[GenerationClient] = None,
    credentials: Optional[CredentialState] = None,
    image_limit: Optional[int] = None,
) -> FastAPI:
    ids = IdSequence()
    images = ImageRegistry(ids)
    store = StatusStore(ids)
    gemini = client or GeminiClient()
    scheduler = Scheduler(
        store,
        gemini,
        images,
        credentials=credentials or CredentialState(settings.GEMINI_API_KEY),
        image_limit=image_limit,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await scheduler.aclose()

    app = FastAPI(title="Generation Queue Service", lifespan=lifespan)
    app.state.scheduler = scheduler
    app.state.images = images

    def _ensure_idle() -> None:
        if store.active:
            raise HTTPException(status_code=409, detail="A batch is still generating; cancel it first")

    async def _fetch(item: RequestItem) -> Tuple[str, bytes]:
        try:
            return await gemini.fetch_result(item.result_ref)
        except (GenerationError, ValueError) as e:
            raise HTTPException(status_code=502, detail=f"Item {item.id}: {e}")

    # ---------- uploaded images ----------

    @app.post("/images", response_model=ImageInfo)
    async def upload_image(file: UploadFile = File(...), mode: Optional[Mode] = Query(None)):
        data = await file.read()
        try:
            if mode == "video":
                image = images.replace_all(data, file.filename)
            else:
                image = images.add(data, file.filename)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return ImageInfo(image_id=image.id, filename=image.filename, mime_type=image.mime_type)

    @app.get("/images", response_model=List[ImageInfo])
    async def list_images():
        return [ImageInfo(image_id=i.id, filename=i.filename, mime_type=i.mime_type) for i in images.list()]

    @app.delete("/images/{image_id}", status_code=204)
    async def remove_image(image_id: int):
        if not images.remove(image_id):
            raise HTTPException(status_code=404, detail="Image not found")

    @app.delete("/images", status_code=204)
    async def clear_images():
        images.clear()

    # ---------- batch ----------

    @app.post("/generate", response_model=BatchSnapshot)
    async def generate(req: GenerateRequest):
        _ensure_idle()
        try:
            descriptors = build_requests(req, images, scheduler.credentials)
        except BuildError as e:
            raise HTTPException(status_code=400, detail=str(e))
        scheduler.submit(descriptors)
        return store.snapshot()

    @app.post("/batch", response_model=BatchSnapshot)
    async def submit_batch(req: SubmitBatchRequest):
        _ensure_idle()
        scheduler.submit(req.requests)
        return store.snapshot()

    @app.get("/batch", response_model=BatchSnapshot)
    async def get_batch():
        return store.snapshot()

    @app.delete("/batch", status_code=204)
    async def clear_batch():
        _ensure_idle()
        scheduler.clear()

    @app.post("/batch/cancel", response_model=BatchSnapshot)
    async def cancel_batch():
        scheduler.cancel()
        return store.snapshot()

    @app.post("/batch/items/{item_id}/retry", response_model=BatchSnapshot)
    async def retry_item(item_id: int):
        item = store.get(item_id)
        if item is None:
            raise HTTPException(status_code=404, detail="Item not found")
        if not scheduler.retry(item_id):
            raise HTTPException(status_code=409, detail=f"Item is {item.status}; only finished items can be retried")
        return store.snapshot()

    @app.get("/batch/items/{item_id}/download")
    async def download_item(item_id: int):
        item = store.get(item_id)
        if item is None:
            raise HTTPException(status_code=404, detail="Item not found")
        if item.status != "complete" or item.result_ref is None:
            raise HTTPException(status_code=409, detail="Item has no result yet")
        mime_type, content = await _fetch(item)
        return Response(
            content=content,
            media_type=mime_type,
            headers={"Content-Disposition": f'attachment; filename="{_artifact_name(item)}"'},
        )

    @app.get("/batch/download")
    async def download_all():
        finished = [item for item in store.items() if item.status == "complete" and item.result_ref is not None]
        if not finished:
            raise HTTPException(status_code=409, detail="No completed items to download")
        buf = BytesIO()
        with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as archive:
            for item in finished:
                _, content = await _fetch(item)
                archive.writestr(_artifact_name(item), content)
        logger.info("[App] bundled %d results", len(finished))
        return Response(
            content=buf.getvalue(),
            media_type="application/zip",
            headers={"Content-Disposition": 'attachment; filename="genqueue_batch.zip"'},
        )

    @app.get("/credentials", response_model=CredentialStatus)
    async def get_credentials():
        return scheduler.credentials.status()

    @app.post("/credentials", response_model=CredentialStatus)
    async def restore_credentials():
        """Mark the key as usable again once it has been re-selected."""
        scheduler.credentials.restore()
        return scheduler.credentials.status()

    return app


app = create_app()
