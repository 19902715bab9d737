# genqueue/worker.py
"""
Run one batch headless: upload the given images, build the requests for the
chosen mode, drive the scheduler until every item is finished and print the
final snapshot as JSON. Ctrl+C cancels the batch.

    python -m genqueue.worker --mode single --prompt "give him a red hat" a.png b.png
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from config.settings import settings

from .credentials import CredentialState
from .gemini_client import GeminiClient
from .images import ImageRegistry
from .model import BatchSnapshot, GenerateRequest
from .request_builder import STYLES, BuildError, build_requests
from .scheduler import GenerationClient, Scheduler
from .status_store import StatusStore
from .utils import IdSequence

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="genqueue.worker", description="Run one generation batch")
    parser.add_argument("images", nargs="*", type=Path, help="source images")
    parser.add_argument("--mode", choices=["single", "multi", "video", "character"], default="single")
    parser.add_argument("--prompt", default="", help="edit prompt, video prompt or character action")
    parser.add_argument(
        "--image-prompt", action="append", default=[],
        help="multi mode: one prompt per image, in the same order as the images",
    )
    parser.add_argument("--character", default="", help="character mode: character description")
    parser.add_argument("--style", choices=STYLES, default=None)
    parser.add_argument("--aspect-ratio", choices=["16:9", "9:16"], default="16:9")
    parser.add_argument("--concurrency", type=int, default=settings.IMAGE_CONCURRENCY_LIMIT)
    return parser.parse_args(argv)


def _log_change(store: StatusStore) -> None:
    counts = store.counts()
    logger.info(
        "[Worker] %d/%d finished (in progress: %d)",
        counts["complete"] + counts["failed"], len(store), counts["in-progress"],
    )


async def run_batch(args: argparse.Namespace, client: Optional[GenerationClient] = None) -> BatchSnapshot:
    ids = IdSequence()
    images = ImageRegistry(ids)
    store = StatusStore(ids)
    credentials = CredentialState(settings.GEMINI_API_KEY)
    scheduler = Scheduler(store, client or GeminiClient(), images, credentials, image_limit=args.concurrency)

    uploaded = []
    for path in args.images:
        try:
            image = images.add(path.read_bytes(), path.name)
        except (OSError, ValueError) as e:
            raise BuildError(f"{path}: {e}") from e
        uploaded.append(image.id)
        if args.mode == "video":
            break

    req = GenerateRequest(
        mode=args.mode,
        prompt=args.prompt,
        prompts=dict(zip(uploaded, args.image_prompt)),
        character_prompt=args.character,
        style=args.style,
        aspect_ratio=args.aspect_ratio,
    )
    descriptors = build_requests(req, images, credentials)

    store.subscribe(_log_change)
    scheduler.submit(descriptors)
    try:
        await scheduler.wait_until_idle()
    except asyncio.CancelledError:
        scheduler.cancel()
        raise
    finally:
        await scheduler.aclose()

    if not credentials.has_valid_credentials:
        logger.error("[Worker] %s", credentials.error_message)
    return store.snapshot()


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    args = parse_args(argv)
    try:
        snapshot = asyncio.run(run_batch(args))
    except BuildError as e:
        logger.error("[Worker] %s", e)
        return 2
    except KeyboardInterrupt:
        logger.warning("[Worker] interrupted, batch cancelled")
        return 130
    print(snapshot.model_dump_json(indent=2))
    return 0 if snapshot.failed == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
