import logging
from typing import Any, Dict, Optional, Tuple

import httpx

from config.settings import settings

from .cancellation import CancellationToken
from .errors import AuthorizationError, GenerationError
from .images import SourceImage
from .model import AspectRatio
from .scheduler import ProgressCallback
from .utils import split_data_url, to_data_url

logger = logging.getLogger(__name__)

# Shown one after another while a video operation is polled
VIDEO_PROGRESS_MESSAGES = [
    "Warming up the video model...",
    "Composing the first frames...",
    "Animating the scene...",
    "Rendering motion, this can take a few minutes...",
    "Adding final touches...",
    "Almost there...",
]

# Error bodies that mean the key is bad rather than the request
_AUTH_MARKERS = ("API key not valid", "API_KEY_INVALID", "Requested entity was not found")


class GeminiClient:
    """
    Gemini REST client: image edits through generateContent, videos through
    predictLongRunning + operation polling. Every network await goes through the
    batch's CancellationToken so a cancel stops the call at once.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        image_model: Optional[str] = None,
        video_model: Optional[str] = None,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.GEMINI_API_KEY
        self.base_url = (base_url or settings.GEMINI_BASE_URL).rstrip("/")
        self.image_model = image_model or settings.IMAGE_MODEL
        self.video_model = video_model or settings.VIDEO_MODEL
        self.poll_interval = settings.POLL_INTERVAL if poll_interval is None else poll_interval
        self.timeout = timeout or settings.REQUEST_TIMEOUT
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {"x-goog-api-key": self.api_key} if self.api_key else {}
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout,
            transport=self._transport,
            follow_redirects=True,
        )

    async def _request(
        self, client: httpx.AsyncClient, token: CancellationToken, method: str, url: str, **kwargs: Any
    ) -> Dict[str, Any]:
        try:
            r = await token.guard(client.request(method, url, **kwargs))
        except httpx.HTTPError as e:
            raise GenerationError(f"Network error: {e}") from e
        return _parse_response(r)

    async def edit_image(self, image: SourceImage, prompt_text: str, token: CancellationToken) -> str:
        """Return the edited image as a data URL."""
        if not self.api_key:
            raise AuthorizationError("API key error: no API key configured")
        payload = {
            "contents": [
                {
                    "parts": [
                        {"inline_data": {"mime_type": image.mime_type, "data": image.data_b64}},
                        {"text": prompt_text},
                    ]
                }
            ],
            "generationConfig": {"responseModalities": ["IMAGE", "TEXT"]},
        }
        logger.info("[GeminiClient] edit image %s with %s", image.id, self.image_model)
        async with self._client() as client:
            data = await self._request(
                client, token, "POST", f"/v1beta/models/{self.image_model}:generateContent", json=payload
            )
        return _extract_image(data)

    async def generate_video(
        self,
        prompt_text: str,
        aspect_ratio: AspectRatio,
        token: CancellationToken,
        on_progress: ProgressCallback,
        image: Optional[SourceImage] = None,
    ) -> str:
        """Start a video operation, poll it until done and return the video URI."""
        if not self.api_key:
            raise AuthorizationError("API key error: no API key configured")
        instance: Dict[str, Any] = {"prompt": prompt_text}
        if image is not None:
            instance["image"] = {"bytesBase64Encoded": image.data_b64, "mimeType": image.mime_type}
        payload = {"instances": [instance], "parameters": {"aspectRatio": aspect_ratio}}

        on_progress("Sending request to the video model...")
        async with self._client() as client:
            operation = await self._request(
                client, token, "POST", f"/v1beta/models/{self.video_model}:predictLongRunning", json=payload
            )
            name = operation.get("name")
            if not name:
                raise GenerationError(f"Video model did not return an operation: {operation}")
            logger.info("[GeminiClient] video operation started: %s", name)

            polls = 0
            while not operation.get("done"):
                on_progress(VIDEO_PROGRESS_MESSAGES[min(polls, len(VIDEO_PROGRESS_MESSAGES) - 1)])
                await token.sleep(self.poll_interval)
                polls += 1
                operation = await self._request(client, token, "GET", f"/v1beta/{name}")
                logger.debug("[GeminiClient] polled %s (%d), done=%s", name, polls, operation.get("done"))

        if "error" in operation:
            raise _error_from_body(operation["error"].get("message", str(operation["error"])), 0)
        uri = _extract_video_uri(operation)
        logger.info("[GeminiClient] video ready after %d polls", polls)
        return uri

    async def fetch_result(self, result_ref: str) -> Tuple[str, bytes]:
        """Resolve a result_ref to (mime_type, bytes) for download."""
        if result_ref.startswith("data:"):
            return split_data_url(result_ref)
        async with self._client() as client:
            try:
                r = await client.get(result_ref)
            except httpx.HTTPError as e:
                raise GenerationError(f"Network error: {e}") from e
            if r.status_code >= 400:
                raise _error_from_body(r.text[:300], r.status_code)
            mime_type = r.headers.get("content-type", "video/mp4").split(";")[0]
            return mime_type, r.content


def _parse_response(r: httpx.Response) -> Dict[str, Any]:
    if r.status_code >= 400:
        logger.warning("[GeminiClient] HTTP %s: %s", r.status_code, r.text[:500])
        try:
            message = r.json().get("error", {}).get("message") or r.text
        except ValueError:
            message = r.text
        raise _error_from_body(message, r.status_code)
    try:
        return r.json()
    except ValueError as e:
        raise GenerationError(f"Invalid JSON from API: {r.text[:200]}") from e


def _error_from_body(message: str, status_code: int) -> GenerationError:
    if status_code in (401, 403) or any(marker in message for marker in _AUTH_MARKERS):
        return AuthorizationError(f"API key error: {message}")
    if status_code:
        return GenerationError(f"HTTP {status_code}: {message}")
    return GenerationError(message)


def _extract_image(data: Dict[str, Any]) -> str:
    texts = []
    for candidate in data.get("candidates", []):
        for part in candidate.get("content", {}).get("parts", []):
            inline = part.get("inlineData") or part.get("inline_data")
            if inline and inline.get("data"):
                mime_type = inline.get("mimeType") or inline.get("mime_type") or "image/png"
                return to_data_url(inline["data"], mime_type)
            if part.get("text"):
                texts.append(part["text"])
    block_reason = data.get("promptFeedback", {}).get("blockReason")
    if block_reason:
        raise GenerationError(f"Request blocked: {block_reason}")
    detail = " ".join(texts).strip()
    raise GenerationError(f"No image returned by the model. {detail}".strip())


def _extract_video_uri(operation: Dict[str, Any]) -> str:
    response = operation.get("response", {})
    samples = response.get("generateVideoResponse", {}).get("generatedSamples", [])
    for sample in samples:
        uri = sample.get("video", {}).get("uri")
        if uri:
            return uri
    raise GenerationError("Video generation finished without a video.")
