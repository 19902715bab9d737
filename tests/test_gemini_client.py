"""Gemini client against httpx.MockTransport: payloads, polling and error mapping."""
import asyncio
import json

import httpx
import pytest

from genqueue.cancellation import CancellationToken
from genqueue.errors import AuthorizationError, GenerationCancelled, GenerationError
from genqueue.gemini_client import GeminiClient
from genqueue.images import SourceImage

IMAGE = SourceImage(id=1, data_b64="iVBORw0KGgo=", mime_type="image/png")


def make_client(handler, **kwargs) -> GeminiClient:
    kwargs.setdefault("poll_interval", 0)
    return GeminiClient(
        api_key="test-key",
        base_url="https://api.test",
        image_model="img-model",
        video_model="vid-model",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def test_edit_image_returns_data_url():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["key"] = request.headers.get("x-goog-api-key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={"candidates": [{"content": {"parts": [
                {"text": "Here you go"},
                {"inlineData": {"mimeType": "image/png", "data": "RESULT"}},
            ]}}]},
        )

    result = asyncio.run(make_client(handler).edit_image(IMAGE, "add a hat", CancellationToken()))

    assert result == "data:image/png;base64,RESULT"
    assert seen["url"] == "https://api.test/v1beta/models/img-model:generateContent"
    assert seen["key"] == "test-key"
    parts = seen["body"]["contents"][0]["parts"]
    assert parts[0]["inline_data"] == {"mime_type": "image/png", "data": IMAGE.data_b64}
    assert parts[1] == {"text": "add a hat"}


def test_edit_image_without_image_part_fails_with_model_text():
    def handler(request):
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "I cannot do that"}]}}]})

    with pytest.raises(GenerationError, match="I cannot do that"):
        asyncio.run(make_client(handler).edit_image(IMAGE, "x", CancellationToken()))


@pytest.mark.parametrize(
    "status, message",
    [
        (403, "Permission denied"),
        (400, "API key not valid. Please pass a valid API key."),
        (404, "Requested entity was not found."),
    ],
)
def test_credential_failures_become_authorization_errors(status, message):
    def handler(request):
        return httpx.Response(status, json={"error": {"message": message}})

    with pytest.raises(AuthorizationError, match="API key error"):
        asyncio.run(make_client(handler).edit_image(IMAGE, "x", CancellationToken()))


def test_server_error_is_a_plain_generation_error():
    def handler(request):
        return httpx.Response(503, json={"error": {"message": "The model is overloaded."}})

    with pytest.raises(GenerationError) as exc:
        asyncio.run(make_client(handler).edit_image(IMAGE, "x", CancellationToken()))
    assert not isinstance(exc.value, AuthorizationError)
    assert str(exc.value) == "HTTP 503: The model is overloaded."


def test_missing_api_key_is_an_authorization_error():
    client = GeminiClient(api_key="", base_url="https://api.test", transport=httpx.MockTransport(lambda r: None))
    with pytest.raises(AuthorizationError):
        asyncio.run(client.edit_image(IMAGE, "x", CancellationToken()))


def test_generate_video_polls_until_done_and_reports_progress():
    polls = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            body = json.loads(request.content)
            assert request.url.path == "/v1beta/models/vid-model:predictLongRunning"
            assert body["parameters"] == {"aspectRatio": "9:16"}
            assert body["instances"][0]["image"]["mimeType"] == "image/png"
            return httpx.Response(200, json={"name": "models/vid-model/operations/op1"})
        assert request.url.path == "/v1beta/models/vid-model/operations/op1"
        polls.append(1)
        if len(polls) < 3:
            return httpx.Response(200, json={"name": "op1", "done": False})
        return httpx.Response(
            200,
            json={
                "name": "op1",
                "done": True,
                "response": {"generateVideoResponse": {"generatedSamples": [{"video": {"uri": "https://files.test/v.mp4"}}]}},
            },
        )

    progress = []
    uri = asyncio.run(
        make_client(handler).generate_video("a banana surfing", "9:16", CancellationToken(), progress.append, IMAGE)
    )

    assert uri == "https://files.test/v.mp4"
    assert len(polls) == 3
    assert len(progress) == 4
    assert progress[0] == "Sending request to the video model..."


def test_generate_video_operation_error():
    def handler(request):
        if request.method == "POST":
            return httpx.Response(200, json={"name": "op2", "done": True, "error": {"code": 3, "message": "prompt rejected"}})
        raise AssertionError("no polling expected")

    with pytest.raises(GenerationError, match="prompt rejected"):
        asyncio.run(make_client(handler).generate_video("x", "16:9", CancellationToken(), lambda m: None))


def test_generate_video_stops_when_cancelled_while_polling():
    def handler(request):
        if request.method == "POST":
            return httpx.Response(200, json={"name": "op3"})
        return httpx.Response(200, json={"name": "op3", "done": False})

    async def scenario():
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.05, token.cancel)
        client = make_client(handler, poll_interval=30)
        await asyncio.wait_for(client.generate_video("x", "16:9", token, lambda m: None), timeout=5)

    with pytest.raises(GenerationCancelled):
        asyncio.run(scenario())


def test_fetch_result_decodes_data_urls_without_network():
    client = make_client(lambda r: httpx.Response(500))
    mime_type, content = asyncio.run(client.fetch_result("data:image/png;base64,aGVsbG8="))
    assert (mime_type, content) == ("image/png", b"hello")


def test_fetch_result_downloads_video():
    def handler(request):
        assert request.headers["x-goog-api-key"] == "test-key"
        return httpx.Response(200, content=b"mp4bytes", headers={"content-type": "video/mp4"})

    mime_type, content = asyncio.run(make_client(handler).fetch_result("https://files.test/v.mp4"))
    assert (mime_type, content) == ("video/mp4", b"mp4bytes")
