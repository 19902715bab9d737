import base64
import itertools
import threading


class IdSequence:
    """Session-wide monotonic ids, shared by uploaded images and request items."""

    def __init__(self, start: int = 0):
        self._counter = itertools.count(start)
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            return next(self._counter)


def to_data_url(data_b64: str, mime_type: str) -> str:
    return f"data:{mime_type};base64,{data_b64}"


def split_data_url(url: str) -> tuple[str, bytes]:
    """`data:image/png;base64,...` -> (mime_type, raw bytes)"""
    header, _, payload = url.partition(",")
    if not header.startswith("data:") or ";base64" not in header:
        raise ValueError(f"not a base64 data URL: {url[:40]}")
    mime_type = header[len("data:"):].split(";", 1)[0] or "application/octet-stream"
    return mime_type, base64.b64decode(payload)
