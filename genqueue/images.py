import base64
import logging
from dataclasses import dataclass
from io import BytesIO
from typing import Dict, List, Optional

from PIL import Image, UnidentifiedImageError

from .utils import IdSequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceImage:
    id: int
    data_b64: str
    mime_type: str
    filename: Optional[str] = None


class ImageRegistry:
    """
    Uploaded images, addressed by id.
    Request items only keep the id; bytes are looked up at dispatch time and an
    image removed in the meantime simply comes back as None.
    """

    def __init__(self, ids: Optional[IdSequence] = None):
        self.ids = ids or IdSequence()
        self._images: Dict[int, SourceImage] = {}

    def add(self, data: bytes, filename: Optional[str] = None) -> SourceImage:
        if not data:
            raise ValueError("uploaded image is empty")
        mime_type = detect_mime_type(data)
        image = SourceImage(
            id=self.ids.next(),
            data_b64=base64.b64encode(data).decode("ascii"),
            mime_type=mime_type,
            filename=filename,
        )
        self._images[image.id] = image
        logger.info("[ImageRegistry] added image %s (%s, %d bytes)", image.id, mime_type, len(data))
        return image

    def replace_all(self, data: bytes, filename: Optional[str] = None) -> SourceImage:
        """Video mode keeps a single reference image."""
        image = self.add(data, filename)
        self._images = {image.id: image}
        return image

    def get(self, image_id: int) -> Optional[SourceImage]:
        return self._images.get(image_id)

    def remove(self, image_id: int) -> bool:
        return self._images.pop(image_id, None) is not None

    def clear(self) -> None:
        self._images.clear()

    def list(self) -> List[SourceImage]:
        return list(self._images.values())

    def ids_in_order(self) -> List[int]:
        return list(self._images)


def detect_mime_type(data: bytes) -> str:
    """Read just the header with Pillow to find the image format."""
    try:
        with Image.open(BytesIO(data)) as img:
            fmt = img.format
    except UnidentifiedImageError as e:
        raise ValueError(f"not a supported image: {e}") from e
    mime_type = Image.MIME.get(fmt or "")
    if not mime_type:
        raise ValueError(f"unsupported image format: {fmt}")
    return mime_type
