# genqueue/request_builder.py

import logging
from typing import Dict, List, Optional, Sequence

from .credentials import CredentialState
from .images import ImageRegistry
from .model import AspectRatio, GenerateRequest, RequestDescriptor

logger = logging.getLogger(__name__)

EDIT_TEMPLATE = (
    "Maintain the visual appearance of the character from the uploaded image. "
    "Apply the following changes: {prompt}"
)

CHARACTER_TEMPLATE = (
    "The character in the image is best described as: '{character}'. "
    "Now, maintaining the character's core appearance from the image, depict them {action}. "
    "The overall style should be {style}."
)

STYLES = ["Fairy Tale", "Cyberpunk", "Fantasy", "Animation", "Retro", "Steampunk"]


class BuildError(ValueError):
    """The user input is not enough to build a batch."""


def build_single(image_ids: Sequence[int], prompt: str) -> List[RequestDescriptor]:
    """Same prompt for every uploaded image."""
    prompt = prompt.strip()
    if not image_ids:
        raise BuildError("Upload at least one image.")
    if not prompt:
        raise BuildError("Enter a prompt.")
    text = EDIT_TEMPLATE.format(prompt=prompt)
    return [RequestDescriptor(kind="image", source_image_id=i, prompt_text=text) for i in image_ids]


def build_multi(image_ids: Sequence[int], prompts: Dict[int, str]) -> List[RequestDescriptor]:
    """
    One prompt per image. Images without a prompt are skipped; at least one
    image needs one.
    """
    if not image_ids:
        raise BuildError("Upload at least one image.")
    descriptors = [
        RequestDescriptor(
            kind="image",
            source_image_id=i,
            prompt_text=EDIT_TEMPLATE.format(prompt=prompts[i].strip()),
        )
        for i in image_ids
        if prompts.get(i, "").strip()
    ]
    if not descriptors:
        raise BuildError("Enter a prompt for at least one image.")
    return descriptors


def build_video(
    prompt: str,
    aspect_ratio: AspectRatio = "16:9",
    image_id: Optional[int] = None,
    has_credentials: bool = True,
) -> List[RequestDescriptor]:
    prompt = prompt.strip()
    if not prompt:
        raise BuildError("Enter a prompt.")
    if not has_credentials:
        raise BuildError("Select an API key before generating a video.")
    return [
        RequestDescriptor(kind="video", source_image_id=image_id, prompt_text=prompt, aspect_ratio=aspect_ratio)
    ]


def build_character(
    image_ids: Sequence[int], character: str, action: str, style: Optional[str]
) -> List[RequestDescriptor]:
    character, action = character.strip(), action.strip()
    if not image_ids:
        raise BuildError("Upload at least one image.")
    if not character:
        raise BuildError("Describe the character.")
    if not action:
        raise BuildError("Describe what the character is doing.")
    if style not in STYLES:
        raise BuildError(f"Pick a style: {', '.join(STYLES)}.")
    text = CHARACTER_TEMPLATE.format(character=character, action=action, style=style)
    return [RequestDescriptor(kind="image", source_image_id=i, prompt_text=text) for i in image_ids]


def build_requests(
    req: GenerateRequest, images: ImageRegistry, credentials: CredentialState
) -> List[RequestDescriptor]:
    image_ids = images.ids_in_order()
    if req.mode == "single":
        descriptors = build_single(image_ids, req.prompt)
    elif req.mode == "multi":
        descriptors = build_multi(image_ids, req.prompts)
    elif req.mode == "video":
        descriptors = build_video(
            req.prompt,
            req.aspect_ratio,
            image_id=image_ids[0] if image_ids else None,
            has_credentials=credentials.has_valid_credentials,
        )
    else:
        descriptors = build_character(image_ids, req.character_prompt, req.prompt, req.style)
    logger.info("[RequestBuilder] mode=%s -> %d requests", req.mode, len(descriptors))
    return descriptors
