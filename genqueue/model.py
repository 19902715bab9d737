# genqueue/model.py
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

Kind = Literal["image", "video"]

Status = Literal["pending", "in-progress", "complete", "failed"]

AspectRatio = Literal["16:9", "9:16"]

Mode = Literal["single", "multi", "video", "character"]

UNFINISHED: frozenset = frozenset({"pending", "in-progress"})
TERMINAL: frozenset = frozenset({"complete", "failed"})


class RequestDescriptor(BaseModel):
    """One entry of a submitted batch, before the store gives it an id."""

    kind: Kind
    source_image_id: Optional[int] = None
    prompt_text: str
    aspect_ratio: AspectRatio = "16:9"


class RequestItem(BaseModel):
    id: int
    kind: Kind
    source_image_id: Optional[int] = None
    prompt_text: str
    aspect_ratio: AspectRatio = "16:9"
    status: Status = "pending"
    result_ref: Optional[str] = None
    error_message: Optional[str] = None
    progress_message: Optional[str] = None

    @model_validator(mode="after")
    def _check_outcome(self) -> "RequestItem":
        # result_ref <=> complete, error_message <=> failed
        if (self.result_ref is not None) != (self.status == "complete"):
            raise ValueError(f"item {self.id}: result_ref must be set exactly when status is complete")
        if (self.error_message is not None) != (self.status == "failed"):
            raise ValueError(f"item {self.id}: error_message must be set exactly when status is failed")
        return self


class BatchSnapshot(BaseModel):
    """Read-only projection of the current batch for rendering cards and a progress bar."""

    items: List[RequestItem] = Field(default_factory=list)
    active: bool = False
    total: int = 0
    pending: int = 0
    in_progress: int = 0
    complete: int = 0
    failed: int = 0
    finished: int = 0  # complete + failed


class GenerateRequest(BaseModel):
    mode: Mode
    prompt: str = ""
    # multi mode: image id -> prompt for that image
    prompts: Dict[int, str] = Field(default_factory=dict)
    character_prompt: str = ""
    style: Optional[str] = None
    aspect_ratio: AspectRatio = "16:9"


class SubmitBatchRequest(BaseModel):
    requests: List[RequestDescriptor] = Field(..., min_length=1)


class ImageInfo(BaseModel):
    image_id: int
    filename: Optional[str] = None
    mime_type: str


class CredentialStatus(BaseModel):
    has_valid_credentials: bool
    error_message: Optional[str] = None
