"""
Uploaded asset schemas.

An asset is one photo selected by the user. It moves
waiting -> uploading -> uploaded | failed and never changes once uploaded.
"""

from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from models.base import BaseSchema


class AssetStatus(str, Enum):
    """Per-photo upload status."""
    WAITING = "waiting"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    FAILED = "failed"


class AssetFile(BaseModel):
    """A file picked by the user, before upload."""

    model_config = ConfigDict(frozen=True)

    filename: str
    content: bytes = Field(repr=False)
    content_type: str = "image/jpeg"


class UploadedAsset(BaseSchema):
    """
    One photo in a bulk batch.

    sequence_index is the position in the user's selection and is the
    index used by ItemGroup.member_asset_indices.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    source_filename: str
    sequence_index: int = Field(ge=0)
    remote_ref: Optional[str] = None
    status: AssetStatus = AssetStatus.WAITING
    error: Optional[str] = None

    @property
    def is_uploaded(self) -> bool:
        return self.status == AssetStatus.UPLOADED


class UploadProgressEvent(BaseModel):
    """Emitted by the upload coordinator after every status change."""

    asset_id: str
    sequence_index: int
    status: AssetStatus
    completed: int = Field(ge=0, description="Assets finished (uploaded or failed)")
    total: int = Field(ge=0)
