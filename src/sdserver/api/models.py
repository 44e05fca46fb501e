"""Pydantic models describing one generation request.

Models
------
Mode
    The four request modes and their wire tokens.
ImageRef
    A reference to an input or control image: inline data URI or path.
JobDefaults
    Server-wide defaults applied by the builder when a field is absent.
JobDescriptor
    The validated, fully-defaulted, immutable job built from a request body.
    Only :func:`sdserver.api.builder.build_job` creates these.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from sdserver.core.engine import SampleMethod
from sdserver.core.images import OutputFormat


class Mode(str, Enum):
    """Request mode tokens."""

    TXT2IMG = "txt2img"
    IMG2IMG = "img2img"
    IMG2VID = "img2vid"
    CONVERT = "convert"

    @property
    def requires_prompt(self) -> bool:
        return self is not Mode.CONVERT

    @property
    def requires_input_image(self) -> bool:
        return self in (Mode.IMG2IMG, Mode.IMG2VID)


class ImageRef(BaseModel):
    """An undecoded image reference.

    Exactly one of the two attributes is set.

    Attributes:
        data_uri: Inline ``data:<mime>;base64,<payload>`` string.
        path: Filesystem path, resolved against the server's inputs
            directory when relative.
    """

    model_config = ConfigDict(frozen=True)

    data_uri: str | None = None
    path: str | None = None

    def describe(self) -> str:
        """Short form suitable for logs (never the full payload)."""
        if self.path is not None:
            return f"path:{self.path}"
        return f"data:{(self.data_uri or '')[:16]}..."


class JobDefaults(BaseModel):
    """Server-wide defaults the builder applies to absent fields."""

    model_config = ConfigDict(frozen=True)

    width: int = 512
    height: int = 512
    sample_steps: int = 20
    guidance_scale: float = 7.0
    sample_method: SampleMethod = SampleMethod.EULER_A


class JobDescriptor(BaseModel):
    """A validated generation job.

    Attributes mirror the JSON request fields (see the builder for the
    key names); every optional field carries its documented default.
    """

    model_config = ConfigDict(frozen=True)

    mode: Mode
    prompt: str = ""
    negative_prompt: str = ""

    width: int = Field(default=512, gt=0)
    height: int = Field(default=512, gt=0)
    sample_steps: int = Field(default=20, gt=0)
    sample_method: SampleMethod = SampleMethod.EULER_A
    guidance_scale: float = 7.0
    min_guidance_scale: float = 1.0
    seed: int = -1
    batch_count: int = Field(default=1, gt=0)
    strength: float = Field(default=0.75, ge=0.0, le=1.0)
    control_strength: float = 0.9
    style_ratio: float = 20.0
    clip_skip: int = -1
    normalize_input: bool = False
    canny_preprocess: bool = False
    input_id_images_path: str = ""

    output_format: OutputFormat = OutputFormat.PNG
    output_quality: float = Field(default=0.9, ge=0.0, le=1.0)

    input_image: ImageRef | None = None
    control_image: ImageRef | None = None

    video_frames: int = Field(default=6, gt=0)
    fps: int = Field(default=6, gt=0)
    motion_bucket_id: int = 127
    augmentation_level: float = 0.0
