"""Inference engine interface.

The orchestrator talks to the generative model only through :class:`Engine`.
The concrete implementation shipped with sdserver is
:class:`~sdserver.core.diffusers_engine.DiffusersEngine`; tests substitute a
recording mock.

Engines are not expected to be thread-safe.  The orchestrator serialises
every call behind a single lock, so implementations may keep mutable scratch
state without their own locking.

Every generation method returns a :class:`GenerationResult` whose ownership
passes to the caller, or ``None`` when inference fails.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum

from sdserver.core.images import GenerationResult, RawImage


class SampleMethod(str, Enum):
    """Sampler tokens accepted in requests."""

    EULER_A = "euler_a"
    EULER = "euler"
    HEUN = "heun"
    DPM2 = "dpm2"
    DPMPP2S_A = "dpm++2s_a"
    DPMPP2M = "dpm++2m"
    DPMPP2MV2 = "dpm++2mv2"
    LCM = "lcm"


class Engine(ABC):
    """Abstract inference engine.

    Attributes:
        controlnet_loaded: Whether a control-net model is attached, i.e.
            whether ``text_to_image`` honours ``control_image``.
    """

    controlnet_loaded: bool = False

    @abstractmethod
    def text_to_image(
        self,
        *,
        prompt: str,
        negative_prompt: str,
        clip_skip: int,
        guidance_scale: float,
        width: int,
        height: int,
        sample_method: SampleMethod,
        steps: int,
        strength: float,
        seed: int,
        batch_count: int,
        control_image: RawImage | None,
        control_strength: float,
        style_ratio: float,
        normalize_input: bool,
        input_id_images_path: str,
    ) -> GenerationResult | None:
        """Generate an image from a text prompt, optionally control-conditioned."""

    @abstractmethod
    def image_to_image(
        self,
        *,
        input_image: RawImage,
        prompt: str,
        negative_prompt: str,
        clip_skip: int,
        guidance_scale: float,
        width: int,
        height: int,
        sample_method: SampleMethod,
        steps: int,
        strength: float,
        seed: int,
        batch_count: int,
        control_image: RawImage | None,
        control_strength: float,
        style_ratio: float,
        normalize_input: bool,
        input_id_images_path: str,
    ) -> GenerationResult | None:
        """Re-generate *input_image* guided by a prompt.

        The engine reads *input_image* but does not take ownership of it.
        """

    @abstractmethod
    def image_to_video(
        self,
        *,
        input_image: RawImage,
        prompt: str,
        negative_prompt: str,
        width: int,
        height: int,
        min_guidance_scale: float,
        guidance_scale: float,
        sample_method: SampleMethod,
        steps: int,
        strength: float,
        seed: int,
        video_frames: int,
        motion_bucket_id: int,
        fps: int,
        augmentation_level: float,
    ) -> GenerationResult | None:
        """Animate *input_image*; the first frame is returned."""

    @abstractmethod
    def convert_model(
        self,
        model_path: str,
        vae_path: str,
        output_path: str,
        weight_type: str | None,
    ) -> bool:
        """Convert model weights offline.  Returns ``False`` on failure."""

    @abstractmethod
    def canny_edge_detect(
        self,
        pixels: bytes,
        width: int,
        height: int,
        low_threshold: float,
        high_threshold: float,
        weak: float,
        strong: float,
        invert: bool,
    ) -> bytes | None:
        """Return the RGB edge map of *pixels*, or ``None`` on failure."""

    def unload(self) -> None:
        """Release model memory.  Safe to call more than once."""
