"""Generation orchestrator — runs one job against the engine.

:class:`GenerationOrchestrator` owns the process-wide engine handle and the
lock that serialises access to it.  For each job it:

1. Dispatches by mode to the engine's text-to-image, image-to-image,
   image-to-video or conversion entry point.
2. Optionally decodes a control image (when a control-net is configured)
   and runs canny preprocessing on it.
3. When both a primary result and a control image exist, releases the
   primary result and regenerates with the control image.
4. Releases every intermediate buffer on every exit path.

Control-image tolerance
-----------------------
A control image that fails to decode is logged and ignored; the request
continues with the unconditioned result.  Malformed control input is
therefore never reported to the client.

Regeneration cost
-----------------
A control image always triggers a second full text-to-image pass and the
first pass is thrown away, so control-conditioned requests take roughly
twice as long as plain ones.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from sdserver.api.models import ImageRef, JobDescriptor, Mode
from sdserver.core.engine import Engine
from sdserver.core.errors import ConversionFailed, DecodeError, EngineFailure, InputImageError
from sdserver.core.images import (
    GenerationResult,
    RawImage,
    apply_canny_preprocess,
    decode_data_uri,
    decode_file,
)

logger = logging.getLogger(__name__)


class GenerationOrchestrator:
    """Executes jobs against a single, non-reentrant engine.

    Attributes:
        _engine (Engine): The shared engine handle.
        _gate (threading.Lock): Held for the duration of every engine call.
        _controlnet_configured (bool): Whether the control stage may run.
        _inputs_dir (Path): Base for relative ``{"path": ...}`` references.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        controlnet_configured: bool = False,
        inputs_dir: Path | str = "inputs",
        model_path: str = "",
        vae_path: str = "",
        convert_output_path: str = "converted",
        weight_type: str | None = None,
    ) -> None:
        self._engine = engine
        self._gate = threading.Lock()
        self._controlnet_configured = controlnet_configured
        self._inputs_dir = Path(inputs_dir)
        self._model_path = model_path
        self._vae_path = vae_path
        self._convert_output_path = convert_output_path
        self._weight_type = weight_type

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def controlnet_configured(self) -> bool:
        return self._controlnet_configured

    @property
    def convert_output_path(self) -> str:
        return self._convert_output_path

    # -- Public interface ---------------------------------------------------

    def run(self, job: JobDescriptor) -> GenerationResult | None:
        """Execute *job* and return its result.

        Ownership of the returned :class:`GenerationResult` passes to the
        caller.  ``convert`` jobs return ``None``.

        Raises:
            InputImageError: The input image could not be loaded.
            EngineFailure: An engine call returned no result.
            ConversionFailed: Model conversion failed.
        """
        logger.info("Running %s job (%dx%d, seed=%d).", job.mode.value, job.width, job.height, job.seed)

        if job.mode is Mode.CONVERT:
            self._convert()
            return None

        result = self._generate_primary(job)
        try:
            control = self._load_control_image(job)
        except BaseException:
            result.release()
            raise

        if control is None:
            return result

        try:
            result.release()
            logger.info("Regenerating with control image (strength=%.2f).", job.control_strength)
            return self._check(self._text_to_image(job, control), "control-conditioned generation")
        finally:
            control.release()

    # -- Pipeline steps -----------------------------------------------------

    def _generate_primary(self, job: JobDescriptor) -> GenerationResult:
        if job.mode is Mode.TXT2IMG:
            return self._check(self._text_to_image(job, None), "text-to-image")

        input_image = self._decode_input(job.input_image)
        try:
            if job.mode is Mode.IMG2IMG:
                with self._gate:
                    result = self._engine.image_to_image(
                        input_image=input_image,
                        prompt=job.prompt,
                        negative_prompt=job.negative_prompt,
                        clip_skip=job.clip_skip,
                        guidance_scale=job.guidance_scale,
                        width=job.width,
                        height=job.height,
                        sample_method=job.sample_method,
                        steps=job.sample_steps,
                        strength=job.strength,
                        seed=job.seed,
                        batch_count=job.batch_count,
                        control_image=None,
                        control_strength=job.control_strength,
                        style_ratio=job.style_ratio,
                        normalize_input=job.normalize_input,
                        input_id_images_path=job.input_id_images_path,
                    )
                return self._check(result, "image-to-image")

            with self._gate:
                result = self._engine.image_to_video(
                    input_image=input_image,
                    prompt=job.prompt,
                    negative_prompt=job.negative_prompt,
                    width=job.width,
                    height=job.height,
                    min_guidance_scale=job.min_guidance_scale,
                    guidance_scale=job.guidance_scale,
                    sample_method=job.sample_method,
                    steps=job.sample_steps,
                    strength=job.strength,
                    seed=job.seed,
                    video_frames=job.video_frames,
                    motion_bucket_id=job.motion_bucket_id,
                    fps=job.fps,
                    augmentation_level=job.augmentation_level,
                )
            return self._check(result, "image-to-video")
        finally:
            input_image.release()

    def _text_to_image(self, job: JobDescriptor, control: RawImage | None) -> GenerationResult | None:
        with self._gate:
            return self._engine.text_to_image(
                prompt=job.prompt,
                negative_prompt=job.negative_prompt,
                clip_skip=job.clip_skip,
                guidance_scale=job.guidance_scale,
                width=job.width,
                height=job.height,
                sample_method=job.sample_method,
                steps=job.sample_steps,
                strength=job.strength,
                seed=job.seed,
                batch_count=job.batch_count,
                control_image=control,
                control_strength=job.control_strength,
                style_ratio=job.style_ratio,
                normalize_input=job.normalize_input,
                input_id_images_path=job.input_id_images_path,
            )

    def _load_control_image(self, job: JobDescriptor) -> RawImage | None:
        """Decode and optionally preprocess the control image.

        Returns ``None`` when no control-net is configured, no control
        image was sent, or it failed to decode.
        """
        if not self._controlnet_configured or job.control_image is None:
            return None

        try:
            control = self._decode(job.control_image)
        except (DecodeError, InputImageError) as e:
            logger.warning("Ignoring undecodable control image %s: %s", job.control_image.describe(), e)
            return None

        if job.canny_preprocess:
            try:
                with self._gate:
                    apply_canny_preprocess(control, self._engine)
            except BaseException:
                control.release()
                raise
        return control

    def _convert(self) -> None:
        logger.info(
            "Converting '%s' to '%s' (weight type %s).",
            self._model_path,
            self._convert_output_path,
            self._weight_type or "unchanged",
        )
        with self._gate:
            ok = self._engine.convert_model(
                self._model_path,
                self._vae_path,
                self._convert_output_path,
                self._weight_type,
            )
        if not ok:
            raise ConversionFailed(f"Failed to convert model to {self._convert_output_path}")

    # -- Helpers ------------------------------------------------------------

    def _decode_input(self, ref: ImageRef | None) -> RawImage:
        if ref is None:
            raise InputImageError("Failed to load input image: none supplied")
        try:
            return self._decode(ref)
        except DecodeError as e:
            raise InputImageError(f"Failed to load input image: {e}") from e

    def _decode(self, ref: ImageRef) -> RawImage:
        if ref.path is not None:
            return decode_file(self._resolve_input_path(ref.path))
        return decode_data_uri(ref.data_uri or "")

    def _resolve_input_path(self, path: str) -> Path:
        """Resolve *path* under the inputs directory.

        Raises:
            InputImageError: If the path escapes the inputs directory.
        """
        base = self._inputs_dir.resolve()
        full_path = (base / path).resolve()
        if not full_path.is_relative_to(base):
            logger.warning("Path traversal attempt detected: %s", path)
            raise InputImageError("Invalid path: outside of inputs directory")
        return full_path

    @staticmethod
    def _check(result: GenerationResult | None, step: str) -> GenerationResult:
        if result is None:
            raise EngineFailure(f"Failed to generate image ({step})")
        return result
