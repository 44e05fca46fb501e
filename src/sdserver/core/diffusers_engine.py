"""HuggingFace diffusers implementation of :class:`~sdserver.core.engine.Engine`.

:class:`DiffusersEngine` is the engine handle the server creates at startup.
It keeps one text-to-image pipeline in memory and derives the other pipelines
from it on demand.

Key Responsibilities
--------------------
- **Model loading** — ``model_path`` may be a HuggingFace ID, a diffusers
  directory, or a single ``.safetensors`` / ``.ckpt`` checkpoint.  Optional
  VAE, tiny autoencoder (TAESD), control-net and textual-inversion
  embeddings are attached at load time.
- **Derived pipelines** — image-to-image and control-net pipelines share the
  base pipeline's components via ``from_pipe``; the image-to-video pipeline
  is loaded lazily from ``video_model_path`` (or ``model_path``).
- **Samplers and schedules** — request sampler tokens map to diffusers
  scheduler classes; the ``karras`` schedule switches on Karras sigmas.
- **LoRA prompt tags** — ``<lora:name:weight>`` tags in the prompt load
  ``<lora_model_dir>/<name>.safetensors`` and activate it for that call.
- **Canny edge detection** — OpenCV's canny transform with fractional
  thresholds, used for control-image preprocessing.
- **Memory management** — :meth:`unload` drops every pipeline, runs the
  garbage collector and empties the CUDA cache.

Torch and diffusers are imported lazily so that importing sdserver (and
running its tests) does not require them.

Usage
-----
::

    from sdserver.core.config import config
    from sdserver.core.diffusers_engine import create_engine

    engine = create_engine(config)
    result = engine.text_to_image(prompt="a lighthouse", ...)
    engine.unload()
"""

from __future__ import annotations

import gc
import logging
import random
import re
from pathlib import Path

import cv2
import numpy as np

from sdserver.core.config import ServerConfig
from sdserver.core.engine import Engine, SampleMethod
from sdserver.core.images import GenerationResult, image_from_pil, image_to_pil

logger = logging.getLogger(__name__)

_SINGLE_FILE_SUFFIXES = (".safetensors", ".ckpt", ".pt", ".bin")

_LORA_TAG = re.compile(r"<lora:([^:>]+):([-+]?[0-9]*\.?[0-9]+)>")

# ---------------------------------------------------------------------------
# Lazily-built torch / diffusers lookup tables.
# ---------------------------------------------------------------------------
_DTYPE_MAP: dict | None = None
_SCHEDULER_MAP: dict | None = None


def _get_dtype_map() -> dict:
    """Return the dtype string → ``torch.dtype`` mapping."""
    global _DTYPE_MAP
    if _DTYPE_MAP is None:
        import torch

        _DTYPE_MAP = {
            "bfloat16": torch.bfloat16,
            "float16": torch.float16,
            "float32": torch.float32,
        }
    return _DTYPE_MAP


def _get_scheduler_map() -> dict:
    """Return the sampler → (scheduler class, extra config) mapping."""
    global _SCHEDULER_MAP
    if _SCHEDULER_MAP is None:
        import diffusers

        _SCHEDULER_MAP = {
            SampleMethod.EULER_A: (diffusers.EulerAncestralDiscreteScheduler, {}),
            SampleMethod.EULER: (diffusers.EulerDiscreteScheduler, {}),
            SampleMethod.HEUN: (diffusers.HeunDiscreteScheduler, {}),
            SampleMethod.DPM2: (diffusers.KDPM2DiscreteScheduler, {}),
            SampleMethod.DPMPP2S_A: (diffusers.DPMSolverSinglestepScheduler, {}),
            SampleMethod.DPMPP2M: (diffusers.DPMSolverMultistepScheduler, {}),
            SampleMethod.DPMPP2MV2: (
                diffusers.DPMSolverMultistepScheduler,
                {"algorithm_type": "dpmsolver++", "solver_order": 2, "lower_order_final": True},
            ),
            SampleMethod.LCM: (diffusers.LCMScheduler, {}),
        }
    return _SCHEDULER_MAP


def _is_single_file(path: str) -> bool:
    return Path(path).suffix.lower() in _SINGLE_FILE_SUFFIXES


# ---------------------------------------------------------------------------
# Canny edge detection.
# ---------------------------------------------------------------------------

_GAUSSIAN_KSIZE = (5, 5)
_GAUSSIAN_SIGMA = 1.4


def canny(
    rgb: np.ndarray,
    low_threshold: float,
    high_threshold: float,
    weak: float,
    strong: float,
    invert: bool,
) -> np.ndarray:
    """Compute a canny edge map with OpenCV.

    The thresholds are fractions, not absolute gradient values: the strong
    threshold is *high_threshold* times the peak gradient of the blurred
    image and the weak threshold is *low_threshold* times the strong one.

    Args:
        rgb: ``(height, width, 3)`` uint8 array.
        low_threshold: Weak threshold as a fraction of the strong threshold.
        high_threshold: Strong threshold as a fraction of the peak gradient.
        weak: Value of weak edges before hysteresis.  ``cv2.Canny`` either
            promotes weak pixels to strong or drops them, so it never
            reaches the output.
        strong: Value written for accepted edges.
        invert: Write ``1 - value`` instead.

    Returns:
        ``(height, width, 3)`` uint8 edge map.
    """
    gray = cv2.cvtColor(np.ascontiguousarray(rgb), cv2.COLOR_RGB2GRAY)
    blurred = cv2.GaussianBlur(gray, _GAUSSIAN_KSIZE, _GAUSSIAN_SIGMA)

    # Same 3x3 Sobel and L2 norm that cv2.Canny uses internally.
    gx = cv2.Sobel(blurred, cv2.CV_32F, 1, 0, ksize=3)
    gy = cv2.Sobel(blurred, cv2.CV_32F, 0, 1, ksize=3)
    peak = float(np.hypot(gx, gy).max())

    if peak > 0:
        high = peak * high_threshold
        accepted = cv2.Canny(blurred, high * low_threshold, high, L2gradient=True) > 0
    else:
        accepted = np.zeros(gray.shape, dtype=bool)

    edges = np.where(accepted, strong, 0.0)
    if invert:
        edges = 1.0 - edges
    out = np.clip(edges * 255.0, 0, 255).astype(np.uint8)
    return cv2.cvtColor(out, cv2.COLOR_GRAY2RGB)


# ---------------------------------------------------------------------------
# Engine.
# ---------------------------------------------------------------------------


class DiffusersEngine(Engine):
    """Engine backed by diffusers pipelines.

    Attributes:
        _config (ServerConfig): Launch configuration.
        _pipeline: Base text-to-image pipeline, or ``None`` when unloaded.
        _img2img_pipeline, _control_pipeline, _video_pipeline:
            Pipelines derived from (or loaded beside) the base pipeline.
        _loaded_loras (set[str]): LoRA adapters already attached.
    """

    def __init__(self, config: ServerConfig) -> None:
        self._config = config
        self._pipeline = None
        self._img2img_pipeline = None
        self._control_pipeline = None
        self._video_pipeline = None
        self._loaded_loras: set[str] = set()

    @property
    def controlnet_loaded(self) -> bool:
        return self._control_pipeline is not None

    @property
    def is_loaded(self) -> bool:
        return self._pipeline is not None

    # -- Loading ------------------------------------------------------------

    def load(self) -> None:
        """Load the base pipeline and its auxiliary models.

        Raises:
            ValueError: If no model path is configured.
            Exception: Whatever diffusers raises for an unloadable model.
        """
        if self._pipeline is not None:
            return
        if not self._config.model_path:
            raise ValueError("Model path is required.")

        import torch

        torch.set_num_threads(self._config.resolved_threads)
        torch_dtype = _get_dtype_map().get(self._config.torch_dtype, torch.float16)

        logger.info(
            "Loading model '%s' (dtype=%s, device=%s, threads=%d).",
            self._config.model_path,
            self._config.torch_dtype,
            self._config.device,
            self._config.resolved_threads,
        )
        for option in ("clip_on_cpu", "control_net_cpu", "vae_on_cpu", "stacked_id_embeddings_path"):
            if getattr(self._config, option):
                logger.warning("%s is not supported by the diffusers engine; ignoring.", option)

        try:
            pipeline = self._load_pipeline(self._config.model_path, self._config.vae_path, torch_dtype)

            if self._config.taesd_path:
                from diffusers import AutoencoderTiny

                pipeline.vae = AutoencoderTiny.from_pretrained(self._config.taesd_path, torch_dtype=torch_dtype)
                logger.info("Tiny autoencoder '%s' attached.", self._config.taesd_path)

            if self._config.embeddings_path:
                self._load_embeddings(pipeline, Path(self._config.embeddings_path))

            pipeline = pipeline.to(self._config.device)
            if self._config.vae_tiling:
                pipeline.enable_vae_tiling()
                logger.info("VAE tiling enabled.")

            if self._config.controlnet_path:
                self._control_pipeline = self._load_control_pipeline(pipeline, torch_dtype)

            self._pipeline = pipeline
            logger.info("Model '%s' loaded successfully.", self._config.model_path)

        except Exception:
            self._pipeline = None
            self._control_pipeline = None
            logger.exception("Failed to load model '%s'.", self._config.model_path)
            raise

    @staticmethod
    def _load_pipeline(model_path: str, vae_path: str, torch_dtype):
        from diffusers import AutoencoderKL, AutoPipelineForText2Image, StableDiffusionPipeline

        kwargs: dict = {"torch_dtype": torch_dtype}
        if vae_path:
            if _is_single_file(vae_path):
                kwargs["vae"] = AutoencoderKL.from_single_file(vae_path, torch_dtype=torch_dtype)
            else:
                kwargs["vae"] = AutoencoderKL.from_pretrained(vae_path, torch_dtype=torch_dtype)

        if _is_single_file(model_path):
            return StableDiffusionPipeline.from_single_file(model_path, **kwargs)
        return AutoPipelineForText2Image.from_pretrained(model_path, **kwargs)

    def _load_control_pipeline(self, pipeline, torch_dtype):
        from diffusers import ControlNetModel, StableDiffusionControlNetPipeline

        path = self._config.controlnet_path
        if _is_single_file(path):
            controlnet = ControlNetModel.from_single_file(path, torch_dtype=torch_dtype)
        else:
            controlnet = ControlNetModel.from_pretrained(path, torch_dtype=torch_dtype)
        controlnet = controlnet.to(self._config.device)
        logger.info("Control-net '%s' attached.", path)
        return StableDiffusionControlNetPipeline.from_pipe(pipeline, controlnet=controlnet)

    @staticmethod
    def _load_embeddings(pipeline, directory: Path) -> None:
        for path in sorted(directory.iterdir()):
            if path.suffix.lower() in _SINGLE_FILE_SUFFIXES:
                pipeline.load_textual_inversion(str(path), token=path.stem)
                logger.info("Loaded embedding '%s'.", path.stem)

    def _base(self):
        if self._pipeline is None:
            raise RuntimeError("No model is loaded.  Call load() before generating.")
        return self._pipeline

    def _control(self):
        self._base()
        return self._control_pipeline

    def _img2img(self):
        if self._img2img_pipeline is None:
            self._base()
            from diffusers import AutoPipelineForImage2Image

            self._img2img_pipeline = AutoPipelineForImage2Image.from_pipe(self._pipeline)
        return self._img2img_pipeline

    def _video(self):
        if self._video_pipeline is None:
            from diffusers import StableVideoDiffusionPipeline

            model = self._config.video_model_path or self._config.model_path
            logger.info("Loading image-to-video model '%s'.", model)
            torch_dtype = _get_dtype_map()[self._config.torch_dtype]
            self._video_pipeline = StableVideoDiffusionPipeline.from_pretrained(model, torch_dtype=torch_dtype).to(
                self._config.device
            )
        return self._video_pipeline

    # -- Per-call setup -----------------------------------------------------

    def _prepare(self, pipeline, sample_method: SampleMethod, prompt: str) -> str:
        """Install the sampler and LoRAs for one call; return the clean prompt."""
        scheduler_cls, extra = _get_scheduler_map()[sample_method]
        if self._config.schedule == "karras":
            extra = {**extra, "use_karras_sigmas": True}
        elif self._config.schedule == "discrete":
            extra = {**extra, "timestep_spacing": "leading"}
        pipeline.scheduler = scheduler_cls.from_config(pipeline.scheduler.config, **extra)

        # Derived pipelines share the UNet, so LoRAs go through the base one.
        return self._apply_loras(prompt)

    def _apply_loras(self, prompt: str) -> str:
        tags = _LORA_TAG.findall(prompt)
        clean = _LORA_TAG.sub("", prompt).strip()
        if not self._config.lora_model_dir:
            return clean if tags else prompt

        if not tags:
            if self._loaded_loras:
                self._pipeline.disable_lora()
            return prompt

        names, weights = [], []
        for name, weight in tags:
            if name not in self._loaded_loras:
                self._pipeline.load_lora_weights(
                    self._config.lora_model_dir,
                    weight_name=f"{name}.safetensors",
                    adapter_name=name,
                )
                self._loaded_loras.add(name)
                logger.info("Loaded LoRA '%s'.", name)
            names.append(name)
            weights.append(float(weight))
        self._pipeline.enable_lora()
        self._pipeline.set_adapters(names, adapter_weights=weights)
        return clean

    def _generator(self, seed: int):
        import torch

        if seed < 0:
            seed = random.randint(0, 2**32 - 1)
        device = "cpu" if self._config.rng_type == "std_default" else self._config.device
        return torch.Generator(device=device).manual_seed(seed), seed

    @staticmethod
    def _warn_unsupported(style_ratio: float, normalize_input: bool, input_id_images_path: str) -> None:
        if input_id_images_path:
            logger.warning(
                "PhotoMaker inputs are not supported by the diffusers engine "
                "(input_id_images_path=%s, style_ratio=%.1f, normalize_input=%s); ignoring.",
                input_id_images_path,
                style_ratio,
                normalize_input,
            )

    # -- Engine interface ---------------------------------------------------

    def text_to_image(
        self,
        *,
        prompt,
        negative_prompt,
        clip_skip,
        guidance_scale,
        width,
        height,
        sample_method,
        steps,
        strength,
        seed,
        batch_count,
        control_image,
        control_strength,
        style_ratio,
        normalize_input,
        input_id_images_path,
    ) -> GenerationResult | None:
        get_pipeline = self._base
        images: dict = {}
        extra: dict = {}
        if control_image is not None:
            if self._control_pipeline is None:
                logger.warning("Control image supplied but no control-net is loaded; ignoring it.")
            else:
                get_pipeline = self._control
                images["image"] = control_image
                extra["controlnet_conditioning_scale"] = control_strength

        self._warn_unsupported(style_ratio, normalize_input, input_id_images_path)
        return self._run(
            get_pipeline,
            sample_method,
            prompt,
            seed,
            size=(width, height),
            images=images,
            negative_prompt=negative_prompt,
            clip_skip=clip_skip,
            guidance_scale=guidance_scale,
            width=width,
            height=height,
            num_inference_steps=steps,
            num_images_per_prompt=batch_count,
            **extra,
        )

    def image_to_image(
        self,
        *,
        input_image,
        prompt,
        negative_prompt,
        clip_skip,
        guidance_scale,
        width,
        height,
        sample_method,
        steps,
        strength,
        seed,
        batch_count,
        control_image,
        control_strength,
        style_ratio,
        normalize_input,
        input_id_images_path,
    ) -> GenerationResult | None:
        if control_image is not None:
            logger.warning("Control images are not supported for image-to-image; ignoring it.")
        self._warn_unsupported(style_ratio, normalize_input, input_id_images_path)
        return self._run(
            self._img2img,
            sample_method,
            prompt,
            seed,
            size=(width, height),
            images={"image": input_image},
            negative_prompt=negative_prompt,
            clip_skip=clip_skip,
            guidance_scale=guidance_scale,
            strength=strength,
            num_inference_steps=steps,
            num_images_per_prompt=batch_count,
        )

    def _run(
        self,
        get_pipeline,
        sample_method,
        prompt,
        seed,
        *,
        size: tuple[int, int],
        images: dict,
        **kwargs,
    ) -> GenerationResult | None:
        """Run one image pipeline call.

        Pipeline lookup and conditioning-image conversion happen inside the
        guarded block, so every failure comes back as ``None``.
        """
        try:
            pipeline = get_pipeline()
            for key, image in images.items():
                kwargs[key] = image_to_pil(image).resize(size)

            prompt = self._prepare(pipeline, sample_method, prompt)
            generator, seed = self._generator(seed)
            if kwargs.get("clip_skip", 0) <= 0:
                kwargs.pop("clip_skip", None)
            if not kwargs.get("negative_prompt"):
                kwargs.pop("negative_prompt", None)

            logger.info(
                "Generating image: %d steps, seed=%d, sampler=%s.",
                kwargs.get("num_inference_steps"),
                seed,
                sample_method.value,
            )
            output = pipeline(prompt=prompt, generator=generator, **kwargs)
            return image_from_pil(output.images[0], GenerationResult)
        except Exception:
            logger.exception("Inference failed.")
            return None

    def image_to_video(
        self,
        *,
        input_image,
        prompt,
        negative_prompt,
        width,
        height,
        min_guidance_scale,
        guidance_scale,
        sample_method,
        steps,
        strength,
        seed,
        video_frames,
        motion_bucket_id,
        fps,
        augmentation_level,
    ) -> GenerationResult | None:
        # Stable Video Diffusion conditions on the image alone and uses its
        # own Euler scheduler; prompt, sampler and strength do not apply.
        try:
            pipeline = self._video()
            generator, seed = self._generator(seed)
            logger.info("Generating %d video frames: %d steps, seed=%d.", video_frames, steps, seed)
            output = pipeline(
                image=image_to_pil(input_image).resize((width, height)),
                width=width,
                height=height,
                num_frames=video_frames,
                num_inference_steps=steps,
                min_guidance_scale=min_guidance_scale,
                max_guidance_scale=guidance_scale,
                fps=fps,
                motion_bucket_id=motion_bucket_id,
                noise_aug_strength=augmentation_level,
                generator=generator,
            )
            return image_from_pil(output.frames[0][0], GenerationResult)
        except Exception:
            logger.exception("Video inference failed.")
            return None

    def convert_model(self, model_path: str, vae_path: str, output_path: str, weight_type: str | None) -> bool:
        try:
            dtype_name = weight_type or self._config.torch_dtype
            torch_dtype = _get_dtype_map()[dtype_name]
            pipeline = self._load_pipeline(model_path, vae_path, torch_dtype)
            pipeline.save_pretrained(output_path, safe_serialization=True)
            logger.info("Converted '%s' to '%s' (%s).", model_path, output_path, dtype_name)
            return True
        except Exception:
            logger.exception("Failed to convert model '%s'.", model_path)
            return False

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
        try:
            rgb = np.frombuffer(pixels, dtype=np.uint8).reshape(height, width, 3)
        except ValueError:
            logger.exception("Canny input does not match %dx%d RGB.", width, height)
            return None
        return canny(rgb, low_threshold, high_threshold, weak, strong, invert).tobytes()

    def unload(self) -> None:
        """Drop every pipeline and free GPU memory.  No-op when unloaded."""
        if self._pipeline is None and self._video_pipeline is None:
            return

        logger.info("Unloading model '%s'.", self._config.model_path)
        self._pipeline = None
        self._img2img_pipeline = None
        self._control_pipeline = None
        self._video_pipeline = None
        self._loaded_loras.clear()

        gc.collect()

        try:
            import torch

            if torch.cuda.is_available():
                torch.cuda.empty_cache()
                torch.cuda.synchronize()
                logger.info("CUDA cache cleared.")
        except ImportError:
            pass


def create_engine(config: ServerConfig) -> DiffusersEngine:
    """Create and load the process-wide engine handle."""
    engine = DiffusersEngine(config)
    engine.load()
    return engine
