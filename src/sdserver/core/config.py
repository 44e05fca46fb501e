"""Configuration management for sdserver.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the SDSERVER_ prefix,
allowing the server to be launched without command-line parsing.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (SDSERVER_* prefix)
2. .env file in the working directory
3. Default values defined in ServerConfig

Example .env file:
    SDSERVER_MODEL_PATH=models/sd-v1-5.safetensors
    SDSERVER_CONTROLNET_PATH=lllyasviel/sd-controlnet-canny
    SDSERVER_DEVICE=cuda
    SDSERVER_SERVER_PORT=8080

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
The FastAPI lifespan reads it once to build the engine; request handling
only sees the resulting engine handle and :class:`JobDefaults`.

Usage Example
-------------
    from sdserver.core.config import config

    print(config.model_path)
    print(config.controlnet_configured)
"""

import os
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from sdserver.core.engine import SampleMethod


class ServerConfig(BaseSettings):
    """Launch configuration for sdserver.

    Attributes
    ----------
    Model Paths:
        model_path : str
            Diffusers directory, HuggingFace ID, or single checkpoint file.
            Required before the engine can be created.
        vae_path, taesd_path, controlnet_path : str
            Optional auxiliary models.  An empty string means "not used".
        embeddings_path : str
            Directory of textual-inversion embeddings.
        stacked_id_embeddings_path : str
            Directory of PhotoMaker stacked-ID embeddings (logged and ignored
            by the diffusers engine).
        lora_model_dir : str
            Directory searched for LoRA weights.
        video_model_path : str
            Image-to-video model; empty means reuse model_path.
        inputs_dir : Path
            Base directory for ``{"path": ...}`` image references.
        convert_output_path : str
            Target written by ``convert`` mode requests.

    Runtime:
        n_threads : int
            CPU threads for inference (<= 0 means physical core count).
        torch_dtype, weight_type : str
            Load dtype, and optional override used when converting.
        device : str
            Device for inference (cuda, mps, or cpu).
        rng_type : Literal["std_default", "cuda"]
            Where seeded generators live.
        schedule : Literal["default", "discrete", "karras"]
            Noise schedule override.
        vae_tiling, clip_on_cpu, control_net_cpu, vae_on_cpu : bool
            Memory placement flags.

    Server:
        server_host, server_port : bind address.

    Request Defaults:
        default_width, default_height, default_steps,
        default_guidance_scale, default_sample_method
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="SDSERVER_",
        case_sensitive=False,
        # model_path would otherwise collide with pydantic's "model_" namespace.
        protected_namespaces=(),
    )

    # Model paths
    model_path: str = Field(default="", description="Model to load (required at startup)")
    vae_path: str = Field(default="", description="Standalone VAE weights")
    taesd_path: str = Field(default="", description="Tiny autoencoder for fast decoding")
    controlnet_path: str = Field(default="", description="Control-net weights")
    embeddings_path: str = Field(default="", description="Textual-inversion directory")
    stacked_id_embeddings_path: str = Field(
        default="",
        description="PhotoMaker stacked-ID embeddings directory",
    )
    lora_model_dir: str = Field(default="", description="LoRA weights directory")
    video_model_path: str = Field(
        default="",
        description="Image-to-video model (defaults to model_path)",
    )
    inputs_dir: Path = Field(
        default=Path("inputs"),
        description="Base directory for path-based image inputs",
    )
    convert_output_path: str = Field(
        default="converted",
        description="Output written by convert-mode requests",
    )

    # Runtime
    n_threads: int = Field(default=-1, description="Inference threads (<=0: all cores)")
    torch_dtype: Literal["bfloat16", "float16", "float32"] = Field(
        default="float16",
        description="Torch dtype for model inference",
    )
    weight_type: Literal["bfloat16", "float16", "float32"] | None = Field(
        default=None,
        description="Weight type override used by model conversion",
    )
    device: str = Field(default="cuda", description="Device to run inference on")
    rng_type: Literal["std_default", "cuda"] = Field(default="std_default")
    schedule: Literal["default", "discrete", "karras"] = Field(default="default")
    vae_tiling: bool = Field(default=False, description="Decode latents in tiles")
    clip_on_cpu: bool = Field(default=False, description="Keep text encoder on CPU")
    control_net_cpu: bool = Field(default=False, description="Keep control-net on CPU")
    vae_on_cpu: bool = Field(default=False, description="Keep VAE on CPU")

    # Server
    server_host: str = Field(default="127.0.0.1", description="Server bind address")
    server_port: int = Field(default=8080, ge=1, le=65535, description="Server port")

    # Request defaults
    default_width: int = Field(default=512, ge=1)
    default_height: int = Field(default=512, ge=1)
    default_steps: int = Field(default=20, ge=1)
    default_guidance_scale: float = Field(default=7.0)
    default_sample_method: SampleMethod = Field(default=SampleMethod.EULER_A)

    @property
    def controlnet_configured(self) -> bool:
        """Whether a control-net path was supplied."""
        return bool(self.controlnet_path)

    @property
    def resolved_threads(self) -> int:
        """Thread count with the "all cores" default applied."""
        if self.n_threads > 0:
            return self.n_threads
        return os.cpu_count() or 1


# Global configuration instance, loaded from SDSERVER_* environment variables
# and the .env file.
config = ServerConfig()
