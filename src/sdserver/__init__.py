"""sdserver - HTTP front-end for diffusion image generation."""

__version__ = "0.1.0"

from sdserver.core.config import ServerConfig, config
from sdserver.core.engine import Engine
from sdserver.core.orchestrator import GenerationOrchestrator

__all__ = [
    "Engine",
    "GenerationOrchestrator",
    "ServerConfig",
    "config",
]
