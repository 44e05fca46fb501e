"""Shared pytest fixtures for sdserver tests."""

from __future__ import annotations

import base64
import io
import shutil
import tempfile
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Generator

import pytest
from PIL import Image

from sdserver.api.models import JobDefaults
from sdserver.core.config import ServerConfig
from sdserver.core.engine import Engine
from sdserver.core.images import GenerationResult
from sdserver.core.orchestrator import GenerationOrchestrator

# Solid colour each engine entry point paints its result with, so tests can
# tell from the pixels which call produced the final image.
CALL_SITE_COLORS = {
    "txt2img": (255, 0, 0),
    "img2img": (0, 255, 0),
    "img2vid": (0, 0, 255),
    "control": (255, 255, 0),
}


class RecordingEngine(Engine):
    """Mock engine that records calls and tags results by call site.

    Attributes:
        calls: ``(call_site, kwargs)`` for every engine call, in order.
        results: Every :class:`GenerationResult` handed out.
        fail_on: Call sites that return ``None`` (or ``False``).
        raise_on: Call sites that raise ``RuntimeError``.
        delay: Seconds each call sleeps, for concurrency tests.
        max_active: Highest number of calls observed running at once.
    """

    def __init__(self, fail_on=(), raise_on=(), delay: float = 0.0) -> None:
        self.calls: list[tuple[str, dict]] = []
        self.results: list[GenerationResult] = []
        self.fail_on = set(fail_on)
        self.raise_on = set(raise_on)
        self.delay = delay
        self.max_active = 0
        self.unloaded = False
        self._active = 0
        self._counter_lock = threading.Lock()

    def _enter(self, site: str, kwargs: dict) -> None:
        with self._counter_lock:
            self._active += 1
            self.max_active = max(self.max_active, self._active)
            self.calls.append((site, kwargs))
        try:
            if self.delay:
                time.sleep(self.delay)
            if site in self.raise_on:
                raise RuntimeError(f"{site} exploded")
        finally:
            with self._counter_lock:
                self._active -= 1

    def _result(self, site: str, width: int, height: int) -> GenerationResult | None:
        if site in self.fail_on:
            return None
        result = GenerationResult(width, height, 3, bytes(CALL_SITE_COLORS[site]) * (width * height))
        result.call_site = site
        self.results.append(result)
        return result

    def sites(self) -> list[str]:
        return [site for site, _ in self.calls]

    def live_results(self) -> list[GenerationResult]:
        return [r for r in self.results if not r.released]

    # -- Engine interface ---------------------------------------------------

    def text_to_image(self, **kwargs):
        control = kwargs["control_image"]
        site = "control" if control is not None else "txt2img"
        if control is not None:
            kwargs["control_pixels"] = control.data
        self._enter(site, kwargs)
        return self._result(site, kwargs["width"], kwargs["height"])

    def image_to_image(self, **kwargs):
        self._enter("img2img", kwargs)
        return self._result("img2img", kwargs["width"], kwargs["height"])

    def image_to_video(self, **kwargs):
        self._enter("img2vid", kwargs)
        return self._result("img2vid", kwargs["width"], kwargs["height"])

    def convert_model(self, model_path, vae_path, output_path, weight_type):
        self._enter(
            "convert",
            {
                "model_path": model_path,
                "vae_path": vae_path,
                "output_path": output_path,
                "weight_type": weight_type,
            },
        )
        return "convert" not in self.fail_on

    def canny_edge_detect(self, pixels, width, height, low_threshold, high_threshold, weak, strong, invert):
        self._enter(
            "canny",
            {
                "width": width,
                "height": height,
                "thresholds": (low_threshold, high_threshold, weak, strong, invert),
            },
        )
        if "canny" in self.fail_on:
            return None
        return b"\xff" * len(pixels)

    def unload(self) -> None:
        self.unloaded = True


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def inputs_dir(temp_dir: Path) -> Path:
    """Inputs directory for path-based image references."""
    path = temp_dir / "inputs"
    path.mkdir()
    return path


@pytest.fixture
def test_config(temp_dir: Path, inputs_dir: Path) -> ServerConfig:
    """Create a test configuration that never touches real models.

    Args:
        temp_dir: Temporary directory from fixture
        inputs_dir: Inputs directory from fixture

    Returns:
        ServerConfig instance for testing
    """
    return ServerConfig(
        model_path="test/model",
        controlnet_path="test/controlnet",
        inputs_dir=inputs_dir,
        convert_output_path=str(temp_dir / "converted"),
        device="cpu",
        torch_dtype="float32",
        n_threads=2,
        _env_file=None,
    )


@pytest.fixture
def engine() -> RecordingEngine:
    """A fresh recording engine."""
    return RecordingEngine()


@pytest.fixture
def make_orchestrator(inputs_dir: Path) -> Callable[..., GenerationOrchestrator]:
    """Factory building an orchestrator around a given engine."""

    def _make(engine: Engine, controlnet: bool = True, **kwargs) -> GenerationOrchestrator:
        kwargs.setdefault("model_path", "test/model")
        kwargs.setdefault("convert_output_path", "out/converted")
        return GenerationOrchestrator(
            engine,
            controlnet_configured=controlnet,
            inputs_dir=inputs_dir,
            **kwargs,
        )

    return _make


@pytest.fixture
def orchestrator(engine: RecordingEngine, make_orchestrator) -> GenerationOrchestrator:
    """Orchestrator with a control-net configured and a recording engine."""
    return make_orchestrator(engine)


@pytest.fixture
def png_bytes() -> Callable[..., bytes]:
    """Factory encoding a solid-colour image."""

    def _make(width: int = 8, height: int = 8, color=(10, 20, 30), mode: str = "RGB", fmt: str = "PNG") -> bytes:
        fill = color if mode != "L" else color[0]
        buf = io.BytesIO()
        Image.new(mode, (width, height), fill).save(buf, format=fmt)
        return buf.getvalue()

    return _make


@pytest.fixture
def data_uri(png_bytes) -> Callable[..., str]:
    """Factory producing ``data:image/png;base64,...`` strings."""

    def _make(width: int = 8, height: int = 8, color=(10, 20, 30), **kwargs) -> str:
        payload = base64.b64encode(png_bytes(width, height, color, **kwargs)).decode("ascii")
        return f"data:image/png;base64,{payload}"

    return _make


@pytest.fixture
def test_client(orchestrator: GenerationOrchestrator):
    """FastAPI TestClient wired to the recording engine.

    The client is not entered as a context manager, so the lifespan hook
    (which would load a real model) never runs.
    """
    from fastapi.testclient import TestClient

    from sdserver.api.main import app

    app.state.orchestrator = orchestrator
    app.state.job_defaults = JobDefaults()
    try:
        yield TestClient(app)
    finally:
        del app.state.orchestrator
        del app.state.job_defaults
