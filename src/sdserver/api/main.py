"""sdserver — FastAPI Application.

This module defines the FastAPI ``app`` instance, the request handler behind
``POST /generate``, and the ``main()`` CLI function that launches the uvicorn
server.

Architecture
------------
- **Configuration** is read once from :data:`~sdserver.core.config.config`
  (``SDSERVER_*`` environment variables) during startup.
- **The engine** is a single :class:`~sdserver.core.diffusers_engine.DiffusersEngine`
  created in the lifespan hook and wrapped in a
  :class:`~sdserver.core.orchestrator.GenerationOrchestrator`, which
  serialises every inference call.
- **Requests** are handled by :func:`handle_post`, a plain function that turns
  a raw body into a ``(status, content type, body)`` triple.  The route runs
  it in the threadpool, so JSON parsing and image encoding overlap across
  requests while inference does not.

Endpoints
---------
========  ==============  ==========================================
Method    Path            Purpose
========  ==============  ==========================================
POST      ``/generate``   Generate an image (or convert the model)
GET       ``/health``     Liveness and control-net availability
========  ==============  ==========================================

Usage
-----
CLI (installed entry point)::

    sdserver

Direct invocation::

    python -m sdserver.api.main
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import Response

from sdserver import __version__
from sdserver.api.builder import build_job
from sdserver.api.models import JobDefaults, Mode
from sdserver.core.config import ServerConfig, config
from sdserver.core.errors import RequestValidationError, SDServerError
from sdserver.core.images import encode
from sdserver.core.orchestrator import GenerationOrchestrator

logger = logging.getLogger(__name__)

TEXT_PLAIN = "text/plain"


def job_defaults(cfg: ServerConfig) -> JobDefaults:
    """Server-wide request defaults taken from configuration."""
    return JobDefaults(
        width=cfg.default_width,
        height=cfg.default_height,
        sample_steps=cfg.default_steps,
        guidance_scale=cfg.default_guidance_scale,
        sample_method=cfg.default_sample_method,
    )


def build_orchestrator(cfg: ServerConfig) -> GenerationOrchestrator:
    """Create the engine from *cfg* and wrap it in an orchestrator."""
    from sdserver.core.diffusers_engine import create_engine

    engine = create_engine(cfg)
    return GenerationOrchestrator(
        engine,
        controlnet_configured=cfg.controlnet_configured,
        inputs_dir=cfg.inputs_dir,
        model_path=cfg.model_path,
        vae_path=cfg.vae_path,
        convert_output_path=cfg.convert_output_path,
        weight_type=cfg.weight_type,
    )


# ---------------------------------------------------------------------------
# Request handling.
# ---------------------------------------------------------------------------


def handle_post(
    body: bytes,
    orchestrator: GenerationOrchestrator,
    defaults: JobDefaults | None = None,
) -> tuple[int, str, bytes]:
    """Handle one ``POST /generate`` body.

    1. Build the job descriptor (400 on validation errors).
    2. Run the orchestrator (500 on engine errors, 400 on bad input images).
    3. Encode the result in the requested format and release it.

    Args:
        body: Raw request body.
        orchestrator: The process-wide orchestrator.
        defaults: Server-wide request defaults.

    Returns:
        ``(status_code, content_type, response_body)``.
    """
    try:
        job = build_job(body, defaults)
    except RequestValidationError as e:
        logger.info("Rejected request: %s", e)
        return e.status_code, TEXT_PLAIN, str(e).encode()

    try:
        result = orchestrator.run(job)
    except SDServerError as e:
        logger.warning("%s job failed: %s", job.mode.value, e)
        return e.status_code, TEXT_PLAIN, str(e).encode()

    if job.mode is Mode.CONVERT:
        message = f"Model converted to {orchestrator.convert_output_path}"
        return 200, TEXT_PLAIN, message.encode()

    try:
        payload = encode(result, job.output_format, job.output_quality)
    finally:
        result.release()
    return 200, job.output_format.content_type, payload


# ---------------------------------------------------------------------------
# Application lifecycle.
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create the engine on startup and unload it on shutdown.

    Raises:
        ValueError: If no model path is configured.
    """
    # --- Startup -----------------------------------------------------------
    app.state.orchestrator = build_orchestrator(config)
    app.state.job_defaults = job_defaults(config)
    logger.info("Engine ready (control-net: %s).", config.controlnet_configured)

    yield  # Application runs here.

    # --- Shutdown ----------------------------------------------------------
    app.state.orchestrator.engine.unload()
    logger.info("Engine unloaded on shutdown.")


app = FastAPI(
    title="sdserver",
    description="HTTP front-end for text-to-image, image-to-image and image-to-video generation.",
    version=__version__,
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Routes.
# ---------------------------------------------------------------------------


@app.post("/generate")
async def generate(request: Request) -> Response:
    """Generate an image from a JSON job description.

    The body is read raw rather than through a Pydantic model: validation
    rules (defaults for ill-typed fields, mode-dependent requirements) live in
    :func:`~sdserver.api.builder.build_job`.  The handler itself blocks on
    the engine, so it runs in the threadpool.

    Returns:
        The encoded image (``image/png`` or ``image/jpeg``), or a
        ``text/plain`` error message with status 400 or 500.
    """
    body = await request.body()
    state = request.app.state
    status, content_type, payload = await run_in_threadpool(
        handle_post,
        body,
        state.orchestrator,
        getattr(state, "job_defaults", None),
    )
    return Response(content=payload, status_code=status, media_type=content_type)


@app.get("/health")
async def health(request: Request) -> dict:
    """Return liveness information.

    Returns:
        Dictionary with ``status``, ``version`` and ``controlnet``.
    """
    orchestrator: GenerationOrchestrator = request.app.state.orchestrator
    return {
        "status": "ok",
        "version": __version__,
        "controlnet": orchestrator.controlnet_configured,
    }


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host and port from :data:`~sdserver.core.config.config`
    (``SDSERVER_SERVER_HOST`` / ``SDSERVER_SERVER_PORT``).  Defaults to
    ``127.0.0.1:8080``.
    """
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    uvicorn.run(
        "sdserver.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
