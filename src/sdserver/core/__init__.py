"""Core functionality for sdserver.

This package holds everything below the HTTP layer:

- **config.py**: Environment-based configuration using Pydantic Settings
  (``SDSERVER_*`` variables).
- **errors.py**: The error taxonomy and its HTTP status codes.
- **images.py**: Image codec adapter (data URIs, files, PNG/JPEG encoding,
  canny preprocessing) and the owned pixel buffer types.
- **engine.py**: The abstract inference engine interface.
- **diffusers_engine.py**: The HuggingFace diffusers engine implementation.
- **orchestrator.py**: Single-flight generation pipeline.
"""
