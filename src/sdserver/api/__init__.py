"""sdserver — FastAPI REST API layer.

This package contains the FastAPI application, the Pydantic job models, and
the request descriptor builder.

Modules
-------
main
    FastAPI application, the ``POST /generate`` handler, and the ``main()``
    CLI entry point.
models
    Pydantic models for the validated job descriptor.
builder
    JSON request body to job descriptor translation.
"""
