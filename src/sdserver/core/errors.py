"""Error taxonomy for the sdserver request pipeline.

Every failure raised by the builder, the image codec, or the orchestrator is a
subclass of :class:`SDServerError`.  Each class carries the HTTP status code
the endpoint handler maps it to, so the handler never needs to know which
stage failed.

Hierarchy
---------
::

    SDServerError (500)
    ├── RequestValidationError (400)
    │   ├── MalformedJson
    │   ├── MissingRequiredField
    │   ├── InvalidEnumValue
    │   └── InvalidFieldValue
    ├── DecodeError (400)
    │   ├── MalformedEncoding
    │   └── UnsupportedImageContent
    └── OrchestrationError (500)
        ├── InputImageError (400)
        ├── EngineFailure
        └── ConversionFailed
"""

from __future__ import annotations

from typing import Any


class SDServerError(Exception):
    """Base class for all sdserver errors.

    The exception message is intended to be sent verbatim to the client as
    a ``text/plain`` response body.
    """

    status_code: int = 500


# ---------------------------------------------------------------------------
# Builder errors.
# ---------------------------------------------------------------------------


class RequestValidationError(SDServerError):
    """The request body could not be turned into a job descriptor."""

    status_code = 400


class MalformedJson(RequestValidationError):
    """The body is not JSON, or its top level is not an object."""


class MissingRequiredField(RequestValidationError):
    """A field required by the selected mode is absent or ill-typed."""

    def __init__(self, field: str) -> None:
        self.field = field
        super().__init__(f"Missing required field: {field}")


class InvalidEnumValue(RequestValidationError):
    """A string field holds a token outside its allowed set."""

    def __init__(self, field: str, value: Any) -> None:
        self.field = field
        self.value = value
        super().__init__(f"Invalid value for {field}: {value!r}")


class InvalidFieldValue(RequestValidationError):
    """A well-typed field holds a value outside its allowed range."""

    def __init__(self, field: str, value: Any, reason: str) -> None:
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid value for {field}: {value!r} ({reason})")


# ---------------------------------------------------------------------------
# Image codec errors.
# ---------------------------------------------------------------------------


class DecodeError(SDServerError):
    """An input image could not be decoded."""

    status_code = 400


class MalformedEncoding(DecodeError):
    """The data URI or its base64 payload is malformed."""


class UnsupportedImageContent(DecodeError):
    """The decoded bytes (or file) are not a readable image."""


# ---------------------------------------------------------------------------
# Orchestrator errors.
# ---------------------------------------------------------------------------


class OrchestrationError(SDServerError):
    """The generation pipeline failed."""


class InputImageError(OrchestrationError):
    """The caller's input image could not be loaded.

    Attributable to bad client input, so it maps to 400 even though it is
    raised by the orchestrator.
    """

    status_code = 400


class EngineFailure(OrchestrationError):
    """An engine call returned no result."""


class ConversionFailed(OrchestrationError):
    """The engine could not convert the model."""
